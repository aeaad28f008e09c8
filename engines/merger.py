"""Merge chunk-level extraction results into one ``DocumentAnalysisV2``."""

from __future__ import annotations

import re
from collections import Counter
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from engines.extractor import ChunkResult
from schemas import (
    MAX_EVIDENCE_SNIPPETS,
    Concept,
    DifficultyMix,
    DocumentAnalysisV2,
    EvidenceRef,
    Exercise,
    Formula,
    HeuristicSignals,
    NotationConventions,
    Procedure,
    ProcessingMetadata,
    StructuralSignals,
    StyleSignals,
    WorkedExample,
)
from topic_normalizer import (
    canonical_topic_key,
    detect_expected_answer_format,
    detect_points,
    estimate_difficulty,
    is_noise_topic,
    normalize_topics,
)

HEURISTIC_DOCUMENT_TYPES = ("exercise", "solution", "exam")
MAX_PREFERRED_FORMATS = 5
MAX_TYPICAL_PHRASES = 10
DEFAULT_AVERAGE_POINTS = 10.0

_VERB_RE = re.compile(
    r"\b(berechne|zeige|beweise|bestimme|gib an|erkläre|beschreibe|implementiere|analysiere|vergleiche|nenne|definiere)\b",
    re.IGNORECASE,
)
_LETTER_SUBTASK_RE = re.compile(r"[a-c]\)")
_NUMBER_SUBTASK_RE = re.compile(r"[1-3]\.")
_POINTS_HINT_RE = re.compile(r"\d+\s*p", re.IGNORECASE)
_POINTS_VALUE_RE = re.compile(r"(\d+)\s*(punkt|p\b)", re.IGNORECASE)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _strings(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


def _unique(values: Iterable[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for value in values:
        if value and value not in seen:
            seen[value] = None
    return list(seen)


def _union_evidence(left: List[EvidenceRef], right: List[EvidenceRef]) -> List[EvidenceRef]:
    merged: List[EvidenceRef] = []
    seen = set()
    for ref in list(left) + list(right):
        if ref.snippet in seen:
            continue
        seen.add(ref.snippet)
        merged.append(ref)
    return merged[:MAX_EVIDENCE_SNIPPETS]


def _canonical_item_topics(topics: List[str]) -> List[str]:
    keys = (canonical_topic_key(topic) for topic in topics if not is_noise_topic(topic))
    return _unique(key for key in keys if key)


# ------------------------------------------------------------------
# Item dedup
# ------------------------------------------------------------------
def dedupe_concepts(concepts: List[Concept]) -> List[Concept]:
    merged: Dict[str, Concept] = {}
    for concept in concepts:
        key = concept.term.lower().strip()
        current = merged.get(key)
        if current is None:
            merged[key] = concept
            continue
        winner = concept if len(concept.definition) > len(current.definition) else current
        loser = current if winner is concept else concept
        merged[key] = winner.model_copy(
            update={
                "evidence": _union_evidence(winner.evidence, loser.evidence),
                "related_terms": _unique(winner.related_terms + loser.related_terms),
            }
        )
    return list(merged.values())


def dedupe_formulas(formulas: List[Formula]) -> List[Formula]:
    merged: Dict[str, Formula] = {}
    for formula in formulas:
        key = re.sub(r"\s+", "", formula.latex)
        current = merged.get(key)
        if current is None:
            merged[key] = formula
            continue
        update: Dict[str, Any] = {"evidence": _union_evidence(current.evidence, formula.evidence)}
        if len(formula.description or "") > len(current.description or ""):
            update["description"] = formula.description
        if not current.variables and formula.variables:
            update["variables"] = formula.variables
        merged[key] = current.model_copy(update=update)
    return list(merged.values())


def dedupe_procedures(procedures: List[Procedure]) -> List[Procedure]:
    merged: Dict[str, Procedure] = {}
    for procedure in procedures:
        key = procedure.name.lower().strip()
        current = merged.get(key)
        if current is None:
            merged[key] = procedure
            continue
        winner = procedure if len(procedure.steps) > len(current.steps) else current
        loser = current if winner is procedure else procedure
        merged[key] = winner.model_copy(update={"evidence": _union_evidence(winner.evidence, loser.evidence)})
    return list(merged.values())


# ------------------------------------------------------------------
# Heuristic signals
# ------------------------------------------------------------------
def _difficulty_mix(structures: List[str]) -> DifficultyMix:
    easy, medium, hard = 0.33, 0.34, 0.33
    for text in structures:
        lower = text.lower()
        if "einfach" in lower or "grundlagen" in lower:
            easy += 0.1
        if "schwer" in lower or "komplex" in lower:
            hard += 0.1
    total = easy + medium + hard
    return DifficultyMix(
        easy=round(easy / total, 2),
        medium=round(medium / total, 2),
        hard=round(hard / total, 2),
    )


def _average_points(structures: List[str]) -> float:
    points = [
        int(match.group(1))
        for text in structures
        for match in _POINTS_VALUE_RE.finditer(text)
        if 0 < int(match.group(1)) <= 100
    ]
    if not points:
        return DEFAULT_AVERAGE_POINTS
    return float(round(sum(points) / len(points)))


def derive_heuristic_signals(
    document_type: str,
    patterns: List[str],
    phrases: List[str],
) -> HeuristicSignals:
    """Keyword guesses over reported patterns and phrases. Always ``low`` confidence."""

    lowered = [pattern.lower() for pattern in patterns]
    verbs = _unique(match.group(1).lower() for phrase in phrases for match in _VERB_RE.finditer(phrase))
    signals = HeuristicSignals(
        has_subtasks=any(
            "teilaufgabe" in p or _LETTER_SUBTASK_RE.search(p) or _NUMBER_SUBTASK_RE.search(p) for p in lowered
        ),
        uses_letter_subtasks=any(_LETTER_SUBTASK_RE.search(p) for p in lowered),
        uses_numbered_subtasks=any(_NUMBER_SUBTASK_RE.search(p) for p in lowered),
        has_points_distribution=any("punkt" in p or _POINTS_HINT_RE.search(p) for p in lowered),
        has_tables=any("tabelle" in p for p in lowered),
        has_code_blocks=any("code" in p or "programm" in p for p in lowered),
        common_verbs=verbs,
        typical_phrases=phrases[:MAX_TYPICAL_PHRASES],
    )
    if document_type == "exam":
        signals.uses_multiple_choice = any("multiple" in p or "ankreuz" in p for p in lowered)
        signals.difficulty_mix = _difficulty_mix(patterns)
        signals.average_points = _average_points(patterns)
    return signals


def derive_preferred_formats(exercises: List[Exercise]) -> List[str]:
    counts = Counter(fmt for exercise in exercises for fmt in exercise.expected_answer_format)
    return [fmt for fmt, _ in counts.most_common(MAX_PREFERRED_FORMATS)]


# ------------------------------------------------------------------
# Merge
# ------------------------------------------------------------------
def merge_chunk_results(
    chunk_results: List[ChunkResult],
    document_type: str,
    document_id: str = "unknown",
    *,
    processed_at: Optional[str] = None,
) -> DocumentAnalysisV2:
    """Combine chunk results, dedupe items and compute processing metadata.

    Failed chunks contribute only their error message. ``coveragePercent`` is
    the share of chunks that succeeded.
    """

    counters: Counter = Counter()

    def next_id(prefix: str) -> str:
        counters[prefix] += 1
        return f"{prefix}-{document_id}-{counters[prefix]}"

    def evidence(snippet: str) -> List[EvidenceRef]:
        return [EvidenceRef(document_id=document_id, snippet=snippet)]

    all_topics: List[str] = []
    concepts: List[Concept] = []
    formulas: List[Formula] = []
    procedures: List[Procedure] = []
    examples: List[WorkedExample] = []
    exercises: List[Exercise] = []
    coverage_notes: List[str] = []
    errors: List[str] = []

    structural: Dict[str, List[str]] = {
        "taskNumberingPatterns": [],
        "subtaskPatterns": [],
        "pointsPatterns": [],
        "sectionPatterns": [],
        "taskStartPhrases": [],
    }
    uses_tables = uses_code = uses_formula_env = False
    verb_frequency: Counter = Counter()
    question_phrases: List[str] = []
    notation: Dict[str, List[str]] = {"booleanOperators": [], "numberPrefixes": [], "setNotation": [], "other": []}

    for result in chunk_results:
        if result.error_message:
            errors.append(f"Chunk {result.chunk_index}: {result.error_message}")
        if not result.success:
            continue

        all_topics.extend(result.topics)
        coverage_notes.extend(result.coverage_notes)

        for item in result.concepts:
            concepts.append(
                Concept(
                    id=next_id("concept"),
                    term=item.term,
                    definition=item.definition,
                    related_terms=item.related_terms,
                    evidence=evidence(item.evidence_snippet),
                )
            )
        for item in result.formulas:
            formulas.append(
                Formula(
                    id=next_id("formula"),
                    latex=item.latex,
                    description=item.description,
                    variables=item.variables,
                    evidence=evidence(item.evidence_snippet),
                )
            )
        for item in result.procedures:
            procedures.append(
                Procedure(
                    id=next_id("procedure"),
                    name=item.name,
                    steps=item.steps,
                    when_to_use=item.when_to_use,
                    evidence=evidence(item.evidence_snippet),
                )
            )
        for item in result.worked_examples:
            examples.append(
                WorkedExample(
                    id=next_id("example"),
                    problem=item.problem,
                    solution_steps=item.solution_steps,
                    result=item.result,
                    topics=_canonical_item_topics(item.topics),
                    evidence=evidence(item.evidence_snippet),
                )
            )
        for item in result.exercises:
            points = detect_points(item.question_text)
            exercises.append(
                Exercise(
                    id=next_id("exercise"),
                    question_text=item.question_text,
                    subtasks=item.subtasks,
                    expected_answer_format=detect_expected_answer_format(item.question_text),
                    difficulty=estimate_difficulty(item.question_text),
                    points=points.points if points.has_points else None,
                    topics=_canonical_item_topics(item.topics),
                    has_solution=item.has_solution,
                    solution=item.solution,
                    evidence=evidence(item.evidence_snippet),
                )
            )

        signals = result.structural_signals
        for key, values in structural.items():
            values.extend(_strings(signals.get(key)))
        uses_tables = uses_tables or bool(signals.get("usesTables"))
        uses_code = uses_code or bool(signals.get("usesCodeBlocks"))
        uses_formula_env = uses_formula_env or bool(signals.get("usesFormulaEnvironments"))

        style = result.style_signals
        verb_frequency.update(verb.lower() for verb in _strings(style.get("imperativeVerbs")))
        question_phrases.extend(_strings(style.get("questionPhrases")))
        conventions = style.get("notationConventions")
        if isinstance(conventions, dict):
            for key, values in notation.items():
                values.extend(_strings(conventions.get(key)))

    raw_topics = _unique(topic.strip() for topic in all_topics if not is_noise_topic(topic))
    normalized = normalize_topics(raw_topics)

    structural_signals = StructuralSignals(
        uses_tables=uses_tables,
        uses_code_blocks=uses_code,
        uses_formula_environments=uses_formula_env or bool(formulas),
        task_numbering_patterns=_unique(structural["taskNumberingPatterns"]),
        subtask_patterns=_unique(structural["subtaskPatterns"]),
        points_patterns=_unique(structural["pointsPatterns"]),
        section_patterns=_unique(structural["sectionPatterns"]),
        task_start_phrases=_unique(structural["taskStartPhrases"]),
    )
    style_signals = StyleSignals(
        imperative_verbs=[verb for verb, _ in verb_frequency.most_common()],
        verb_frequency=dict(verb_frequency),
        question_phrases=_unique(question_phrases),
        notation_conventions=NotationConventions(
            boolean_operators=_unique(notation["booleanOperators"]),
            number_prefixes=_unique(notation["numberPrefixes"]),
            set_notation=_unique(notation["setNotation"]),
            other=_unique(notation["other"]),
        ),
        preferred_answer_formats=derive_preferred_formats(exercises),
    )

    heuristic = None
    if document_type in HEURISTIC_DOCUMENT_TYPES:
        patterns = (
            structural_signals.task_numbering_patterns
            + structural_signals.subtask_patterns
            + structural_signals.points_patterns
            + [exercise.question_text for exercise in exercises]
        )
        phrases = _unique(structural_signals.task_start_phrases + style_signals.question_phrases)
        heuristic = derive_heuristic_signals(document_type, patterns, phrases)
        if uses_tables:
            heuristic.has_tables = True
        if uses_code:
            heuristic.has_code_blocks = True

    total = len(chunk_results)
    successful = sum(1 for result in chunk_results if result.success)
    return DocumentAnalysisV2(
        document_type=document_type,
        canonical_topics=normalized.canonical_topics,
        raw_topics=raw_topics,
        topic_mapping=normalized.topic_mapping,
        concepts=dedupe_concepts(concepts),
        formulas=dedupe_formulas(formulas),
        procedures=dedupe_procedures(procedures),
        worked_examples=examples,
        embedded_exercises=exercises,
        structural_signals=structural_signals,
        style_signals=style_signals,
        heuristic_signals=heuristic,
        processing_metadata=ProcessingMetadata(
            chunks_processed=successful,
            total_chunks=total,
            coverage_percent=round(successful / total * 100) if total else 0,
            errors=errors,
            coverage_notes=_unique(coverage_notes),
            processed_at=processed_at or _now(),
        ),
    )


__all__ = [
    "merge_chunk_results",
    "dedupe_concepts",
    "dedupe_formulas",
    "dedupe_procedures",
    "derive_heuristic_signals",
    "derive_preferred_formats",
]
