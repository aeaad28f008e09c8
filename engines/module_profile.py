"""Module-level profiles built from the finished document analyses of a module.

Three views are derived from every ``done`` analysis:

* the knowledge index: canonical topics with synonyms and frequency, plus
  links from each topic to the documents, concepts, formulas, procedures,
  worked examples and exercises that mention it;
* the exercise style profile: verbs, structure, points, answer formats,
  notation, task archetypes and solution style of exercise sheets and
  solutions;
* the exam style profile: the same for exams, inferred from exercise sheets
  with low confidence when no exam has been analysed.

Profiles are cached by the aggregate hash of their source documents.
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from engines.analysis_cache import AnalysisStorage, load_record_analysis
from engines.merger import dedupe_concepts, dedupe_formulas, dedupe_procedures
from normalizer import compute_aggregate_hash
from schemas import (
    PROFILE_VERSION,
    AnswerFormatStats,
    CoveredTopic,
    DifficultyPercentages,
    DocumentAnalysisRecord,
    DocumentAnalysisV2,
    DocumentRef,
    ExamOperator,
    ExamScoring,
    ExamStyleProfile,
    ExamTaskType,
    ExamTaskTypes,
    ExerciseNotation,
    ExerciseStructure,
    ExerciseStyleProfile,
    FormattingRules,
    KnowledgeIndex,
    ModuleProfileRecord,
    PointsUsage,
    SolutionStyle,
    SubtaskPattern,
    TaskArchetype,
    TopicIndexEntry,
    VerbFrequency,
)
from topic_normalizer import canonical_topic_key, get_topic_display_label, is_noise_topic

logger = logging.getLogger(__name__)

MAX_VERBS = 15
MAX_OPERATORS = 15
MAX_PHRASES = 20
MAX_ANSWER_FORMATS = 5
MAX_SUBTASK_EXAMPLES = 5
SCRIPT_COVERAGE_WEIGHT = 2
TYPICAL_SECTIONS = ["Aufgabe", "Hinweis", "Lösung"]
VARIATION_STRATEGIES = ["andere-zahlen", "andere-variablen", "mehr-teilaufgaben", "höhere-schwierigkeit"]

# (pattern, name, when to use, required inputs, output formats, topics)
ARCHETYPE_PATTERNS: List[Tuple["re.Pattern[str]", str, str, List[str], List[str], List[str]]] = [
    (
        re.compile(r"konvert|umwandl|umrechn", re.IGNORECASE),
        "Zahlensystem-Konvertierung",
        "Umrechnung zwischen Zahlensystemen (Dezimal, Binär, Hexadezimal, Oktal)",
        ["sourceNumber", "sourceBase", "targetBase"],
        ["number"],
        ["zahlensysteme", "zahlenkonvertierung"],
    ),
    (
        re.compile(r"kv[- ]?diagramm|karnaugh", re.IGNORECASE),
        "KV-Diagramm",
        "Minimierung boolescher Funktionen mit Karnaugh-Veitch-Diagramm",
        ["booleanFunction", "numVariables"],
        ["diagram", "formula"],
        ["kv-diagramm", "boolesche-algebra"],
    ),
    (
        re.compile(r"quine|mccluskey|qmc", re.IGNORECASE),
        "Quine-McCluskey",
        "Algorithmische Minimierung boolescher Funktionen",
        ["booleanFunction", "dontCares"],
        ["table", "formula"],
        ["quine-mccluskey", "boolesche-algebra"],
    ),
    (
        re.compile(r"wahrheitstab|truth.?table", re.IGNORECASE),
        "Wahrheitstabelle",
        "Erstellen oder Ausfüllen einer Wahrheitstabelle",
        ["booleanExpression"],
        ["table"],
        ["wahrheitstabelle", "boolesche-algebra"],
    ),
    (
        re.compile(r"automat|zustandsmaschin|fsm|dfa|nfa", re.IGNORECASE),
        "Automaten",
        "Entwurf oder Analyse von endlichen Automaten",
        ["specification"],
        ["diagram", "table"],
        ["automaten", "zustandsmaschinen"],
    ),
    (
        re.compile(r"huffman|kompression|encoding", re.IGNORECASE),
        "Huffman-Codierung",
        "Erstellen von Huffman-Codes für Datenkompression",
        ["frequencies", "alphabet"],
        ["tree", "table", "code"],
        ["huffman", "codierung"],
    ),
]

# first match wins
TASK_TYPE_KEYWORDS: List[Tuple[str, Tuple[str, ...]]] = [
    ("berechnung", ("berechne", "rechne")),
    ("beweis", ("zeige", "beweise")),
    ("erklärung", ("erkläre", "beschreibe")),
    ("implementierung", ("implementiere", "programmiere")),
    ("zeichnung", ("zeichne", "skizziere")),
]

_GRAPHIC_FORMATS = {"kvDiagram", "circuitDiagram"}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _unique(values) -> List[str]:
    return list(dict.fromkeys(value for value in values if value))


def classify_task_type(question_text: str) -> str:
    lower = question_text.lower()
    for task_type, keywords in TASK_TYPE_KEYWORDS:
        if any(keyword in lower for keyword in keywords):
            return task_type
    return "allgemein"


# ------------------------------------------------------------------
# Knowledge index
# ------------------------------------------------------------------
def build_knowledge_index(
    analyses: List[Tuple[DocumentAnalysisRecord, DocumentAnalysisV2]],
) -> KnowledgeIndex:
    """Aggregate every finished analysis of the module, whatever its document type."""

    frequency: Counter = Counter()
    synonyms: Dict[str, List[str]] = {}
    display_names: Dict[str, str] = {}
    index: Dict[str, TopicIndexEntry] = {}
    concepts, formulas, procedures, examples = [], [], [], []

    for record, analysis in analyses:
        document_topics: List[str] = []
        for raw in analysis.raw_topics:
            if is_noise_topic(raw):
                continue
            canonical = analysis.topic_mapping.get(raw) or canonical_topic_key(raw)
            if not canonical:
                continue
            if canonical not in document_topics:
                document_topics.append(canonical)
            if raw != canonical and raw not in synonyms.setdefault(canonical, []):
                synonyms[canonical].append(raw)
        for canonical in analysis.canonical_topics:
            if canonical not in document_topics:
                document_topics.append(canonical)

        for canonical in document_topics:
            frequency[canonical] += 1
            synonyms.setdefault(canonical, [])
            display_names.setdefault(canonical, get_topic_display_label(canonical))
            entry = index.setdefault(canonical, TopicIndexEntry())
            if not any(ref.document_id == record.document_id for ref in entry.documents):
                entry.documents.append(DocumentRef(document_id=record.document_id, document_name=record.document_name))

        # document-wide items link to every topic of their document
        for canonical in document_topics:
            entry = index[canonical]
            entry.concept_ids.extend(item.id for item in analysis.concepts)
            entry.formula_ids.extend(item.id for item in analysis.formulas)
            entry.procedure_ids.extend(item.id for item in analysis.procedures)
        for example in analysis.worked_examples:
            for topic in example.topics:
                if topic in index:
                    index[topic].example_ids.append(example.id)
        for exercise in analysis.embedded_exercises:
            for topic in exercise.topics:
                if topic in index:
                    index[topic].exercise_ids.append(exercise.id)

        concepts.extend(analysis.concepts)
        formulas.extend(analysis.formulas)
        procedures.extend(analysis.procedures)
        examples.extend(analysis.worked_examples)

    ordered = sorted(frequency, key=lambda key: (-frequency[key], key))
    return KnowledgeIndex(
        canonical_topics=ordered,
        topic_display_names={key: display_names[key] for key in ordered},
        topic_synonyms={key: synonyms.get(key, []) for key in ordered},
        topic_frequency={key: frequency[key] for key in ordered},
        topic_index=index,
        concepts=dedupe_concepts(concepts),
        formulas=dedupe_formulas(formulas),
        procedures=dedupe_procedures(procedures),
        worked_examples=examples,
        source_document_count=len(analyses),
        last_built_at=_now(),
    )


# ------------------------------------------------------------------
# Exercise style
# ------------------------------------------------------------------
def build_task_archetypes(analyses: List[DocumentAnalysisV2]) -> List[TaskArchetype]:
    archetypes: Dict[str, TaskArchetype] = {}
    for analysis in analyses:
        for exercise in analysis.embedded_exercises:
            for pattern, name, when_to_use, inputs, formats, topics in ARCHETYPE_PATTERNS:
                if not pattern.search(exercise.question_text):
                    continue
                if name in archetypes:
                    if exercise.id not in archetypes[name].source_evidence_ids:
                        archetypes[name].source_evidence_ids.append(exercise.id)
                    continue
                slug = re.sub(r"\s+", "-", name.lower())
                archetypes[name] = TaskArchetype(
                    id=f"archetype-{slug}",
                    name=name,
                    when_to_use=when_to_use,
                    prompt_template=f'Erstelle eine Aufgabe zum Thema "{name}". {{variationHint}}',
                    required_inputs=list(inputs),
                    expected_output_formats=list(formats),
                    variation_strategies=list(VARIATION_STRATEGIES),
                    source_evidence_ids=[exercise.id],
                    applicable_topics=list(topics),
                )
    return list(archetypes.values())


def build_exercise_style_profile(
    exercise_analyses: List[DocumentAnalysisV2],
    solution_analyses: List[DocumentAnalysisV2],
) -> ExerciseStyleProfile:
    analyses = exercise_analyses + solution_analyses
    verbs: Counter = Counter()
    phrases: List[str] = []
    numbering: List[str] = []
    letter_subtasks = numbered_subtasks = False
    subtask_total = exercises_with_subtasks = 0
    points: List[float] = []
    formats: Counter = Counter()
    bool_ops: List[str] = []
    number_notation: List[str] = []
    other_notation: List[str] = []
    step_by_step = 0
    output_formats: List[str] = []

    for analysis in analyses:
        style = analysis.style_signals
        structural = analysis.structural_signals
        if style.verb_frequency:
            verbs.update(style.verb_frequency)
        else:
            verbs.update(style.imperative_verbs)
        phrases.extend(style.question_phrases)
        numbering.extend(structural.task_numbering_patterns)
        if any(re.search(r"[a-z]\)", pattern) for pattern in structural.subtask_patterns):
            letter_subtasks = True
        if any(re.search(r"\d\.", pattern) for pattern in structural.subtask_patterns):
            numbered_subtasks = True
        bool_ops.extend(style.notation_conventions.boolean_operators)
        number_notation.extend(style.notation_conventions.number_prefixes)
        other_notation.extend(style.notation_conventions.set_notation + style.notation_conventions.other)

        for exercise in analysis.embedded_exercises:
            if exercise.subtasks:
                exercises_with_subtasks += 1
                subtask_total += len(exercise.subtasks)
            if exercise.points is not None:
                points.append(exercise.points)
            formats.update(exercise.expected_answer_format)
        step_by_step += sum(1 for example in analysis.worked_examples if len(example.solution_steps) > 2)

        if structural.uses_tables:
            output_formats.append("table")
        if structural.uses_code_blocks:
            output_formats.append("code")
        if structural.uses_formula_environments:
            output_formats.append("formula")

    avg_subtasks = subtask_total / exercises_with_subtasks if exercises_with_subtasks else 0.0
    avg_points = sum(points) / len(points) if points else 10.0
    return ExerciseStyleProfile(
        verbs=[VerbFrequency(verb=verb, frequency=count) for verb, count in verbs.most_common(MAX_VERBS)],
        typical_phrases=_unique(phrases)[:MAX_PHRASES],
        structure=ExerciseStructure(
            task_numbering=_unique(numbering),
            uses_letter_subtasks=letter_subtasks,
            uses_numbered_subtasks=numbered_subtasks,
            avg_subtasks_per_exercise=round(avg_subtasks, 1),
            points_usage=PointsUsage(
                uses_points=bool(points),
                avg_points=round(avg_points, 1),
                min_points=min(points) if points else 0.0,
                max_points=max(points) if points else 0.0,
                uses_half_points=any(value % 1 != 0 for value in points),
            ),
            typical_sections=list(TYPICAL_SECTIONS),
        ),
        answer_formats=AnswerFormatStats(
            frequencies=dict(formats),
            most_common=[fmt for fmt, _ in formats.most_common(MAX_ANSWER_FORMATS)],
        ),
        notation_conventions=ExerciseNotation(
            boolean_operators=_unique(bool_ops),
            number_notation=_unique(number_notation),
            other=_unique(other_notation),
        ),
        task_archetypes=build_task_archetypes(analyses),
        solution_style=SolutionStyle(
            uses_step_by_step=step_by_step > len(analyses) / 3,
            output_formats=_unique(output_formats),
        ),
        source_document_count=len(analyses),
        last_built_at=_now(),
    )


# ------------------------------------------------------------------
# Exam style
# ------------------------------------------------------------------
def build_exam_style_profile(
    exam_analyses: List[DocumentAnalysisV2],
    exercise_analyses: List[DocumentAnalysisV2],
) -> ExamStyleProfile:
    inferred = False
    if len(exam_analyses) >= 3:
        confidence = "high"
    elif exam_analyses:
        confidence = "medium"
    else:
        confidence = "low"
        inferred = bool(exercise_analyses)

    sources = exam_analyses if exam_analyses else exercise_analyses
    source_kind = "exam" if exam_analyses else "inferred-from-exercises"
    topic_confidence = "high" if exam_analyses else "low"

    operators: Counter = Counter()
    operator_examples: Dict[str, List[str]] = {}
    task_types: Counter = Counter()
    task_points: Dict[str, List[float]] = {}
    points_patterns: List[str] = []
    uses_subtasks = False
    pattern_types: List[str] = []
    subtask_examples: List[str] = []
    formatting = FormattingRules()
    all_points: List[float] = []
    difficulties: Counter = Counter()
    covered: List[CoveredTopic] = []
    seen_topics = set()

    for analysis in sources:
        style = analysis.style_signals
        structural = analysis.structural_signals
        for verb in style.imperative_verbs:
            operators[verb] += 1
        points_patterns.extend(structural.points_patterns)

        for topic in analysis.canonical_topics:
            if topic not in seen_topics:
                seen_topics.add(topic)
                covered.append(CoveredTopic(topic=topic, confidence=topic_confidence, source=source_kind))

        for exercise in analysis.embedded_exercises:
            if exercise.points is not None:
                all_points.append(exercise.points)
            if exercise.difficulty != "unknown":
                difficulties[exercise.difficulty] += 1
            if exercise.subtasks:
                uses_subtasks = True
                first = exercise.subtasks[0].strip().lower()
                if re.match(r"^\(?[a-z]\)", first):
                    pattern_types.append("letter")
                elif re.match(r"^\(?\d", first):
                    pattern_types.append("number")
                elif re.match(r"^\(?[ivx]+\)", first):
                    pattern_types.append("roman")
                subtask_examples.extend(exercise.subtasks[:3])

            task_type = classify_task_type(exercise.question_text)
            task_types[task_type] += 1
            if exercise.points:
                task_points.setdefault(task_type, []).append(exercise.points)

            lower = exercise.question_text.lower()
            for verb in operators:
                examples = operator_examples.setdefault(verb, [])
                if verb.lower() in lower and len(examples) < 3:
                    examples.append(exercise.question_text[:120])
            if _GRAPHIC_FORMATS & set(exercise.expected_answer_format):
                formatting.uses_graphics = True

        if structural.uses_tables:
            formatting.uses_tables = True
        if structural.uses_formula_environments or analysis.formulas:
            formatting.uses_formulas = True
        if structural.uses_code_blocks:
            formatting.uses_code_blocks = True
        if analysis.heuristic_signals is not None and analysis.heuristic_signals.uses_multiple_choice:
            formatting.uses_multiple_choice = True

    distinct_patterns = set(pattern_types)
    if not distinct_patterns:
        pattern_type = "none"
    elif len(distinct_patterns) == 1:
        pattern_type = pattern_types[0]
    else:
        pattern_type = "mixed"

    total_difficulty = sum(difficulties.values())
    if total_difficulty:
        mix = DifficultyPercentages(
            easy=round(difficulties["easy"] / total_difficulty * 100),
            medium=round(difficulties["medium"] / total_difficulty * 100),
            hard=round(difficulties["hard"] / total_difficulty * 100),
        )
    else:
        mix = DifficultyPercentages()

    return ExamStyleProfile(
        operators=[
            ExamOperator(operator=verb, frequency=count, examples=operator_examples.get(verb, []))
            for verb, count in operators.most_common(MAX_OPERATORS)
        ],
        task_types=ExamTaskTypes(
            types=[
                ExamTaskType(
                    type=task_type,
                    frequency=count,
                    typical_points=(
                        round(sum(task_points[task_type]) / len(task_points[task_type]))
                        if task_points.get(task_type)
                        else None
                    ),
                )
                for task_type, count in task_types.most_common()
            ],
            points_patterns=_unique(points_patterns),
        ),
        subtask_pattern=SubtaskPattern(
            uses_subtasks=uses_subtasks,
            pattern_type=pattern_type if uses_subtasks else "none",
            examples=_unique(subtask_examples)[:MAX_SUBTASK_EXAMPLES],
        ),
        formatting_rules=formatting,
        scoring=ExamScoring(
            average_points_per_task=round(sum(all_points) / len(all_points), 1) if all_points else 10.0,
            min_points=min(all_points) if all_points else 1.0,
            max_points=max(all_points) if all_points else 20.0,
            uses_half_points=any(value % 1 != 0 for value in all_points),
            total_points_typical=(sum(all_points) / len(sources)) if all_points and exam_analyses else None,
        ),
        difficulty_mix=mix,
        covered_topics=covered,
        overall_confidence=confidence,
        inferred_from_exercises=inferred,
        source_exam_count=len(exam_analyses),
        source_exercise_count=len(exercise_analyses) if inferred else 0,
        last_built_at=_now(),
    )


def weighted_coverage(records: List[DocumentAnalysisRecord]) -> int:
    """Average document coverage, scripts counted twice."""

    total_weight = 0
    weighted = 0
    for record in records:
        weight = SCRIPT_COVERAGE_WEIGHT if record.document_type == "script" else 1
        total_weight += weight
        weighted += weight * record.coverage_percent
    return round(weighted / total_weight) if total_weight else 0


# ------------------------------------------------------------------
# Builder
# ------------------------------------------------------------------
class ModuleProfileBuilder:
    def __init__(self, storage: AnalysisStorage, *, profile_version: str = PROFILE_VERSION):
        self.storage = storage
        self.profile_version = profile_version

    def _done_analyses(self, module_id: str) -> Tuple[List[DocumentAnalysisRecord], List[Tuple[DocumentAnalysisRecord, DocumentAnalysisV2]]]:
        records = [record for record in self.storage.list_document_analyses(module_id) if record.status == "done"]
        parsed = []
        for record in records:
            analysis = load_record_analysis(record)
            if analysis is not None:
                parsed.append((record, analysis))
        return records, parsed

    def build_module_profiles(self, module_id: str, *, force: bool = False) -> ModuleProfileRecord:
        """Return the module profile, rebuilding it when its source documents changed."""

        records, analyses = self._done_analyses(module_id)
        aggregate = compute_aggregate_hash(record.source_hash for record in records)
        existing = self.storage.get_module_profile(module_id)
        if (
            not force
            and existing is not None
            and existing.status == "done"
            and existing.source_hash_aggregate == aggregate
            and existing.profile_version == self.profile_version
        ):
            logger.debug("Module profile for %s is current", module_id)
            return existing

        by_type: Dict[str, List[DocumentAnalysisV2]] = {"script": [], "exercise": [], "solution": [], "exam": []}
        for record, analysis in analyses:
            by_type.setdefault(record.document_type, []).append(analysis)

        knowledge_index = build_knowledge_index(analyses)
        exercise_style = build_exercise_style_profile(by_type["exercise"], by_type["solution"])
        exam_style = build_exam_style_profile(by_type["exam"], by_type["exercise"])

        profile = ModuleProfileRecord(
            module_id=module_id,
            source_hash_aggregate=aggregate,
            profile_version=self.profile_version,
            exam_style_profile=exam_style,
            exercise_style_profile=exercise_style,
            knowledge_index=knowledge_index,
            status="done",
            coverage_percent=weighted_coverage(records),
            last_built_at=_now(),
            created_at=existing.created_at if existing else "",
        )
        profile = self.storage.upsert_module_profile(profile)
        logger.info(
            "Built module profile for %s: %d topics, %d concepts, %d archetypes, exam confidence %s",
            module_id,
            len(knowledge_index.canonical_topics),
            len(knowledge_index.concepts),
            len(exercise_style.task_archetypes),
            exam_style.overall_confidence,
        )
        return profile

    def invalidate_module_profile(self, module_id: str) -> Optional[ModuleProfileRecord]:
        """Force the next build to recompute; returns ``None`` when no profile exists."""

        existing = self.storage.get_module_profile(module_id)
        if existing is None:
            return None
        return self.storage.upsert_module_profile(
            existing.model_copy(update={"status": "queued", "source_hash_aggregate": ""})
        )


__all__ = [
    "ModuleProfileBuilder",
    "build_knowledge_index",
    "build_exercise_style_profile",
    "build_exam_style_profile",
    "build_task_archetypes",
    "classify_task_type",
    "weighted_coverage",
]
