"""Pydantic schemas for analysis records, profiles and dedup results.

Attributes are snake_case; JSON uses camelCase aliases, which are the stable
field names other subsystems read. Serialise with :func:`to_json_dict`.

Document analysis payloads form a tagged union on ``schemaVersion``:
legacy ``1.0.0`` payloads (or payloads without a version) are read-only and
are migrated to ``2.0.0`` in memory by :func:`migrate_v1_to_v2`.
"""

from __future__ import annotations

import json
from typing import Any, Dict, List, Literal, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from topic_normalizer import is_noise_topic, normalize_topics

__all__ = [
    "ANALYSIS_SCHEMA_VERSION",
    "LEGACY_SCHEMA_VERSION",
    "PROFILE_VERSION",
    "MAX_EVIDENCE_SNIPPETS",
    "DOCUMENT_TYPES",
    "AnalysisPayloadError",
    "Document",
    "EvidenceRef",
    "Concept",
    "Formula",
    "Procedure",
    "WorkedExample",
    "Exercise",
    "StructuralSignals",
    "StyleSignals",
    "HeuristicSignals",
    "ProcessingMetadata",
    "DocumentAnalysisV1",
    "DocumentAnalysisV2",
    "AnalysisPayload",
    "RawChunkExtraction",
    "DocumentAnalysisRecord",
    "KnowledgeIndex",
    "ExerciseStyleProfile",
    "ExamStyleProfile",
    "ModuleProfileRecord",
    "Topic",
    "TopicCoverage",
    "BlueprintItem",
    "TaskBlueprint",
    "TaskFingerprintData",
    "SemanticCheckResult",
    "CoverageStats",
    "AnalysisJob",
    "AnalysisQueueState",
    "Task",
    "parse_analysis_payload",
    "migrate_v1_to_v2",
    "as_v2",
    "to_json_dict",
    "parse_json_safe",
]

ANALYSIS_SCHEMA_VERSION = "2.0.0"
LEGACY_SCHEMA_VERSION = "1.0.0"
PROFILE_VERSION = "2.0.0"
MAX_EVIDENCE_SNIPPETS = 5

DocumentType = Literal["script", "exercise", "solution", "exam"]
AnalysisStatus = Literal["missing", "queued", "running", "done", "error"]
ConfidenceLevel = Literal["high", "medium", "low", "inferred"]
Difficulty = Literal["easy", "medium", "hard"]
ExerciseDifficulty = Literal["easy", "medium", "hard", "unknown"]
QuestionType = Literal["definition", "apply", "compare", "calculation", "mcq", "transfer"]
AnswerMode = Literal["type", "draw", "either"]

DOCUMENT_TYPES = ("script", "exercise", "solution", "exam")


class AnalysisPayloadError(ValueError):
    """Raised when a stored analysis payload has an unknown shape or version."""


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def to_json_dict(model: BaseModel) -> Dict[str, Any]:
    """JSON-ready dict using the camelCase field names."""

    return model.model_dump(mode="json", by_alias=True)


# ------------------------------------------------------------------
# Source documents and extracted items
# ------------------------------------------------------------------
class Document(CamelModel):
    document_id: str
    module_id: str
    document_type: DocumentType
    text: str
    document_name: Optional[str] = None


class EvidenceRef(CamelModel):
    document_id: str = "unknown"
    snippet: str = Field(description="Quoted excerpt (max 200 chars) proving the item exists in the source.")
    page_hint: Optional[str] = None


class Concept(CamelModel):
    id: str
    term: str
    definition: str
    related_terms: List[str] = Field(default_factory=list)
    evidence: List[EvidenceRef] = Field(default_factory=list)
    confidence: ConfidenceLevel = "high"


class Formula(CamelModel):
    id: str
    latex: str = Field(description="LaTeX source; plain-text descriptions are rejected upstream.")
    description: Optional[str] = None
    variables: Dict[str, str] = Field(default_factory=dict)
    context: Optional[str] = None
    evidence: List[EvidenceRef] = Field(default_factory=list)
    confidence: ConfidenceLevel = "high"


class Procedure(CamelModel):
    id: str
    name: str
    description: Optional[str] = None
    steps: List[str]
    when_to_use: Optional[str] = None
    notes: List[str] = Field(default_factory=list)
    evidence: List[EvidenceRef] = Field(default_factory=list)
    confidence: ConfidenceLevel = "high"


class WorkedExample(CamelModel):
    id: str
    problem: str
    solution_steps: List[str]
    result: Optional[str] = None
    topics: List[str] = Field(default_factory=list)
    evidence: List[EvidenceRef] = Field(default_factory=list)


class Exercise(CamelModel):
    id: str
    question_text: str
    subtasks: List[str] = Field(default_factory=list)
    expected_answer_format: List[str] = Field(default_factory=list)
    difficulty: ExerciseDifficulty = "unknown"
    points: Optional[float] = None
    topics: List[str] = Field(default_factory=list)
    has_solution: bool = False
    solution: Optional[str] = None
    evidence: List[EvidenceRef] = Field(default_factory=list)


# ------------------------------------------------------------------
# Document signals
# ------------------------------------------------------------------
class StructuralSignals(CamelModel):
    """Layout signals reported by the model. Not evidence-validated."""

    uses_tables: bool = False
    uses_code_blocks: bool = False
    uses_formula_environments: bool = False
    task_numbering_patterns: List[str] = Field(default_factory=list)
    subtask_patterns: List[str] = Field(default_factory=list)
    points_patterns: List[str] = Field(default_factory=list)
    section_patterns: List[str] = Field(default_factory=list)
    task_start_phrases: List[str] = Field(default_factory=list)


class NotationConventions(CamelModel):
    boolean_operators: List[str] = Field(default_factory=list)
    number_prefixes: List[str] = Field(default_factory=list)
    set_notation: List[str] = Field(default_factory=list)
    other: List[str] = Field(default_factory=list)


class StyleSignals(CamelModel):
    imperative_verbs: List[str] = Field(default_factory=list)
    verb_frequency: Dict[str, int] = Field(default_factory=dict)
    question_phrases: List[str] = Field(default_factory=list)
    notation_conventions: NotationConventions = Field(default_factory=NotationConventions)
    preferred_answer_formats: List[str] = Field(default_factory=list)


class DifficultyMix(CamelModel):
    easy: float = 0.33
    medium: float = 0.34
    hard: float = 0.33


class HeuristicSignals(CamelModel):
    """Regex/keyword summaries derived after merging.

    Kept apart from the evidence-validated item lists; ``confidence`` is always
    ``low`` so consumers can ignore the block wholesale.
    """

    confidence: Literal["low"] = "low"
    has_subtasks: bool = False
    uses_letter_subtasks: bool = False
    uses_numbered_subtasks: bool = False
    has_points_distribution: bool = False
    has_tables: bool = False
    has_code_blocks: bool = False
    uses_multiple_choice: bool = False
    common_verbs: List[str] = Field(default_factory=list)
    typical_phrases: List[str] = Field(default_factory=list)
    difficulty_mix: Optional[DifficultyMix] = None
    average_points: Optional[float] = None


class ProcessingMetadata(CamelModel):
    chunks_processed: int = 0
    total_chunks: int = 0
    coverage_percent: int = 0
    errors: List[str] = Field(default_factory=list)
    coverage_notes: List[str] = Field(default_factory=list)
    processed_at: str = ""


# ------------------------------------------------------------------
# Analysis payloads (tagged union on schemaVersion)
# ------------------------------------------------------------------
class V1Concept(CamelModel):
    term: str = ""
    definition: Optional[str] = None
    evidence: List[str] = Field(default_factory=list)


class V1Formula(CamelModel):
    latex: Optional[str] = None
    value: Optional[str] = None
    description: Optional[str] = None
    evidence: List[str] = Field(default_factory=list)


class V1StructuralPatterns(CamelModel):
    has_subtasks: bool = False
    uses_letter_subtasks: bool = False
    uses_numbered_subtasks: bool = False
    has_points_distribution: bool = False
    has_tables: bool = False
    has_code_blocks: bool = False
    common_verbs: List[str] = Field(default_factory=list)
    typical_phrases: List[str] = Field(default_factory=list)


class DocumentAnalysisV1(CamelModel):
    schema_version: Literal["1.0.0"] = LEGACY_SCHEMA_VERSION
    document_type: Optional[DocumentType] = None
    topics: List[str] = Field(default_factory=list)
    concepts: List[V1Concept] = Field(default_factory=list)
    formulas: List[V1Formula] = Field(default_factory=list)
    items: List[Dict[str, Any]] = Field(default_factory=list)
    structural_patterns: Optional[V1StructuralPatterns] = None
    coverage_notes: List[str] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    coverage_percent: Optional[float] = None


class DocumentAnalysisV2(CamelModel):
    schema_version: Literal["2.0.0"] = ANALYSIS_SCHEMA_VERSION
    document_type: DocumentType
    canonical_topics: List[str] = Field(default_factory=list)
    raw_topics: List[str] = Field(default_factory=list)
    topic_mapping: Dict[str, str] = Field(default_factory=dict)
    concepts: List[Concept] = Field(default_factory=list)
    formulas: List[Formula] = Field(default_factory=list)
    procedures: List[Procedure] = Field(default_factory=list)
    worked_examples: List[WorkedExample] = Field(default_factory=list)
    embedded_exercises: List[Exercise] = Field(default_factory=list)
    structural_signals: StructuralSignals = Field(default_factory=StructuralSignals)
    style_signals: StyleSignals = Field(default_factory=StyleSignals)
    heuristic_signals: Optional[HeuristicSignals] = None
    processing_metadata: ProcessingMetadata = Field(default_factory=ProcessingMetadata)


AnalysisPayload = Union[DocumentAnalysisV1, DocumentAnalysisV2]


def parse_analysis_payload(raw: Union[str, bytes, Dict[str, Any]]) -> AnalysisPayload:
    """Validate a stored payload into the member of the union its tag selects."""

    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise AnalysisPayloadError(f"Analysis payload is not valid JSON: {exc}") from exc
    if not isinstance(raw, dict):
        raise AnalysisPayloadError("Analysis payload must be a JSON object")

    version = raw.get("schemaVersion") or raw.get("schema_version") or LEGACY_SCHEMA_VERSION
    try:
        if version == ANALYSIS_SCHEMA_VERSION:
            return DocumentAnalysisV2.model_validate(raw)
        if version == LEGACY_SCHEMA_VERSION:
            data = {key: value for key, value in raw.items() if key not in ("schemaVersion", "schema_version")}
            return DocumentAnalysisV1.model_validate(data)
    except ValidationError as exc:
        raise AnalysisPayloadError(f"Invalid {version} analysis payload: {exc}") from exc
    raise AnalysisPayloadError(f"Unsupported analysis schema version: {version}")


_LATEX_HINT_CHARS = set("\\^_{}")


def migrate_v1_to_v2(
    v1: DocumentAnalysisV1,
    document_type: str,
    *,
    document_id: str = "unknown",
    processed_at: str = "",
) -> DocumentAnalysisV2:
    """Best-effort, side-effect free upgrade of a legacy payload.

    Concepts without a definition and formulas without a LaTeX marker are
    dropped. Legacy structural patterns were keyword guesses and land in
    ``heuristic_signals``.
    """

    raw_topics = [topic for topic in v1.topics if not is_noise_topic(topic)]
    normalized = normalize_topics(raw_topics)

    def _evidence(snippets: List[str]) -> List[EvidenceRef]:
        return [
            EvidenceRef(document_id=document_id, snippet=str(snippet)[:200])
            for snippet in snippets[:MAX_EVIDENCE_SNIPPETS]
            if snippet
        ]

    concepts = [
        Concept(
            id=f"concept-{index}",
            term=concept.term,
            definition=concept.definition,
            evidence=_evidence(concept.evidence),
            confidence="medium",
        )
        for index, concept in enumerate(c for c in v1.concepts if c.term and c.definition)
    ]

    formulas: List[Formula] = []
    for formula in v1.formulas:
        latex = formula.latex or formula.value or ""
        if not latex or not (_LATEX_HINT_CHARS & set(latex)):
            continue
        formulas.append(
            Formula(
                id=f"formula-{len(formulas)}",
                latex=latex,
                description=formula.description,
                evidence=_evidence(formula.evidence),
                confidence="medium",
            )
        )

    patterns = v1.structural_patterns
    heuristic = None
    if patterns is not None:
        heuristic = HeuristicSignals(
            has_subtasks=patterns.has_subtasks,
            uses_letter_subtasks=patterns.uses_letter_subtasks,
            uses_numbered_subtasks=patterns.uses_numbered_subtasks,
            has_points_distribution=patterns.has_points_distribution,
            has_tables=patterns.has_tables,
            has_code_blocks=patterns.has_code_blocks,
            common_verbs=list(patterns.common_verbs),
            typical_phrases=list(patterns.typical_phrases),
        )

    return DocumentAnalysisV2(
        document_type=v1.document_type or document_type,
        canonical_topics=normalized.canonical_topics,
        raw_topics=raw_topics,
        topic_mapping=normalized.topic_mapping,
        concepts=concepts,
        formulas=formulas,
        structural_signals=StructuralSignals(
            uses_tables=bool(patterns and patterns.has_tables),
            uses_code_blocks=bool(patterns and patterns.has_code_blocks),
            uses_formula_environments=bool(formulas),
        ),
        style_signals=StyleSignals(
            imperative_verbs=list(patterns.common_verbs) if patterns else [],
            question_phrases=list(patterns.typical_phrases) if patterns else [],
        ),
        heuristic_signals=heuristic,
        processing_metadata=ProcessingMetadata(
            coverage_percent=int(round(v1.coverage_percent or 0)),
            errors=list(v1.errors),
            coverage_notes=list(v1.coverage_notes),
            processed_at=processed_at,
        ),
    )


def as_v2(
    payload: AnalysisPayload,
    document_type: str,
    *,
    document_id: str = "unknown",
    processed_at: str = "",
) -> DocumentAnalysisV2:
    if isinstance(payload, DocumentAnalysisV2):
        return payload
    return migrate_v1_to_v2(payload, document_type, document_id=document_id, processed_at=processed_at)


# ------------------------------------------------------------------
# Raw model output for one chunk
# ------------------------------------------------------------------
class RawChunkExtraction(CamelModel):
    """Lenient view of a chunk response; items are validated by the extractor."""

    topics: List[Any] = Field(default_factory=list)
    concepts: List[Any] = Field(default_factory=list)
    formulas: List[Any] = Field(default_factory=list)
    procedures: List[Any] = Field(default_factory=list)
    worked_examples: List[Any] = Field(default_factory=list)
    exercises: List[Any] = Field(default_factory=list)
    structural_signals: Dict[str, Any] = Field(default_factory=dict)
    style_signals: Dict[str, Any] = Field(default_factory=dict)
    coverage_notes: List[Any] = Field(default_factory=list)

    @field_validator(
        "topics", "concepts", "formulas", "procedures", "worked_examples", "exercises", "coverage_notes",
        mode="before",
    )
    @classmethod
    def _coerce_list(cls, value: Any) -> List[Any]:
        return value if isinstance(value, list) else []

    @field_validator("structural_signals", "style_signals", mode="before")
    @classmethod
    def _coerce_dict(cls, value: Any) -> Dict[str, Any]:
        return value if isinstance(value, dict) else {}


# ------------------------------------------------------------------
# Durable records
# ------------------------------------------------------------------
class DocumentAnalysisRecord(CamelModel):
    id: str
    module_id: str
    document_id: str
    document_type: DocumentType
    document_name: Optional[str] = None
    source_hash: str = ""
    analysis_version: str = ""
    status: AnalysisStatus = "missing"
    coverage_percent: int = 0
    analysis_payload: Optional[str] = Field(
        default=None,
        description="Serialized merged analysis (JSON text of a tagged payload).",
    )
    chunk_count: int = 0
    processed_chunk_count: int = 0
    last_analyzed_at: Optional[str] = None
    error_message: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""

    @staticmethod
    def make_id(module_id: str, document_id: str) -> str:
        return f"{module_id}:{document_id}"


class DocumentRef(CamelModel):
    document_id: str
    document_name: Optional[str] = None


class TopicIndexEntry(CamelModel):
    documents: List[DocumentRef] = Field(default_factory=list)
    concept_ids: List[str] = Field(default_factory=list)
    formula_ids: List[str] = Field(default_factory=list)
    procedure_ids: List[str] = Field(default_factory=list)
    example_ids: List[str] = Field(default_factory=list)
    exercise_ids: List[str] = Field(default_factory=list)


class KnowledgeIndex(CamelModel):
    schema_version: Literal["2.0.0"] = PROFILE_VERSION
    canonical_topics: List[str] = Field(default_factory=list)
    topic_display_names: Dict[str, str] = Field(default_factory=dict)
    topic_synonyms: Dict[str, List[str]] = Field(default_factory=dict)
    topic_frequency: Dict[str, int] = Field(default_factory=dict)
    topic_index: Dict[str, TopicIndexEntry] = Field(default_factory=dict)
    concepts: List[Concept] = Field(default_factory=list)
    formulas: List[Formula] = Field(default_factory=list)
    procedures: List[Procedure] = Field(default_factory=list)
    worked_examples: List[WorkedExample] = Field(default_factory=list)
    source_document_count: int = 0
    last_built_at: str = ""


class VerbFrequency(CamelModel):
    verb: str
    frequency: int


class PointsUsage(CamelModel):
    uses_points: bool = False
    avg_points: float = 10.0
    min_points: float = 0.0
    max_points: float = 0.0
    uses_half_points: bool = False


class ExerciseStructure(CamelModel):
    task_numbering: List[str] = Field(default_factory=list)
    uses_letter_subtasks: bool = False
    uses_numbered_subtasks: bool = False
    avg_subtasks_per_exercise: float = 0.0
    points_usage: PointsUsage = Field(default_factory=PointsUsage)
    typical_sections: List[str] = Field(default_factory=list)


class AnswerFormatStats(CamelModel):
    frequencies: Dict[str, int] = Field(default_factory=dict)
    most_common: List[str] = Field(default_factory=list)


class ExerciseNotation(CamelModel):
    boolean_operators: List[str] = Field(default_factory=list)
    number_notation: List[str] = Field(default_factory=list)
    dont_care_symbols: List[str] = Field(default_factory=list)
    index_conventions: List[str] = Field(default_factory=list)
    other: List[str] = Field(default_factory=list)


class DifficultyRange(CamelModel):
    min: Difficulty = "easy"
    max: Difficulty = "hard"


class TaskArchetype(CamelModel):
    id: str
    name: str
    when_to_use: str
    prompt_template: str
    required_inputs: List[str] = Field(default_factory=list)
    expected_output_formats: List[str] = Field(default_factory=list)
    variation_strategies: List[str] = Field(default_factory=list)
    source_evidence_ids: List[str] = Field(default_factory=list)
    difficulty_range: DifficultyRange = Field(default_factory=DifficultyRange)
    applicable_topics: List[str] = Field(default_factory=list)


class SolutionStyle(CamelModel):
    uses_step_by_step: bool = False
    typical_steps: List[str] = Field(default_factory=list)
    output_formats: List[str] = Field(default_factory=list)


class ExerciseStyleProfile(CamelModel):
    schema_version: Literal["2.0.0"] = PROFILE_VERSION
    verbs: List[VerbFrequency] = Field(default_factory=list)
    typical_phrases: List[str] = Field(default_factory=list)
    structure: ExerciseStructure = Field(default_factory=ExerciseStructure)
    answer_formats: AnswerFormatStats = Field(default_factory=AnswerFormatStats)
    notation_conventions: ExerciseNotation = Field(default_factory=ExerciseNotation)
    task_archetypes: List[TaskArchetype] = Field(default_factory=list)
    solution_style: SolutionStyle = Field(default_factory=SolutionStyle)
    source_document_count: int = 0
    last_built_at: str = ""


class ExamOperator(CamelModel):
    operator: str
    frequency: int
    examples: List[str] = Field(default_factory=list)


class ExamTaskType(CamelModel):
    type: str
    frequency: int
    typical_points: Optional[int] = None


class ExamTaskTypes(CamelModel):
    types: List[ExamTaskType] = Field(default_factory=list)
    points_patterns: List[str] = Field(default_factory=list)


class SubtaskPattern(CamelModel):
    uses_subtasks: bool = False
    pattern_type: Literal["letter", "number", "roman", "mixed", "none"] = "none"
    examples: List[str] = Field(default_factory=list)


class FormattingRules(CamelModel):
    uses_tables: bool = False
    uses_formulas: bool = False
    uses_multiple_choice: bool = False
    uses_code_blocks: bool = False
    uses_graphics: bool = False


class ExamScoring(CamelModel):
    average_points_per_task: float = 10.0
    min_points: float = 1.0
    max_points: float = 20.0
    uses_half_points: bool = False
    total_points_typical: Optional[float] = None


class DifficultyPercentages(CamelModel):
    easy: int = 33
    medium: int = 34
    hard: int = 33


class CoveredTopic(CamelModel):
    topic: str
    confidence: ConfidenceLevel
    source: Literal["exam", "inferred-from-exercises"]


class ExamStyleProfile(CamelModel):
    schema_version: Literal["2.0.0"] = PROFILE_VERSION
    operators: List[ExamOperator] = Field(default_factory=list)
    task_types: ExamTaskTypes = Field(default_factory=ExamTaskTypes)
    subtask_pattern: SubtaskPattern = Field(default_factory=SubtaskPattern)
    formatting_rules: FormattingRules = Field(default_factory=FormattingRules)
    scoring: ExamScoring = Field(default_factory=ExamScoring)
    difficulty_mix: DifficultyPercentages = Field(default_factory=DifficultyPercentages)
    covered_topics: List[CoveredTopic] = Field(default_factory=list)
    overall_confidence: ConfidenceLevel = "low"
    inferred_from_exercises: bool = False
    source_exam_count: int = 0
    source_exercise_count: int = 0
    last_built_at: str = ""


class ModuleProfileRecord(CamelModel):
    module_id: str
    source_hash_aggregate: str = ""
    profile_version: str = ""
    exam_style_profile: Optional[ExamStyleProfile] = None
    exercise_style_profile: Optional[ExerciseStyleProfile] = None
    knowledge_index: Optional[KnowledgeIndex] = None
    status: AnalysisStatus = "missing"
    coverage_percent: int = 0
    last_built_at: Optional[str] = None
    error_message: Optional[str] = None
    created_at: str = ""
    updated_at: str = ""


# ------------------------------------------------------------------
# Topics, coverage and blueprints
# ------------------------------------------------------------------
class Topic(CamelModel):
    topic_id: str
    name: str
    display_name: str = ""
    evidence_snippets: List[str] = Field(default_factory=list)
    doc_ids: List[str] = Field(default_factory=list)
    weight: float = 1.0


class DifficultyCounts(CamelModel):
    easy: int = 0
    medium: int = 0
    hard: int = 0


class TopicCoverage(CamelModel):
    module_id: str
    topic_id: str
    topic_name: str
    tasks_generated_count: int = 0
    last_generated_at: Optional[str] = None
    by_difficulty: DifficultyCounts = Field(default_factory=DifficultyCounts)


class BlueprintItem(CamelModel):
    topic_id: str
    topic_name: str
    difficulty: Difficulty
    question_type: QuestionType
    answer_mode: AnswerMode
    evidence_snippets: List[str] = Field(default_factory=list)
    doc_ids: List[str] = Field(default_factory=list)


class TaskBlueprint(CamelModel):
    module_id: str
    target_count: int
    items: List[BlueprintItem] = Field(default_factory=list)
    covered_topic_ids: List[str] = Field(default_factory=list)
    created_at: str = ""


class CoverageStats(CamelModel):
    total_topics: int = 0
    covered_topics: int = 0
    coverage_percent: float = 0.0
    topics_with_no_tasks: List[str] = Field(default_factory=list)
    topics_needing_more_tasks: List[str] = Field(default_factory=list)
    avg_tasks_per_topic: float = 0.0


# ------------------------------------------------------------------
# Tasks and dedup results
# ------------------------------------------------------------------
class Task(CamelModel):
    id: str
    module_id: str = ""
    question: str
    solution: str = ""
    tags: List[str] = Field(default_factory=list)
    topic_id: Optional[str] = None
    difficulty: Optional[Difficulty] = None
    fingerprint: Optional[str] = None
    source_doc_ids: List[str] = Field(default_factory=list)


class TaskFingerprintData(CamelModel):
    fingerprint: str
    normalized_question: str
    normalized_solution: str
    normalized_tags: List[str] = Field(default_factory=list)


class SemanticCheckResult(CamelModel):
    is_duplicate: bool
    similarity: float
    matching_task_id: Optional[str] = None
    method: Literal["soft", "embedding"] = "soft"


# ------------------------------------------------------------------
# Queue
# ------------------------------------------------------------------
class AnalysisJob(CamelModel):
    id: str
    module_id: str
    document_id: str
    document_type: DocumentType
    document_name: str = ""
    text: str
    priority: int = 0
    added_at: float = 0.0


class AnalysisQueueState(CamelModel):
    queue: List[AnalysisJob] = Field(default_factory=list)
    current_job: Optional[AnalysisJob] = None


# ------------------------------------------------------------------
# JSON helpers
# ------------------------------------------------------------------
_T = TypeVar("_T", bound=BaseModel)


def _find_first_json_object(text: str) -> tuple[str, int, int]:
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for idx in range(start, len(text)):
            char = text[idx]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
                continue
            if char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    candidate = text[start : idx + 1]
                    try:
                        json.loads(candidate)
                    except ValueError:
                        break
                    return candidate, start, idx + 1
        start = text.find("{", start + 1)
    raise ValueError("No JSON object found in provided text")


def parse_json_safe(text: str, model: Type[_T]) -> _T:
    """Parse ``text`` into ``model``, falling back to its first ``{...}`` block.

    Model responses often wrap the JSON in prose or code fences; anything around
    the first balanced object is ignored.
    """

    first_error: Exception | None = None
    try:
        return model.model_validate_json(text)
    except (ValidationError, ValueError, TypeError) as exc:
        first_error = exc

    try:
        snippet, _, _ = _find_first_json_object(text or "")
    except ValueError:
        if first_error:
            raise first_error
        raise

    return model.model_validate_json(snippet)
