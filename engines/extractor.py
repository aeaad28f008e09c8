"""Per-chunk extraction of typed, evidence-backed items.

One prompt per chunk goes to the text generation service. The response is
parsed leniently and every item must quote the source: items whose evidence
snippet cannot be found in the full document text are dropped silently.
Failures never raise; they come back as an unsuccessful :class:`ChunkResult`.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from chunker import TextChunk
from engines.text_generation import ErrorKind, TextGenerationError, TextGenerationService
from engines.validation import ChunkParseError, is_valid_latex
from normalizer import has_valid_evidence, truncate_snippet
from prompts.extraction import build_chunk_prompt
from schemas import RawChunkExtraction, parse_json_safe
from topic_normalizer import detect_subtasks

logger = logging.getLogger(__name__)


@dataclass
class ExtractedConcept:
    term: str
    definition: str
    related_terms: List[str] = field(default_factory=list)
    evidence_snippet: str = ""


@dataclass
class ExtractedFormula:
    latex: str
    description: Optional[str] = None
    variables: Dict[str, str] = field(default_factory=dict)
    evidence_snippet: str = ""


@dataclass
class ExtractedProcedure:
    name: str
    steps: List[str]
    when_to_use: Optional[str] = None
    evidence_snippet: str = ""


@dataclass
class ExtractedExample:
    problem: str
    solution_steps: List[str]
    result: Optional[str] = None
    topics: List[str] = field(default_factory=list)
    evidence_snippet: str = ""


@dataclass
class ExtractedExercise:
    question_text: str
    subtasks: List[str] = field(default_factory=list)
    topics: List[str] = field(default_factory=list)
    has_solution: bool = False
    solution: Optional[str] = None
    evidence_snippet: str = ""


@dataclass
class ChunkResult:
    chunk_index: int
    success: bool
    topics: List[str] = field(default_factory=list)
    concepts: List[ExtractedConcept] = field(default_factory=list)
    formulas: List[ExtractedFormula] = field(default_factory=list)
    procedures: List[ExtractedProcedure] = field(default_factory=list)
    worked_examples: List[ExtractedExample] = field(default_factory=list)
    exercises: List[ExtractedExercise] = field(default_factory=list)
    structural_signals: Dict[str, Any] = field(default_factory=dict)
    style_signals: Dict[str, Any] = field(default_factory=dict)
    coverage_notes: List[str] = field(default_factory=list)
    error_message: Optional[str] = None
    error_kind: Optional[str] = None

    @classmethod
    def failed(cls, chunk_index: int, message: str, kind: ErrorKind = ErrorKind.OTHER) -> "ChunkResult":
        return cls(chunk_index=chunk_index, success=False, error_message=message, error_kind=kind.value)


# ------------------------------------------------------------------
# Parsing
# ------------------------------------------------------------------
def parse_chunk_response(response: Any) -> RawChunkExtraction:
    """Parse a model response; raise :class:`ChunkParseError` when no JSON object is usable."""

    if not isinstance(response, str) or not response.strip():
        raise ChunkParseError("Empty response from text generation service")
    try:
        return parse_json_safe(response, RawChunkExtraction)
    except ValueError as exc:  # includes pydantic.ValidationError
        raise ChunkParseError(f"No valid JSON in response: {exc}") from exc


def _text(value: Any) -> str:
    if value is None or isinstance(value, (dict, list)):
        return ""
    return str(value).strip()


def _optional_text(value: Any) -> Optional[str]:
    text = _text(value)
    return text or None


def _string_list(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item).strip() for item in value if item is not None and str(item).strip()]


def _string_dict(value: Any) -> Dict[str, str]:
    if not isinstance(value, dict):
        return {}
    return {str(key): str(val) for key, val in value.items() if val is not None}


def _objects(items: List[Any]) -> List[Dict[str, Any]]:
    return [item for item in items if isinstance(item, dict)]


def validate_chunk_response(raw: RawChunkExtraction, chunk_index: int, source_text: str) -> ChunkResult:
    """Keep the items of ``raw`` that are complete and grounded in ``source_text``."""

    def grounded(obj: Dict[str, Any]) -> Optional[str]:
        snippet = _text(obj.get("evidenceSnippet"))
        if not has_valid_evidence(snippet, source_text):
            return None
        return truncate_snippet(snippet)

    result = ChunkResult(chunk_index=chunk_index, success=True)
    result.topics = _string_list(raw.topics)

    for obj in _objects(raw.concepts):
        term, definition = _text(obj.get("term")), _text(obj.get("definition"))
        snippet = grounded(obj)
        if term and definition and snippet is not None:
            result.concepts.append(
                ExtractedConcept(term, definition, _string_list(obj.get("relatedTerms")), snippet)
            )

    for obj in _objects(raw.formulas):
        latex = _text(obj.get("latex"))
        snippet = grounded(obj)
        if is_valid_latex(latex) and snippet is not None:
            result.formulas.append(
                ExtractedFormula(
                    latex,
                    _optional_text(obj.get("description")),
                    _string_dict(obj.get("variables")),
                    snippet,
                )
            )

    for obj in _objects(raw.procedures):
        name, steps = _text(obj.get("name")), _string_list(obj.get("steps"))
        snippet = grounded(obj)
        if name and steps and snippet is not None:
            result.procedures.append(
                ExtractedProcedure(name, steps, _optional_text(obj.get("whenToUse")), snippet)
            )

    for obj in _objects(raw.worked_examples):
        problem, steps = _text(obj.get("problem")), _string_list(obj.get("solutionSteps"))
        snippet = grounded(obj)
        if problem and steps and snippet is not None:
            result.worked_examples.append(
                ExtractedExample(
                    problem,
                    steps,
                    _optional_text(obj.get("result")),
                    _string_list(obj.get("topics")),
                    snippet,
                )
            )

    for obj in _objects(raw.exercises):
        question = _text(obj.get("questionText"))
        snippet = grounded(obj)
        if not question or snippet is None:
            continue
        subtasks = _string_list(obj.get("subtasks"))
        if not subtasks:
            subtasks = list(detect_subtasks(question).markers)
        result.exercises.append(
            ExtractedExercise(
                question_text=question,
                subtasks=subtasks,
                topics=_string_list(obj.get("topics")),
                has_solution=bool(obj.get("hasSolution")),
                solution=_optional_text(obj.get("solution")),
                evidence_snippet=snippet,
            )
        )

    result.structural_signals = dict(raw.structural_signals)
    result.style_signals = dict(raw.style_signals)
    # reported gaps carry no evidence
    result.coverage_notes = _string_list(raw.coverage_notes)
    return result


# ------------------------------------------------------------------
# Extractor
# ------------------------------------------------------------------
class ChunkExtractor:
    """Run the extraction prompt for single chunks against a text generation service."""

    def __init__(
        self,
        service: TextGenerationService,
        *,
        model: Optional[str] = None,
        max_retries: Optional[int] = None,
    ) -> None:
        self.service = service
        self.model = model
        self.max_retries = max_retries

    def analyze_chunk(
        self,
        chunk: TextChunk,
        document_type: str,
        total_chunks: int,
        full_text: str,
        document_id: str = "unknown",
    ) -> ChunkResult:
        prompt = build_chunk_prompt(document_type, chunk.text, chunk.index, total_chunks)
        try:
            response = self.service.generate(
                prompt,
                model=self.model,
                json_mode=True,
                max_retries=self.max_retries,
            )
            raw = parse_chunk_response(response)
        except TextGenerationError as exc:
            logger.warning(
                "Chunk %d/%d of %s failed (%s): %s",
                chunk.index + 1,
                total_chunks,
                document_id,
                exc.kind.value,
                exc.message,
            )
            return ChunkResult.failed(chunk.index, exc.message, exc.kind)
        except ChunkParseError as exc:
            logger.warning("Chunk %d/%d of %s returned unparseable output: %s", chunk.index + 1, total_chunks, document_id, exc)
            return ChunkResult.failed(chunk.index, str(exc))
        except Exception as exc:
            # third-party services may raise anything; only the message is kept
            logger.warning("Chunk %d/%d of %s failed: %s", chunk.index + 1, total_chunks, document_id, exc)
            return ChunkResult.failed(chunk.index, str(exc) or exc.__class__.__name__)

        result = validate_chunk_response(raw, chunk.index, full_text)
        logger.debug(
            "Chunk %d/%d of %s: %d concepts, %d formulas, %d procedures, %d examples, %d exercises",
            chunk.index + 1,
            total_chunks,
            document_id,
            len(result.concepts),
            len(result.formulas),
            len(result.procedures),
            len(result.worked_examples),
            len(result.exercises),
        )
        return result


__all__ = [
    "ExtractedConcept",
    "ExtractedFormula",
    "ExtractedProcedure",
    "ExtractedExample",
    "ExtractedExercise",
    "ChunkResult",
    "ChunkExtractor",
    "parse_chunk_response",
    "validate_chunk_response",
]
