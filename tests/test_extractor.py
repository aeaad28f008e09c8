import json

import pytest

from chunker import TextChunk
from conftest import EXERCISE_TEXT, SCRIPT_TEXT, ScriptedService, exercise_response, script_response
from engines.extractor import ChunkExtractor, parse_chunk_response, validate_chunk_response
from engines.text_generation import ErrorKind, TextGenerationError
from engines.validation import ChunkParseError
from prompts.extraction import build_chunk_prompt, get_prompt, load_prompts


def _chunk(text: str) -> TextChunk:
    return TextChunk(index=0, start_pos=0, end_pos=len(text), text=text)


def test_prompts_exist_for_every_document_type():
    assert set(load_prompts()) == {"script", "exercise", "solution", "exam"}
    with pytest.raises(KeyError):
        get_prompt("lecture-notes")


def test_chunk_prompt_contains_text_and_position():
    prompt = build_chunk_prompt("exam", "Aufgabe 1: Zeichne einen Automaten.", 1, 3)

    assert "Chunk 2 von 3" in prompt
    assert "Aufgabe 1: Zeichne einen Automaten." in prompt
    assert get_prompt("exam").focus in prompt
    assert "evidenceSnippet" in prompt


def test_parse_chunk_response_rejects_empty_and_prose():
    with pytest.raises(ChunkParseError):
        parse_chunk_response("")
    with pytest.raises(ChunkParseError):
        parse_chunk_response("Ich kann dieses Dokument nicht analysieren.")


def test_validation_drops_ungrounded_and_incomplete_items():
    raw = parse_chunk_response(json.dumps(script_response()))

    result = validate_chunk_response(raw, 0, SCRIPT_TEXT)

    assert result.success
    assert [concept.term for concept in result.concepts] == ["KV-Diagramm"]
    assert result.concepts[0].related_terms == ["Karnaugh-Veitch"]
    assert [formula.latex for formula in result.formulas] == ["\\overline{x} + 1"]
    assert [procedure.name for procedure in result.procedures] == ["Zweierkomplement bilden"]
    assert result.coverage_notes == ["Keine Beispiele im Skript"]


def test_validation_requires_evidence_snippet():
    raw = parse_chunk_response(
        json.dumps({"concepts": [{"term": "Gatter", "definition": "Logisches Bauteil"}]})
    )

    assert validate_chunk_response(raw, 0, "Gatter sind logische Bauteile.").concepts == []


def test_exercise_subtasks_are_detected_when_missing():
    raw = parse_chunk_response(json.dumps(exercise_response()))

    result = validate_chunk_response(raw, 0, EXERCISE_TEXT)

    assert len(result.exercises) == 2
    assert result.exercises[0].subtasks == []
    assert result.exercises[1].subtasks == ["a)", "b)"]


def test_analyze_chunk_calls_service_in_json_mode():
    service = ScriptedService("Ergebnis:\n" + json.dumps(script_response()))
    extractor = ChunkExtractor(service, model="analysis-model")

    result = extractor.analyze_chunk(_chunk(SCRIPT_TEXT), "script", 1, SCRIPT_TEXT, "skript-1")

    assert result.success
    assert len(result.concepts) == 1
    assert service.calls[0]["json_mode"] is True
    assert service.calls[0]["model"] == "analysis-model"
    assert SCRIPT_TEXT in service.calls[0]["prompt"]


def test_analyze_chunk_reports_service_failures():
    service = ScriptedService(TextGenerationError(ErrorKind.RATE_LIMITED, "HTTP 429: slow down"))

    result = ChunkExtractor(service).analyze_chunk(_chunk(SCRIPT_TEXT), "script", 1, SCRIPT_TEXT)

    assert not result.success
    assert result.error_kind == "rateLimited"
    assert result.error_message == "HTTP 429: slow down"


def test_analyze_chunk_reports_unparseable_output():
    service = ScriptedService("Leider keine Antwort.")

    result = ChunkExtractor(service).analyze_chunk(_chunk(SCRIPT_TEXT), "script", 1, SCRIPT_TEXT)

    assert not result.success
    assert result.error_kind == "other"
    assert "No valid JSON" in result.error_message
