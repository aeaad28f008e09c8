import pytest

from chunker import ChunkingConfig
from conftest import SCRIPT_TEXT, ScriptedService, script_response
from engines.analysis_cache import AnalysisStorage, DocumentAnalyzer, load_record_analysis, needs_analysis
from engines.extractor import ChunkExtractor
from engines.text_generation import ErrorKind, TextGenerationError
from normalizer import compute_source_hash
from schemas import Document, DocumentAnalysisRecord, DocumentAnalysisV1, to_json_dict


def _document(text=SCRIPT_TEXT, document_id="skript-1"):
    return Document(document_id=document_id, module_id="ti", document_type="script", text=text)


def _analyzer(store, service, **kwargs):
    storage = AnalysisStorage(store)
    return storage, DocumentAnalyzer(storage, ChunkExtractor(service), **kwargs)


def test_second_analysis_is_served_from_cache(memory_store):
    service = ScriptedService(script_response())
    storage, analyzer = _analyzer(memory_store, service)

    first = analyzer.analyze_document(_document())
    second = analyzer.analyze_document(_document())

    assert len(service.calls) == 1
    assert not first.from_cache
    assert second.from_cache
    assert second.analysis.model_dump() == first.analysis.model_dump()
    record = storage.get_document_analysis("ti", "skript-1")
    assert record.status == "done"
    assert record.source_hash == compute_source_hash(SCRIPT_TEXT)
    assert record.coverage_percent == 100


def test_whitespace_changes_do_not_invalidate_cache(memory_store):
    service = ScriptedService(script_response())
    _, analyzer = _analyzer(memory_store, service)

    analyzer.analyze_document(_document())
    outcome = analyzer.analyze_document(_document(SCRIPT_TEXT.replace(" ", "  ")))

    assert outcome.from_cache
    assert len(service.calls) == 1


def test_changed_text_or_force_reanalyses(memory_store):
    service = ScriptedService(script_response())
    _, analyzer = _analyzer(memory_store, service)

    analyzer.analyze_document(_document())
    analyzer.analyze_document(_document(SCRIPT_TEXT + " Neuer Satz."))
    analyzer.analyze_document(_document(SCRIPT_TEXT + " Neuer Satz."), force=True)

    assert len(service.calls) == 3


def test_version_bump_invalidates_cache(memory_store):
    service = ScriptedService(script_response())
    storage = AnalysisStorage(memory_store)
    DocumentAnalyzer(storage, ChunkExtractor(service), analysis_version="2.0.0").analyze_document(_document())

    outcome = DocumentAnalyzer(storage, ChunkExtractor(service), analysis_version="2.1.0").analyze_document(
        _document()
    )

    assert not outcome.from_cache
    assert len(service.calls) == 2


def test_progress_is_reported_per_chunk(memory_store):
    service = ScriptedService(script_response())
    _, analyzer = _analyzer(memory_store, service, chunking=ChunkingConfig(max_chars=120, overlap=0))
    seen = []

    outcome = analyzer.analyze_document(_document(), seen.append)

    assert outcome.record.chunk_count == len(service.calls) > 1
    assert seen[-1] == 100
    assert seen == sorted(seen)
    assert outcome.record.processed_chunk_count == outcome.record.chunk_count


def test_all_chunks_failing_marks_error(memory_store):
    service = ScriptedService(TextGenerationError(ErrorKind.TIMEOUT, "timed out"))
    storage, analyzer = _analyzer(memory_store, service)

    outcome = analyzer.analyze_document(_document())

    assert outcome.analysis is None
    assert outcome.record.status == "error"
    assert "timed out" in outcome.record.error_message
    assert storage.get_document_analysis("ti", "skript-1").analysis_payload is None


def test_error_records_are_retried(memory_store):
    service = ScriptedService(TextGenerationError(ErrorKind.TIMEOUT, "timed out"), script_response())
    _, analyzer = _analyzer(memory_store, service)

    analyzer.analyze_document(_document())
    outcome = analyzer.analyze_document(_document())

    assert outcome.record.status == "done"
    assert len(service.calls) == 2


def test_partial_failure_keeps_successful_chunks(memory_store):
    service = ScriptedService(script_response(), TextGenerationError(ErrorKind.TRANSPORT, "HTTP 502"))
    _, analyzer = _analyzer(memory_store, service, chunking=ChunkingConfig(max_chars=120, overlap=0))

    outcome = analyzer.analyze_document(_document())

    assert outcome.record.status == "done"
    assert 0 < outcome.record.coverage_percent < 100
    assert outcome.analysis.processing_metadata.errors
    assert "HTTP 502" in outcome.record.error_message


def test_reset_stale_running_demotes_records(memory_store):
    storage = AnalysisStorage(memory_store)
    storage.upsert_document_analysis(
        DocumentAnalysisRecord(id="ti:a", module_id="ti", document_id="a", document_type="script", status="running")
    )
    storage.upsert_document_analysis(
        DocumentAnalysisRecord(id="ti:b", module_id="ti", document_id="b", document_type="script", status="done")
    )
    analyzer = DocumentAnalyzer(storage, ChunkExtractor(ScriptedService("{}")))

    assert analyzer.reset_stale_running() == 1
    assert storage.get_document_analysis("ti", "a").status == "queued"
    assert storage.get_document_analysis("ti", "b").status == "done"


def test_legacy_payloads_are_migrated_on_read(memory_store):
    storage = AnalysisStorage(memory_store)
    legacy = DocumentAnalysisV1(topics=["Karnaugh"], concepts=[{"term": "Minterm", "definition": "Produktterm"}])
    record = storage.upsert_document_analysis(
        DocumentAnalysisRecord(
            id="ti:alt",
            module_id="ti",
            document_id="alt",
            document_type="script",
            status="done",
            analysis_payload=legacy.model_dump_json(by_alias=True),
        )
    )

    analysis = load_record_analysis(record)

    assert analysis.schema_version == "2.0.0"
    assert analysis.canonical_topics == ["kv-diagramm"]
    assert storage.get_document_analysis("ti", "alt").analysis_payload == record.analysis_payload


def test_needs_analysis_predicate():
    record = DocumentAnalysisRecord(
        id="m:d", module_id="m", document_id="d", document_type="exam",
        status="done", source_hash="abc", analysis_version="2.0.0",
    )

    assert not needs_analysis(record, "abc", "2.0.0")
    assert needs_analysis(record, "abd", "2.0.0")
    assert needs_analysis(record, "abc", "2.0.1")
    assert needs_analysis(record.model_copy(update={"status": "error"}), "abc", "2.0.0")
    assert needs_analysis(None, "abc", "2.0.0")


@pytest.mark.parametrize("status", ["queued", "running"])
def test_unfinished_record_with_matching_content_is_not_stale(status):
    record = DocumentAnalysisRecord(
        id="m:d", module_id="m", document_id="d", document_type="exam",
        status=status, source_hash="abc", analysis_version="2.0.0",
    )

    assert not needs_analysis(record, "abc", "2.0.0")
    assert needs_analysis(record, "", "2.0.0")


def test_cache_hit_requires_finished_record(memory_store):
    service = ScriptedService(script_response())
    storage, analyzer = _analyzer(memory_store, service)
    analyzer.analyze_document(_document())
    storage.update_document_analysis("ti", "skript-1", status="queued")

    outcome = analyzer.analyze_document(_document())

    assert not outcome.from_cache
    assert outcome.record.status == "done"
    assert len(service.calls) == 2


def test_storage_preserves_created_at_on_update(memory_store):
    storage = AnalysisStorage(memory_store)
    first = storage.upsert_document_analysis(
        DocumentAnalysisRecord(id="m:d", module_id="m", document_id="d", document_type="script")
    )

    updated = storage.update_document_analysis("m", "d", status="queued")

    assert updated.created_at == first.created_at
    assert to_json_dict(updated)["status"] == "queued"
    assert storage.update_document_analysis("m", "missing", status="queued") is None
    assert storage.delete_document_analysis("m", "d")
    assert not storage.delete_document_analysis("m", "d")


@pytest.mark.parametrize("payload", ["{broken", None])
def test_unreadable_payload_loads_as_none(payload):
    record = DocumentAnalysisRecord(
        id="m:d", module_id="m", document_id="d", document_type="script", analysis_payload=payload
    )

    assert load_record_analysis(record) is None
