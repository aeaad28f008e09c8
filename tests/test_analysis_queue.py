import itertools
import time

from conftest import EXERCISE_TEXT, SCRIPT_TEXT, ScriptedService, exercise_response, script_response
from engines.analysis_cache import AnalysisStorage, DocumentAnalyzer
from engines.analysis_queue import AnalysisQueue
from engines.extractor import ChunkExtractor
from engines.module_profile import ModuleProfileBuilder
from engines.text_generation import ErrorKind, TextGenerationError
from schemas import AnalysisJob, AnalysisQueueState, DocumentAnalysisRecord, to_json_dict
from store import QUEUE_STATE_KEY


def _queue(store, service, *, with_profiles=True):
    storage = AnalysisStorage(store)
    analyzer = DocumentAnalyzer(storage, ChunkExtractor(service))
    profiles = ModuleProfileBuilder(storage) if with_profiles else None
    ticks = itertools.count(1)
    queue = AnalysisQueue(store, analyzer, storage, profiles, clock=lambda: float(next(ticks)))
    queue.init()
    return queue, storage


def _recorder(queue):
    events = []
    queue.on_progress(lambda job, status, progress, error: events.append((job.document_id, status, progress, error)))
    return events


def test_enqueue_marks_record_and_notifies(memory_store):
    queue, storage = _queue(memory_store, ScriptedService(script_response()))
    events = _recorder(queue)

    job_id = queue.enqueue("ti", "skript-1", "script", SCRIPT_TEXT, "Skript 1")

    assert job_id == "skript-1"
    assert queue.queue_length() == 1
    assert queue.is_document_queued("skript-1")
    assert storage.get_document_analysis("ti", "skript-1").status == "queued"
    assert events == [("skript-1", "queued", 0, None)]
    persisted = AnalysisQueueState.model_validate(memory_store.get(QUEUE_STATE_KEY))
    assert [job.document_id for job in persisted.queue] == ["skript-1"]


def test_process_pending_runs_job_and_builds_profile(memory_store):
    queue, storage = _queue(memory_store, ScriptedService(script_response()))
    events = _recorder(queue)
    queue.enqueue("ti", "skript-1", "script", SCRIPT_TEXT)

    processed = queue.process_pending()

    assert processed == 1
    assert queue.queue_length() == 0
    assert storage.get_document_analysis("ti", "skript-1").status == "done"
    statuses = [(status, progress) for _, status, progress, _ in events]
    assert statuses == [("queued", 0), ("running", 10), ("running", 30), ("running", 90), ("completed", 100)]
    profile = storage.get_module_profile("ti")
    assert profile is not None
    assert profile.status == "done"
    assert "kv-diagramm" in profile.knowledge_index.canonical_topics


def test_enqueue_replaces_waiting_job_for_same_document(memory_store):
    queue, _ = _queue(memory_store, ScriptedService(script_response()))

    queue.enqueue("ti", "skript-1", "script", "alte Fassung")
    queue.enqueue("ti", "skript-1", "script", SCRIPT_TEXT)

    state = queue.get_state()
    assert len(state.queue) == 1
    assert state.queue[0].text == SCRIPT_TEXT


def test_jobs_run_by_priority_then_age(memory_store):
    service = ScriptedService(script_response())
    queue, _ = _queue(memory_store, service, with_profiles=False)
    order = []
    queue.on_progress(lambda job, status, progress, error: status == "completed" and order.append(job.document_id))

    queue.enqueue("ti", "a", "script", SCRIPT_TEXT)
    queue.enqueue("ti", "b", "script", SCRIPT_TEXT, priority=5)
    queue.enqueue("ti", "c", "script", SCRIPT_TEXT)
    queue.process_pending()

    assert order == ["b", "a", "c"]


def test_failed_analysis_reports_error(memory_store):
    service = ScriptedService(TextGenerationError(ErrorKind.OTHER, "HTTP 401: denied"))
    queue, storage = _queue(memory_store, service)
    events = _recorder(queue)
    queue.enqueue("ti", "skript-1", "script", SCRIPT_TEXT)

    queue.process_pending()

    assert events[-1][1] == "error"
    assert "HTTP 401" in events[-1][3]
    assert storage.get_document_analysis("ti", "skript-1").status == "error"
    assert storage.get_module_profile("ti") is None


def test_unexpected_analyzer_exception_marks_error(memory_store):
    queue, storage = _queue(memory_store, ScriptedService(script_response()))

    def _boom(document, on_progress=None, *, force=False):
        raise RuntimeError("disk full")

    queue.analyzer.analyze_document = _boom
    events = _recorder(queue)
    queue.enqueue("ti", "skript-1", "script", SCRIPT_TEXT)

    assert queue.process_pending() == 1
    assert events[-1] == ("skript-1", "error", 0, "disk full")
    record = storage.get_document_analysis("ti", "skript-1")
    assert record.status == "error"
    assert record.error_message == "disk full"


def test_failing_callback_does_not_stop_processing(memory_store):
    queue, storage = _queue(memory_store, ScriptedService(script_response()))

    def _broken(job, status, progress, error):
        raise ValueError("listener bug")

    queue.on_progress(_broken)
    queue.enqueue("ti", "skript-1", "script", SCRIPT_TEXT)
    queue.process_pending()

    assert storage.get_document_analysis("ti", "skript-1").status == "done"


def test_unsubscribe_stops_notifications(memory_store):
    queue, _ = _queue(memory_store, ScriptedService(script_response()))
    events = []
    unsubscribe = queue.on_progress(lambda *args: events.append(args))

    unsubscribe()
    queue.enqueue("ti", "skript-1", "script", SCRIPT_TEXT)

    assert events == []


def test_enqueue_if_needed_skips_cached_documents(memory_store):
    service = ScriptedService(script_response())
    queue, _ = _queue(memory_store, service)
    queue.enqueue("ti", "skript-1", "script", SCRIPT_TEXT)
    queue.process_pending()

    assert queue.enqueue_if_needed("ti", "skript-1", "script", SCRIPT_TEXT) is None
    assert queue.enqueue_if_needed("ti", "skript-1", "script", SCRIPT_TEXT + " Neu.") == "skript-1"
    assert len(service.calls) == 1


def test_remove_from_queue(memory_store):
    queue, _ = _queue(memory_store, ScriptedService(script_response()))
    queue.enqueue("ti", "skript-1", "script", SCRIPT_TEXT)

    assert queue.remove_from_queue("skript-1")
    assert not queue.remove_from_queue("skript-1")
    assert queue.queue_length() == 0


def test_restart_resumes_interrupted_job(memory_store):
    storage = AnalysisStorage(memory_store)
    interrupted = AnalysisJob(
        id="blatt-1",
        module_id="ti",
        document_id="blatt-1",
        document_type="exercise",
        text=EXERCISE_TEXT,
        added_at=1.0,
    )
    waiting = AnalysisJob(
        id="skript-1",
        module_id="ti",
        document_id="skript-1",
        document_type="script",
        text=SCRIPT_TEXT,
        added_at=5.0,
    )
    memory_store.set(QUEUE_STATE_KEY, to_json_dict(AnalysisQueueState(queue=[waiting], current_job=interrupted)))
    storage.upsert_document_analysis(
        DocumentAnalysisRecord(
            id="ti:blatt-1", module_id="ti", document_id="blatt-1", document_type="exercise", status="running"
        )
    )

    queue, _ = _queue(memory_store, ScriptedService(exercise_response(), script_response()))

    state = queue.get_state()
    assert state.current_job is None
    assert [job.document_id for job in state.queue] == ["blatt-1", "skript-1"]
    assert storage.get_document_analysis("ti", "blatt-1").status == "queued"

    assert queue.process_pending() == 2
    assert storage.get_document_analysis("ti", "blatt-1").status == "done"
    assert storage.get_document_analysis("ti", "skript-1").status == "done"


def test_worker_thread_drains_queue(memory_store):
    queue, storage = _queue(memory_store, ScriptedService(script_response()))
    queue.shutdown()
    queue.init(start_worker=True)
    try:
        done = []
        queue.on_progress(lambda job, status, progress, error: status == "completed" and done.append(job.id))
        queue.enqueue("ti", "skript-1", "script", SCRIPT_TEXT)
        for _ in range(200):
            if done:
                break
            time.sleep(0.01)
    finally:
        queue.shutdown(timeout=2)

    assert done == ["skript-1"]
    assert storage.get_document_analysis("ti", "skript-1").status == "done"


def test_enqueue_reanalyses_unchanged_document(memory_store):
    service = ScriptedService(script_response())
    queue, storage = _queue(memory_store, service)
    queue.enqueue("ti", "skript-1", "script", SCRIPT_TEXT)
    queue.process_pending()

    queue.enqueue("ti", "skript-1", "script", SCRIPT_TEXT)
    assert storage.get_document_analysis("ti", "skript-1").status == "queued"
    assert queue.enqueue_if_needed("ti", "skript-1", "script", SCRIPT_TEXT) == "skript-1"
    assert queue.queue_length() == 1

    assert queue.process_pending() == 1
    assert len(service.calls) == 2
    assert storage.get_document_analysis("ti", "skript-1").status == "done"


def test_wait_for_drains_queue_without_worker(memory_store):
    service = ScriptedService(script_response())
    queue, storage = _queue(memory_store, service)
    queue.enqueue("ti", "skript-1", "script", SCRIPT_TEXT)

    assert queue.wait_for("skript-1", timeout=5)
    assert storage.get_document_analysis("ti", "skript-1").status == "done"
    assert queue.wait_for("unbekannt")


def test_wait_for_follows_worker_thread(memory_store):
    queue, storage = _queue(memory_store, ScriptedService(script_response()))
    queue.shutdown()
    queue.init(start_worker=True)
    try:
        queue.enqueue("ti", "skript-1", "script", SCRIPT_TEXT)
        assert queue.wait_for("skript-1", timeout=5)
    finally:
        queue.shutdown(timeout=2)

    assert storage.get_document_analysis("ti", "skript-1").status == "done"
    assert not queue.is_document_queued("skript-1")


def test_removing_job_releases_waiters(memory_store):
    queue, _ = _queue(memory_store, ScriptedService(script_response()))
    queue.enqueue("ti", "skript-1", "script", SCRIPT_TEXT)
    queue.shutdown()

    assert not queue.wait_for("skript-1", timeout=0.1)
    assert queue.remove_from_queue("skript-1")
    assert queue.wait_for("skript-1", timeout=0.1)
