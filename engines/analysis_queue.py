"""Serial job queue for document analyses.

Only one job runs at a time. The queue state ``{queue, currentJob}`` is
persisted in the keyed store after every change so that a restarted process
picks up where the previous one stopped: a job that was running goes back to
the front of the queue and records left ``running`` are demoted to ``queued``.

The queue is an ordinary object wired up by the caller::

    queue = AnalysisQueue(store, analyzer, storage, profile_builder)
    queue.init(start_worker=True)
    ...
    queue.shutdown()

Without a worker thread, :meth:`AnalysisQueue.process_pending` drains the
queue synchronously.
"""

from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from engines.analysis_cache import AnalysisStorage, DocumentAnalyzer
from engines.module_profile import ModuleProfileBuilder
from schemas import (
    AnalysisJob,
    AnalysisQueueState,
    Document,
    DocumentAnalysisRecord,
    to_json_dict,
)
from store import QUEUE_STATE_KEY, KeyedDocumentStore

logger = logging.getLogger(__name__)

# job, status ("queued" | "running" | "completed" | "error"), progress 0-100, error message
QueueProgressCallback = Callable[[AnalysisJob, str, int, Optional[str]], None]

PROGRESS_STARTED = 10
PROGRESS_RUNNING = 30
PROGRESS_ANALYZED = 90
PROGRESS_DONE = 100


class AnalysisQueue:
    def __init__(
        self,
        store: KeyedDocumentStore,
        analyzer: DocumentAnalyzer,
        storage: AnalysisStorage,
        profile_builder: Optional[ModuleProfileBuilder] = None,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.analyzer = analyzer
        self.storage = storage
        self.profile_builder = profile_builder
        self._clock = clock
        self._state = AnalysisQueueState()
        self._callbacks: List[QueueProgressCallback] = []
        self._lock = threading.RLock()
        self._processing = threading.Lock()
        self._done: Dict[str, threading.Event] = {}
        self._wakeup = threading.Event()
        self._stopping = threading.Event()
        self._worker: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    def init(self, start_worker: bool = False) -> None:
        """Restore persisted state, recover stale records and optionally start the worker."""

        with self._lock:
            self._state = self._load_state()
            if self._state.current_job is not None:
                self._state.queue.insert(0, self._state.current_job)
                self._state.current_job = None
            self._save_state()
        self.analyzer.reset_stale_running()
        self._stopping.clear()
        logger.info("Analysis queue initialised with %d pending jobs", len(self._state.queue))

        if start_worker and self._worker is None:
            self._worker = threading.Thread(target=self._run_worker, name="analysis-queue", daemon=True)
            self._worker.start()
            if self._state.queue:
                self._wakeup.set()

    def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop the worker once its current job has finished and persist the state."""

        self._stopping.set()
        self._wakeup.set()
        worker = self._worker
        if worker is not None:
            worker.join(timeout)
            self._worker = None
        with self._lock:
            self._save_state()
            waiting = list(self._done.values())
            self._done.clear()
        for event in waiting:
            event.set()
        logger.info("Analysis queue stopped")

    def _run_worker(self) -> None:
        while not self._stopping.is_set():
            self._wakeup.wait()
            self._wakeup.clear()
            if self._stopping.is_set():
                break
            self.process_pending()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------
    def _load_state(self) -> AnalysisQueueState:
        raw = self.store.get(QUEUE_STATE_KEY)
        if not raw:
            return AnalysisQueueState()
        try:
            return AnalysisQueueState.model_validate(raw)
        except ValueError as exc:
            logger.warning("Discarding unreadable analysis queue state: %s", exc)
            return AnalysisQueueState()

    def _save_state(self) -> None:
        self.store.set(QUEUE_STATE_KEY, to_json_dict(self._state))

    # ------------------------------------------------------------------
    # Callbacks
    # ------------------------------------------------------------------
    def on_progress(self, callback: QueueProgressCallback) -> Callable[[], None]:
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return unsubscribe

    def _notify(self, job: AnalysisJob, status: str, progress: int, error: Optional[str] = None) -> None:
        with self._lock:
            callbacks = list(self._callbacks)
        for callback in callbacks:
            try:
                callback(job, status, progress, error)
            except Exception:
                logger.exception("Analysis progress callback failed")

    # ------------------------------------------------------------------
    # Queue operations
    # ------------------------------------------------------------------
    def enqueue(
        self,
        module_id: str,
        document_id: str,
        document_type: str,
        text: str,
        document_name: str = "",
        priority: int = 0,
    ) -> str:
        """Queue ``document_id`` for analysis; the job id is the document id.

        A job already waiting for the same document is replaced by the new one.
        A document that is currently running is left alone.
        """

        job = AnalysisJob(
            id=document_id,
            module_id=module_id,
            document_id=document_id,
            document_type=document_type,
            document_name=document_name,
            text=text,
            priority=priority,
            added_at=self._clock(),
        )
        with self._lock:
            current = self._state.current_job
            if current is not None and current.document_id == document_id:
                logger.debug("Document %s is already being analysed", document_id)
                return job.id
            # the record is marked before the worker can see the job
            self._mark_queued(job)
            for index, queued in enumerate(self._state.queue):
                if queued.document_id == document_id:
                    self._state.queue[index] = job
                    break
            else:
                self._state.queue.append(job)
            self._save_state()

        logger.info("Queued analysis of %s/%s (%s)", module_id, document_id, document_type)
        self._notify(job, "queued", 0)
        self._wakeup.set()
        return job.id

    def enqueue_if_needed(
        self,
        module_id: str,
        document_id: str,
        document_type: str,
        text: str,
        document_name: str = "",
        priority: int = 0,
    ) -> Optional[str]:
        """Enqueue only when the stored analysis is missing, failed or stale.

        A document that is already waiting or running always goes through
        :meth:`enqueue`, which refreshes a waiting job with the new text.
        """

        if not self.is_document_queued(document_id) and not self.analyzer.needs_analysis(
            module_id, document_id, text
        ):
            return None
        return self.enqueue(module_id, document_id, document_type, text, document_name, priority)

    def remove_from_queue(self, document_id: str) -> bool:
        """Drop a waiting job. A running job is not interrupted."""

        with self._lock:
            kept = [job for job in self._state.queue if job.document_id != document_id]
            removed = len(kept) != len(self._state.queue)
            self._state.queue = kept
            self._save_state()
            done = self._done.pop(document_id, None) if removed else None
        if done is not None:
            done.set()
        return removed

    def get_state(self) -> AnalysisQueueState:
        with self._lock:
            return self._state.model_copy(deep=True)

    def queue_length(self) -> int:
        with self._lock:
            return len(self._state.queue) + (1 if self._state.current_job is not None else 0)

    def is_document_queued(self, document_id: str) -> bool:
        with self._lock:
            current = self._state.current_job
            if current is not None and current.document_id == document_id:
                return True
            return any(job.document_id == document_id for job in self._state.queue)

    def wait_for(self, document_id: str, timeout: Optional[float] = None) -> bool:
        """Block until the job for ``document_id`` has left the queue.

        Without a worker thread the queue is drained on the calling thread.
        Returns ``False`` when ``timeout`` expired first.
        """

        if self._stopping.is_set():
            return not self.is_document_queued(document_id)
        with self._lock:
            if not self.is_document_queued(document_id):
                return True
            done = self._done.setdefault(document_id, threading.Event())
        if self._worker is None:
            self.process_pending()
        return done.wait(timeout)

    def _mark_queued(self, job: AnalysisJob) -> None:
        record = self.storage.get_document_analysis(job.module_id, job.document_id)
        if record is None:
            record = DocumentAnalysisRecord(
                id=DocumentAnalysisRecord.make_id(job.module_id, job.document_id),
                module_id=job.module_id,
                document_id=job.document_id,
                document_type=job.document_type,
                document_name=job.document_name or None,
            )
        self.storage.upsert_document_analysis(record.model_copy(update={"status": "queued"}))

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------
    def _next_job(self) -> Optional[AnalysisJob]:
        with self._lock:
            if not self._state.queue:
                return None
            self._state.queue.sort(key=lambda job: (-job.priority, job.added_at))
            job = self._state.queue.pop(0)
            self._state.current_job = job
            self._save_state()
            return job

    def _finish_job(self, job: AnalysisJob) -> None:
        with self._lock:
            self._state.current_job = None
            self._save_state()
            done = self._done.pop(job.document_id, None)
        if done is not None:
            done.set()

    def process_pending(self) -> int:
        """Run queued jobs one after another until the queue is empty.

        Returns the number of jobs processed by this call. A concurrent call
        returns 0 immediately.
        """

        if not self._processing.acquire(blocking=False):
            return 0
        processed = 0
        try:
            while not self._stopping.is_set():
                job = self._next_job()
                if job is None:
                    break
                try:
                    self._run_job(job)
                finally:
                    self._finish_job(job)
                processed += 1
        finally:
            self._processing.release()
        return processed

    def _run_job(self, job: AnalysisJob) -> None:
        self._notify(job, "running", PROGRESS_STARTED)
        document = Document(
            document_id=job.document_id,
            module_id=job.module_id,
            document_type=job.document_type,
            text=job.text,
            document_name=job.document_name or None,
        )

        def report(percent: int) -> None:
            span = PROGRESS_ANALYZED - PROGRESS_RUNNING
            self._notify(job, "running", PROGRESS_RUNNING + round(percent * span / 100))

        self._notify(job, "running", PROGRESS_RUNNING)
        try:
            outcome = self.analyzer.analyze_document(document, report, force=True)
        except Exception as exc:
            message = str(exc) or exc.__class__.__name__
            logger.exception("Analysis of %s/%s failed", job.module_id, job.document_id)
            self.storage.update_document_analysis(
                job.module_id, job.document_id, status="error", error_message=message
            )
            self._notify(job, "error", 0, message)
            return

        if outcome.record.status != "done":
            self._notify(job, "error", 0, outcome.record.error_message)
            return

        logger.info("Completed analysis of %s/%s", job.module_id, job.document_id)
        self._notify(job, "completed", PROGRESS_DONE)
        self._rebuild_profile(job.module_id)

    def _rebuild_profile(self, module_id: str) -> None:
        if self.profile_builder is None:
            return
        try:
            self.profile_builder.build_module_profiles(module_id)
        except Exception:
            logger.exception("Failed to rebuild module profile for %s after analysis", module_id)


__all__ = [
    "AnalysisQueue",
    "QueueProgressCallback",
]
