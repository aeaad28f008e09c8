# app.py - LernBuddy analysis service
# - Document analysis queue with per-document cache
# - Module profiles, topic coverage and task blueprints
# - Exact and near-duplicate checks for generated tasks

import logging
import os
from contextlib import asynccontextmanager
from typing import List, Literal, Optional
from uuid import uuid4

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from chunker import ChunkingConfig
from engines.analysis_cache import AnalysisStorage, DocumentAnalyzer, load_record_analysis
from engines.analysis_queue import AnalysisQueue
from engines.coverage import CoverageScheduler, CoverageTracker, TopicCatalog
from engines.extractor import ChunkExtractor
from engines.fingerprint import TaskRegistry, task_fingerprint
from engines.module_profile import ModuleProfileBuilder
from engines.semantic_dedup import (
    EmbeddingBackend,
    SemanticDeduplicator,
    SimilarityConfig,
    embedding_backend_from_env,
)
from engines.text_generation import HTTPTextGenerationService, TextGenerationService
from env_validation import get_env_bool, safe_float
from schemas import Task, to_json_dict
from store import STORE_PATH, KeyedDocumentStore, SQLiteDocumentStore

logger = logging.getLogger(__name__)

_STORE: Optional[KeyedDocumentStore] = None
_STORAGE: Optional[AnalysisStorage] = None
_QUEUE: Optional[AnalysisQueue] = None
_PROFILES: Optional[ModuleProfileBuilder] = None
_TRACKER: Optional[CoverageTracker] = None
_SCHEDULER: Optional[CoverageScheduler] = None
_TASKS: Optional[TaskRegistry] = None
_DEDUP: Optional[SemanticDeduplicator] = None


def configure_services(
    store: KeyedDocumentStore,
    service: TextGenerationService,
    *,
    start_worker: bool = False,
    similarity: Optional[SimilarityConfig] = None,
    embedding_backend: Optional[EmbeddingBackend] = None,
) -> AnalysisQueue:
    """Wire the analysis core onto ``store`` and start the queue."""
    global _STORE, _STORAGE, _QUEUE, _PROFILES, _TRACKER, _SCHEDULER, _TASKS, _DEDUP

    storage = AnalysisStorage(store)
    analyzer = DocumentAnalyzer(storage, ChunkExtractor(service), chunking=ChunkingConfig.from_env())
    profiles = ModuleProfileBuilder(storage)
    queue = AnalysisQueue(store, analyzer, storage, profiles)
    queue.init(start_worker=start_worker)

    tracker = CoverageTracker(store)
    _STORE = store
    _STORAGE = storage
    _QUEUE = queue
    _PROFILES = profiles
    _TRACKER = tracker
    _SCHEDULER = CoverageScheduler(TopicCatalog(storage), tracker)
    _TASKS = TaskRegistry(store)
    _DEDUP = SemanticDeduplicator(similarity or SimilarityConfig.from_env(), embedding_backend)
    return queue


@asynccontextmanager
async def _lifespan(_: FastAPI):
    store = None
    try:
        from env_validation import validate_environment
        validate_environment()

        store = SQLiteDocumentStore(os.getenv("STORE_PATH", STORE_PATH))
        store.init()
        configure_services(
            store,
            HTTPTextGenerationService(),
            start_worker=get_env_bool("ANALYSIS_QUEUE_WORKER", True),
            embedding_backend=embedding_backend_from_env(),
        )
    except Exception as e:
        logger.error("Failed to initialize application: %s", str(e), exc_info=True)
        raise
    try:
        yield
    finally:
        if _QUEUE is not None:
            _QUEUE.shutdown()
        store.close()


app = FastAPI(title="LernBuddy Analysis", version="2.0.0", lifespan=_lifespan)


def _require(component, name: str):
    if component is None:
        raise HTTPException(status_code=503, detail=f"{name} not initialised")
    return component


# ---------- Request bodies ----------

class AnalyzeDocumentBody(BaseModel):
    module_id: str
    document_id: str
    document_type: Literal["script", "exercise", "solution", "exam"]
    text: str
    document_name: str = ""
    priority: int = 0
    force: bool = False
    wait: bool = False


class BlueprintBody(BaseModel):
    target_count: int = Field(ge=0, le=500)
    preferred_input_mode: Optional[Literal["type", "draw"]] = None


class RecordTaskBody(BaseModel):
    topic_id: str
    topic_name: str
    difficulty: Literal["easy", "medium", "hard"]
    question: Optional[str] = None
    solution: str = ""
    tags: List[str] = Field(default_factory=list)
    task_id: Optional[str] = None


class DuplicateCheckBody(BaseModel):
    module_id: str
    question: str
    solution: str = ""
    tags: List[str] = Field(default_factory=list)
    threshold: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class SimilarTasksBody(BaseModel):
    module_id: str
    text: str
    k: int = Field(default=10, ge=1, le=100)
    topic_id: Optional[str] = None


# ---------- Document analysis ----------

@app.post("/analysis/documents")
def analyze_document(body: AnalyzeDocumentBody):
    queue = _require(_QUEUE, "analysis queue")
    if body.force:
        job_id = queue.enqueue(
            body.module_id, body.document_id, body.document_type, body.text, body.document_name, body.priority
        )
    else:
        job_id = queue.enqueue_if_needed(
            body.module_id, body.document_id, body.document_type, body.text, body.document_name, body.priority
        )
    if job_id is None:
        return {"status": "cached", "job_id": None}
    if not body.wait:
        return {"status": "queued", "job_id": job_id, "queue_length": queue.queue_length()}

    if not queue.wait_for(job_id, timeout=safe_float("ANALYSIS_WAIT_TIMEOUT", 600.0)):
        logger.warning("Timed out waiting for analysis of %s/%s", body.module_id, body.document_id)
    record = _require(_STORAGE, "analysis storage").get_document_analysis(body.module_id, body.document_id)
    if record is not None and record.status == "error":
        raise HTTPException(status_code=502, detail=f"Analysis failed: {record.error_message}")
    return {"status": record.status if record else "missing", "job_id": job_id}


@app.get("/analysis/documents/{module_id}/{document_id}")
def get_document_analysis(module_id: str, document_id: str):
    storage = _require(_STORAGE, "analysis storage")
    record = storage.get_document_analysis(module_id, document_id)
    if record is None:
        raise HTTPException(status_code=404, detail="analysis not found")
    analysis = load_record_analysis(record)
    payload = to_json_dict(record)
    payload.pop("analysisPayload", None)
    return {"record": payload, "analysis": to_json_dict(analysis) if analysis else None}


@app.get("/analysis/queue")
def get_queue_state():
    queue = _require(_QUEUE, "analysis queue")
    state = to_json_dict(queue.get_state())
    # document text stays out of the listing
    for job in state["queue"] + ([state["currentJob"]] if state["currentJob"] else []):
        job.pop("text", None)
    return {"length": queue.queue_length(), **state}


@app.delete("/analysis/queue/{document_id}")
def remove_queued_document(document_id: str):
    queue = _require(_QUEUE, "analysis queue")
    if not queue.remove_from_queue(document_id):
        raise HTTPException(status_code=404, detail="document not queued")
    return {"status": "removed"}


# ---------- Module profiles ----------

@app.get("/modules/{module_id}/profile")
def get_module_profile(module_id: str, force: bool = False):
    profiles = _require(_PROFILES, "profile builder")
    return to_json_dict(profiles.build_module_profiles(module_id, force=force))


@app.post("/modules/{module_id}/profile/invalidate")
def invalidate_module_profile(module_id: str):
    profiles = _require(_PROFILES, "profile builder")
    profile = profiles.invalidate_module_profile(module_id)
    if profile is None:
        raise HTTPException(status_code=404, detail="profile not found")
    return {"status": profile.status}


@app.get("/modules/{module_id}/topics")
def get_module_topics(module_id: str):
    scheduler = _require(_SCHEDULER, "coverage scheduler")
    topics = scheduler.catalog.get_module_topics(module_id)
    return {"count": len(topics), "topics": [to_json_dict(topic) for topic in topics]}


# ---------- Coverage ----------

@app.post("/modules/{module_id}/blueprint")
def build_blueprint(module_id: str, body: BlueprintBody):
    scheduler = _require(_SCHEDULER, "coverage scheduler")
    blueprint = scheduler.build_blueprint(module_id, body.target_count, body.preferred_input_mode)
    return to_json_dict(blueprint)


@app.get("/modules/{module_id}/coverage")
def get_coverage(module_id: str):
    scheduler = _require(_SCHEDULER, "coverage scheduler")
    stats = scheduler.get_module_coverage_stats(module_id)
    topics = [to_json_dict(record) for record in scheduler.tracker.get_topic_coverage_for_module(module_id)]
    return {"stats": to_json_dict(stats), "topics": topics}


@app.post("/modules/{module_id}/coverage")
def record_generated_task(module_id: str, body: RecordTaskBody):
    tracker = _require(_TRACKER, "coverage tracker")
    duplicate = None
    if body.question:
        registry = _require(_TASKS, "task registry")
        task = Task(
            id=body.task_id or f"task-{uuid4().hex[:12]}",
            module_id=module_id,
            question=body.question,
            solution=body.solution,
            tags=body.tags,
            topic_id=body.topic_id,
            difficulty=body.difficulty,
        )
        result = registry.add_task(task)
        if result.is_duplicate:
            duplicate = result.matching_task_id
    if duplicate is not None:
        raise HTTPException(status_code=409, detail=f"duplicate of task {duplicate}")
    coverage = tracker.update_topic_coverage(module_id, body.topic_id, body.topic_name, body.difficulty)
    return to_json_dict(coverage)


# ---------- Duplicates ----------

@app.post("/tasks/check-duplicate")
def check_duplicate(body: DuplicateCheckBody):
    registry = _require(_TASKS, "task registry")
    dedup = _require(_DEDUP, "semantic deduplicator")
    tasks = registry.list_tasks(body.module_id)
    fingerprint = task_fingerprint(body.question, body.solution, body.tags)
    exact = next((task for task in tasks if task.fingerprint == fingerprint.fingerprint), None)
    semantic = dedup.find_semantic_duplicates(
        f"{body.question} {body.solution}".strip(), tasks, threshold=body.threshold
    )
    return {
        "fingerprint": to_json_dict(fingerprint),
        "exactDuplicate": exact is not None,
        "exactMatchTaskId": exact.id if exact else None,
        "semantic": to_json_dict(semantic),
    }


@app.post("/tasks/similar")
def similar_tasks(body: SimilarTasksBody):
    registry = _require(_TASKS, "task registry")
    dedup = _require(_DEDUP, "semantic deduplicator")
    ranked = dedup.get_top_k_similar_tasks(
        body.text, registry.list_tasks(body.module_id), k=body.k, topic_id=body.topic_id
    )
    return {"tasks": [{"taskId": task_id, "similarity": similarity} for task_id, similarity in ranked]}
