"""Durable per-document analysis records and the cached analysis pipeline.

Records are keyed by ``(moduleId, documentId)`` and live in one collection of
the keyed store. A document is only sent to the text generation service when
its content hash or the analysis version changed, or when the last run did not
finish with status ``done``.

Record states: ``missing -> queued -> running -> done | error``. A record left
``running`` by a crash is demoted to ``queued`` by :meth:`DocumentAnalyzer.reset_stale_running`.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, List, Optional

from chunker import ChunkingConfig, chunk_document
from engines.extractor import ChunkExtractor, ChunkResult
from engines.merger import merge_chunk_results
from normalizer import compute_source_hash
from schemas import (
    ANALYSIS_SCHEMA_VERSION,
    AnalysisPayloadError,
    Document,
    DocumentAnalysisRecord,
    DocumentAnalysisV2,
    ModuleProfileRecord,
    as_v2,
    parse_analysis_payload,
    to_json_dict,
)
from store import (
    DOCUMENT_ANALYSES_KEY,
    MODULE_PROFILES_KEY,
    KeyedDocumentStore,
    get_collection,
    set_collection,
)

logger = logging.getLogger(__name__)

ANALYSIS_VERSION = ANALYSIS_SCHEMA_VERSION

ProgressCallback = Callable[[int], None]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


# ------------------------------------------------------------------
# Storage
# ------------------------------------------------------------------
class AnalysisStorage:
    """Whole-collection read-modify-write access to analyses and module profiles."""

    def __init__(self, store: KeyedDocumentStore):
        self.store = store
        self._lock = threading.RLock()

    # document analyses -------------------------------------------------
    def list_document_analyses(self, module_id: Optional[str] = None) -> List[DocumentAnalysisRecord]:
        records = [DocumentAnalysisRecord.model_validate(item) for item in get_collection(self.store, DOCUMENT_ANALYSES_KEY)]
        if module_id is None:
            return records
        return [record for record in records if record.module_id == module_id]

    def get_document_analysis(self, module_id: str, document_id: str) -> Optional[DocumentAnalysisRecord]:
        for record in self.list_document_analyses(module_id):
            if record.document_id == document_id:
                return record
        return None

    def upsert_document_analysis(self, record: DocumentAnalysisRecord) -> DocumentAnalysisRecord:
        with self._lock:
            items = get_collection(self.store, DOCUMENT_ANALYSES_KEY)
            now = _now()
            record = record.model_copy(update={"updated_at": now, "created_at": record.created_at or now})
            for index, item in enumerate(items):
                if item.get("moduleId") == record.module_id and item.get("documentId") == record.document_id:
                    record = record.model_copy(update={"created_at": item.get("createdAt") or record.created_at})
                    items[index] = to_json_dict(record)
                    break
            else:
                items.append(to_json_dict(record))
            set_collection(self.store, DOCUMENT_ANALYSES_KEY, items)
        return record

    def update_document_analysis(self, module_id: str, document_id: str, **changes: Any) -> Optional[DocumentAnalysisRecord]:
        with self._lock:
            record = self.get_document_analysis(module_id, document_id)
            if record is None:
                return None
            return self.upsert_document_analysis(record.model_copy(update=changes))

    def delete_document_analysis(self, module_id: str, document_id: str) -> bool:
        with self._lock:
            items = get_collection(self.store, DOCUMENT_ANALYSES_KEY)
            kept = [
                item for item in items
                if not (item.get("moduleId") == module_id and item.get("documentId") == document_id)
            ]
            if len(kept) == len(items):
                return False
            set_collection(self.store, DOCUMENT_ANALYSES_KEY, kept)
            return True

    def delete_module_analyses(self, module_id: str) -> int:
        with self._lock:
            items = get_collection(self.store, DOCUMENT_ANALYSES_KEY)
            kept = [item for item in items if item.get("moduleId") != module_id]
            set_collection(self.store, DOCUMENT_ANALYSES_KEY, kept)
            return len(items) - len(kept)

    # module profiles ---------------------------------------------------
    def list_module_profiles(self) -> List[ModuleProfileRecord]:
        return [ModuleProfileRecord.model_validate(item) for item in get_collection(self.store, MODULE_PROFILES_KEY)]

    def get_module_profile(self, module_id: str) -> Optional[ModuleProfileRecord]:
        for profile in self.list_module_profiles():
            if profile.module_id == module_id:
                return profile
        return None

    def upsert_module_profile(self, profile: ModuleProfileRecord) -> ModuleProfileRecord:
        with self._lock:
            items = get_collection(self.store, MODULE_PROFILES_KEY)
            now = _now()
            profile = profile.model_copy(update={"updated_at": now, "created_at": profile.created_at or now})
            for index, item in enumerate(items):
                if item.get("moduleId") == profile.module_id:
                    profile = profile.model_copy(update={"created_at": item.get("createdAt") or profile.created_at})
                    items[index] = to_json_dict(profile)
                    break
            else:
                items.append(to_json_dict(profile))
            set_collection(self.store, MODULE_PROFILES_KEY, items)
        return profile

    def delete_module_profile(self, module_id: str) -> bool:
        with self._lock:
            items = get_collection(self.store, MODULE_PROFILES_KEY)
            kept = [item for item in items if item.get("moduleId") != module_id]
            set_collection(self.store, MODULE_PROFILES_KEY, kept)
            return len(kept) != len(items)


# ------------------------------------------------------------------
# Cache predicate
# ------------------------------------------------------------------
def needs_analysis(record: Optional[DocumentAnalysisRecord], source_hash: str, version: str = ANALYSIS_VERSION) -> bool:
    """True for a missing or failed record, or one built from other content or another version.

    Queued and running records are not stale by themselves; the queue owns them.
    """

    if record is None:
        return True
    if record.status == "error":
        return True
    return record.source_hash != source_hash or record.analysis_version != version


def load_record_analysis(record: DocumentAnalysisRecord) -> Optional[DocumentAnalysisV2]:
    """Parse the stored payload of ``record`` as v2, migrating legacy payloads in memory."""

    if not record.analysis_payload:
        return None
    try:
        payload = parse_analysis_payload(record.analysis_payload)
    except AnalysisPayloadError as exc:
        logger.warning("Unreadable analysis payload for %s: %s", record.id, exc)
        return None
    return as_v2(
        payload,
        record.document_type,
        document_id=record.document_id,
        processed_at=record.last_analyzed_at or "",
    )


@dataclass
class AnalysisOutcome:
    record: DocumentAnalysisRecord
    analysis: Optional[DocumentAnalysisV2]
    from_cache: bool


# ------------------------------------------------------------------
# Analyzer
# ------------------------------------------------------------------
class DocumentAnalyzer:
    """Chunk, extract and merge one document, persisting progress as it goes."""

    def __init__(
        self,
        storage: AnalysisStorage,
        extractor: ChunkExtractor,
        *,
        chunking: Optional[ChunkingConfig] = None,
        analysis_version: str = ANALYSIS_VERSION,
    ) -> None:
        self.storage = storage
        self.extractor = extractor
        self.chunking = chunking or ChunkingConfig()
        self.analysis_version = analysis_version

    def needs_analysis(self, module_id: str, document_id: str, text: str) -> bool:
        record = self.storage.get_document_analysis(module_id, document_id)
        return needs_analysis(record, compute_source_hash(text), self.analysis_version)

    def load_analysis(self, module_id: str, document_id: str) -> Optional[DocumentAnalysisV2]:
        record = self.storage.get_document_analysis(module_id, document_id)
        if record is None:
            return None
        return load_record_analysis(record)

    def reset_stale_running(self) -> int:
        """Demote records left ``running`` by an interrupted process to ``queued``."""

        reset = 0
        for record in self.storage.list_document_analyses():
            if record.status == "running":
                self.storage.upsert_document_analysis(record.model_copy(update={"status": "queued"}))
                reset += 1
        if reset:
            logger.info("Reset %d stale running analyses to queued", reset)
        return reset

    def analyze_document(
        self,
        document: Document,
        on_progress: Optional[ProgressCallback] = None,
        *,
        force: bool = False,
    ) -> AnalysisOutcome:
        source_hash = compute_source_hash(document.text)
        existing = self.storage.get_document_analysis(document.module_id, document.document_id)

        if (
            not force
            and existing is not None
            and existing.status == "done"
            and not needs_analysis(existing, source_hash, self.analysis_version)
        ):
            analysis = load_record_analysis(existing)
            if analysis is not None:
                logger.info("Analysis cache hit for %s/%s", document.module_id, document.document_id)
                return AnalysisOutcome(record=existing, analysis=analysis, from_cache=True)

        chunks = chunk_document(document.text, self.chunking)
        record = existing or DocumentAnalysisRecord(
            id=DocumentAnalysisRecord.make_id(document.module_id, document.document_id),
            module_id=document.module_id,
            document_id=document.document_id,
            document_type=document.document_type,
        )
        record = self.storage.upsert_document_analysis(
            record.model_copy(
                update={
                    "document_type": document.document_type,
                    "document_name": document.document_name or record.document_name,
                    "status": "running",
                    "source_hash": source_hash,
                    "analysis_version": self.analysis_version,
                    "chunk_count": len(chunks),
                    "processed_chunk_count": 0,
                    "coverage_percent": 0,
                    "error_message": None,
                }
            )
        )
        logger.info(
            "Analyzing %s/%s (%s, %d chunks)",
            document.module_id,
            document.document_id,
            document.document_type,
            len(chunks),
        )

        results: List[ChunkResult] = []
        for chunk in chunks:
            results.append(
                self.extractor.analyze_chunk(
                    chunk,
                    document.document_type,
                    len(chunks),
                    document.text,
                    document.document_id,
                )
            )
            processed = len(results)
            percent = round(processed / len(chunks) * 100)
            record = self.storage.upsert_document_analysis(
                record.model_copy(update={"processed_chunk_count": processed, "coverage_percent": percent})
            )
            if on_progress is not None:
                on_progress(percent)

        analysis = merge_chunk_results(results, document.document_type, document.document_id)
        metadata = analysis.processing_metadata
        error_text = "; ".join(metadata.errors) or None
        now = _now()

        if metadata.chunks_processed > 0:
            record = record.model_copy(
                update={
                    "status": "done",
                    "coverage_percent": metadata.coverage_percent,
                    "analysis_payload": analysis.model_dump_json(by_alias=True),
                    "last_analyzed_at": now,
                    "error_message": error_text,
                }
            )
        else:
            record = record.model_copy(
                update={
                    "status": "error",
                    "coverage_percent": 0,
                    "last_analyzed_at": now,
                    "error_message": error_text or "No chunk could be analyzed",
                }
            )
            logger.warning("Analysis of %s/%s failed: %s", document.module_id, document.document_id, record.error_message)

        record = self.storage.upsert_document_analysis(record)
        return AnalysisOutcome(
            record=record,
            analysis=analysis if record.status == "done" else None,
            from_cache=False,
        )


__all__ = [
    "ANALYSIS_VERSION",
    "AnalysisStorage",
    "AnalysisOutcome",
    "DocumentAnalyzer",
    "needs_analysis",
    "load_record_analysis",
]
