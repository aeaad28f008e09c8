"""Topic coverage tracking and task blueprint scheduling.

Topics come from the module knowledge index (or, before a profile exists,
from the individual finished analyses). Every generated task increments the
coverage counter of its topic; blueprints always hand the next slots to the
least covered topics so that repeated generation converges to an even spread.
"""

from __future__ import annotations

import logging
import random
import threading
from datetime import datetime, timezone
from typing import Dict, List, Optional

from engines.analysis_cache import AnalysisStorage, load_record_analysis
from engines.fingerprint import simple_hash
from schemas import (
    BlueprintItem,
    Concept,
    CoverageStats,
    TaskBlueprint,
    Topic,
    TopicCoverage,
)
from store import TOPIC_COVERAGE_KEY, KeyedDocumentStore, get_collection, set_collection
from topic_normalizer import canonical_topic_key, get_topic_display_label, normalize_topic_key

logger = logging.getLogger(__name__)

QUESTION_TYPES = ["definition", "apply", "compare", "calculation", "mcq", "transfer"]
DIFFICULTIES = ("easy", "medium", "hard")
# cumulative upper bounds: 40% easy, 40% medium, 20% hard
DIFFICULTY_WEIGHTS = ((0.4, "easy"), (0.8, "medium"), (1.0, "hard"))
MAX_TOPIC_EVIDENCE = 3
MIN_TASKS_PER_TOPIC = 3


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def generate_topic_id(topic_name: str, module_id: str) -> str:
    """Stable id for a topic within a module; aliases of one topic share it."""

    normalized = canonical_topic_key(topic_name) or topic_name.lower().strip()
    return simple_hash(f"{module_id}:{normalized}")


def _related_evidence(topic_key: str, concepts: List[Concept]) -> List[str]:
    snippets: List[str] = []
    for concept in concepts:
        term = normalize_topic_key(concept.term)
        if not term:
            continue
        if term in topic_key or topic_key in term:
            snippets.append(concept.definition or concept.term)
        if len(snippets) >= MAX_TOPIC_EVIDENCE:
            break
    return snippets


# ------------------------------------------------------------------
# Coverage records
# ------------------------------------------------------------------
class CoverageTracker:
    def __init__(self, store: KeyedDocumentStore):
        self.store = store
        # guards the read-modify-write of the whole coverage collection
        self._lock = threading.RLock()

    def _all(self) -> List[TopicCoverage]:
        return [TopicCoverage.model_validate(item) for item in get_collection(self.store, TOPIC_COVERAGE_KEY)]

    def _save(self, records: List[TopicCoverage]) -> None:
        set_collection(
            self.store,
            TOPIC_COVERAGE_KEY,
            [record.model_dump(mode="json", by_alias=True) for record in records],
        )

    def get_topic_coverage_for_module(self, module_id: str) -> List[TopicCoverage]:
        return [record for record in self._all() if record.module_id == module_id]

    def get_topic_coverage(self, module_id: str, topic_id: str) -> Optional[TopicCoverage]:
        for record in self._all():
            if record.module_id == module_id and record.topic_id == topic_id:
                return record
        return None

    def update_topic_coverage(self, module_id: str, topic_id: str, topic_name: str, difficulty: str) -> TopicCoverage:
        """Count one more generated task for ``topic_id``."""

        if difficulty not in DIFFICULTIES:
            raise ValueError(f"Unknown difficulty '{difficulty}'. Expected one of {', '.join(DIFFICULTIES)}")
        with self._lock:
            records = self._all()
            for record in records:
                if record.module_id == module_id and record.topic_id == topic_id:
                    break
            else:
                record = TopicCoverage(module_id=module_id, topic_id=topic_id, topic_name=topic_name)
                records.append(record)
            record.tasks_generated_count += 1
            record.last_generated_at = _now()
            setattr(record.by_difficulty, difficulty, getattr(record.by_difficulty, difficulty) + 1)
            self._save(records)
        return record

    def reset_module_coverage(self, module_id: str) -> int:
        with self._lock:
            records = self._all()
            kept = [record for record in records if record.module_id != module_id]
            self._save(kept)
        removed = len(records) - len(kept)
        logger.info("Reset %d coverage records for module %s", removed, module_id)
        return removed


# ------------------------------------------------------------------
# Topics
# ------------------------------------------------------------------
class TopicCatalog:
    def __init__(self, storage: AnalysisStorage):
        self.storage = storage

    def get_module_topics(self, module_id: str) -> List[Topic]:
        profile = self.storage.get_module_profile(module_id)
        index = profile.knowledge_index if profile is not None else None
        if index is not None and index.canonical_topics:
            topics = []
            for key in index.canonical_topics:
                entry = index.topic_index.get(key)
                topics.append(
                    Topic(
                        topic_id=generate_topic_id(key, module_id),
                        name=key,
                        display_name=index.topic_display_names.get(key) or get_topic_display_label(key),
                        evidence_snippets=_related_evidence(key, index.concepts),
                        doc_ids=[ref.document_id for ref in entry.documents] if entry else [],
                        weight=float(index.topic_frequency.get(key, 1)),
                    )
                )
            return topics
        return self._topics_from_analyses(module_id)

    def _topics_from_analyses(self, module_id: str) -> List[Topic]:
        topics: Dict[str, Topic] = {}
        for record in self.storage.list_document_analyses(module_id):
            if record.status != "done":
                continue
            analysis = load_record_analysis(record)
            if analysis is None:
                continue
            for key in analysis.canonical_topics:
                topic_id = generate_topic_id(key, module_id)
                topic = topics.get(topic_id)
                if topic is None:
                    topics[topic_id] = Topic(
                        topic_id=topic_id,
                        name=key,
                        display_name=get_topic_display_label(key),
                        evidence_snippets=_related_evidence(key, analysis.concepts),
                        doc_ids=[record.document_id],
                        weight=1.0,
                    )
                    continue
                if record.document_id not in topic.doc_ids:
                    topic.doc_ids.append(record.document_id)
                topic.weight += 1
        return list(topics.values())


# ------------------------------------------------------------------
# Scheduler
# ------------------------------------------------------------------
class CoverageScheduler:
    def __init__(self, catalog: TopicCatalog, tracker: CoverageTracker, rng: Optional[random.Random] = None):
        self.catalog = catalog
        self.tracker = tracker
        self.rng = rng or random.Random()

    def _pick_difficulty(self) -> str:
        roll = self.rng.random()
        for bound, difficulty in DIFFICULTY_WEIGHTS:
            if roll < bound:
                return difficulty
        return "hard"

    def build_blueprint(
        self,
        module_id: str,
        target_count: int,
        preferred_input_mode: Optional[str] = None,
    ) -> TaskBlueprint:
        """Plan ``target_count`` tasks, least covered topics first."""

        topics = self.catalog.get_module_topics(module_id)
        if not topics or target_count <= 0:
            return TaskBlueprint(module_id=module_id, target_count=target_count, created_at=_now())

        counts = {
            record.topic_id: record.tasks_generated_count
            for record in self.tracker.get_topic_coverage_for_module(module_id)
        }
        ordered = sorted(topics, key=lambda topic: (counts.get(topic.topic_id, 0), -topic.weight))

        items: List[BlueprintItem] = []
        for slot in range(target_count):
            topic = ordered[slot % len(ordered)]
            items.append(
                BlueprintItem(
                    topic_id=topic.topic_id,
                    topic_name=topic.name,
                    difficulty=self._pick_difficulty(),
                    question_type=QUESTION_TYPES[slot % len(QUESTION_TYPES)],
                    answer_mode="type" if preferred_input_mode == "type" else "either",
                    evidence_snippets=list(topic.evidence_snippets),
                    doc_ids=list(topic.doc_ids),
                )
            )

        covered = list(dict.fromkeys(item.topic_id for item in items))
        logger.info("Blueprint for %s: %d tasks over %d topics", module_id, len(items), len(covered))
        return TaskBlueprint(
            module_id=module_id,
            target_count=target_count,
            items=items,
            covered_topic_ids=covered,
            created_at=_now(),
        )

    def get_module_coverage_stats(self, module_id: str) -> CoverageStats:
        topics = self.catalog.get_module_topics(module_id)
        counts = {
            record.topic_id: record.tasks_generated_count
            for record in self.tracker.get_topic_coverage_for_module(module_id)
        }
        total_tasks = 0
        no_tasks: List[str] = []
        needing_more: List[str] = []
        for topic in topics:
            count = counts.get(topic.topic_id, 0)
            total_tasks += count
            if count == 0:
                no_tasks.append(topic.name)
            elif count < MIN_TASKS_PER_TOPIC:
                needing_more.append(topic.name)

        covered = len(topics) - len(no_tasks)
        return CoverageStats(
            total_topics=len(topics),
            covered_topics=covered,
            coverage_percent=covered / len(topics) * 100 if topics else 0.0,
            topics_with_no_tasks=no_tasks,
            topics_needing_more_tasks=needing_more,
            avg_tasks_per_topic=total_tasks / len(topics) if topics else 0.0,
        )


__all__ = [
    "QUESTION_TYPES",
    "generate_topic_id",
    "CoverageTracker",
    "TopicCatalog",
    "CoverageScheduler",
]
