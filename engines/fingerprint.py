"""Exact duplicate detection for generated tasks.

A fingerprint is the SHA-256 of ``normalize(question) | normalize(solution) |
sorted tags``. The djb2-based variant (two 32-bit passes, 16 hex characters)
exists for callers that must not depend on hashlib availability; an index is
bound to exactly one of the two hash spaces.
"""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional

from normalizer import sha256_hex, strip_punctuation
from schemas import Task, TaskFingerprintData
from store import TASKS_KEY, KeyedDocumentStore, get_collection, set_collection

logger = logging.getLogger(__name__)

SHA256_LENGTH = 64
FALLBACK_LENGTH = 16

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text(text: Optional[str]) -> str:
    if not text:
        return ""
    return _WHITESPACE_RE.sub(" ", strip_punctuation(text.lower())).strip()


def normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    if not tags:
        return []
    cleaned = {tag.strip().lower() for tag in tags if isinstance(tag, str) and tag.strip()}
    return sorted(cleaned)


def sha256_hash(text: str) -> str:
    return sha256_hex(text)


def simple_hash(text: str) -> str:
    """djb2 over UTF-16 code units, folded to a signed 32-bit value, 8 hex chars."""

    data = text.encode("utf-16-le")
    value = 5381
    for offset in range(0, len(data), 2):
        unit = data[offset] | (data[offset + 1] << 8)
        value = (value * 33 + unit) & 0xFFFFFFFF
    if value >= 0x80000000:
        value -= 1 << 32
    return format(abs(value), "08x")


def _fingerprint_base(question: str, solution: str, tags: List[str]) -> str:
    return f"{question}|{solution}|{','.join(tags)}"


def task_fingerprint(
    question: str,
    solution: str,
    tags: Optional[Iterable[str]] = None,
    *,
    use_fallback: bool = False,
) -> TaskFingerprintData:
    normalized_question = normalize_text(question)
    normalized_solution = normalize_text(solution)
    normalized_tags = normalize_tags(tags)
    base = _fingerprint_base(normalized_question, normalized_solution, normalized_tags)
    if use_fallback:
        fingerprint = simple_hash(base) + simple_hash(base[::-1])
    else:
        fingerprint = sha256_hash(base)
    return TaskFingerprintData(
        fingerprint=fingerprint,
        normalized_question=normalized_question,
        normalized_solution=normalized_solution,
        normalized_tags=normalized_tags,
    )


@dataclass
class DuplicateCheck:
    is_duplicate: bool
    fingerprint: str
    matching_task_id: Optional[str] = None


class FingerprintIndex:
    """Fingerprint to task id map with constant-time lookups."""

    def __init__(self, *, use_fallback: bool = False) -> None:
        self.use_fallback = use_fallback
        self._task_ids: Dict[str, str] = {}

    @property
    def fingerprint_length(self) -> int:
        return FALLBACK_LENGTH if self.use_fallback else SHA256_LENGTH

    @classmethod
    def from_tasks(cls, tasks: Iterable[Task], *, use_fallback: bool = False) -> "FingerprintIndex":
        index = cls(use_fallback=use_fallback)
        for task in tasks:
            if task.fingerprint:
                index.add(task.fingerprint, task.id)
        return index

    def _validate(self, fingerprint: str) -> None:
        if len(fingerprint) != self.fingerprint_length:
            space = "fallback" if self.use_fallback else "sha256"
            raise ValueError(
                f"Fingerprint of length {len(fingerprint)} does not belong to the {space} hash space"
            )

    def add(self, fingerprint: str, task_id: str) -> None:
        self._validate(fingerprint)
        # first task wins so that the oldest copy is reported
        self._task_ids.setdefault(fingerprint, task_id)

    def check(self, fingerprint: str) -> DuplicateCheck:
        self._validate(fingerprint)
        task_id = self._task_ids.get(fingerprint)
        return DuplicateCheck(is_duplicate=task_id is not None, fingerprint=fingerprint, matching_task_id=task_id)

    def check_task(self, question: str, solution: str, tags: Optional[Iterable[str]] = None) -> DuplicateCheck:
        data = task_fingerprint(question, solution, tags, use_fallback=self.use_fallback)
        return self.check(data.fingerprint)

    def __len__(self) -> int:
        return len(self._task_ids)

    def __contains__(self, fingerprint: object) -> bool:
        return fingerprint in self._task_ids


def build_fingerprint_map(tasks: Iterable[Task]) -> Dict[str, str]:
    """taskId -> fingerprint for every task that carries one."""

    return {task.id: task.fingerprint for task in tasks if task.fingerprint}


def check_fingerprint_duplicate(fingerprint: str, existing: Dict[str, str]) -> DuplicateCheck:
    for task_id, existing_fingerprint in existing.items():
        if existing_fingerprint == fingerprint:
            return DuplicateCheck(is_duplicate=True, fingerprint=fingerprint, matching_task_id=task_id)
    return DuplicateCheck(is_duplicate=False, fingerprint=fingerprint)


def check_task_duplicate(
    question: str,
    solution: str,
    tags: Optional[Iterable[str]],
    existing_tasks: Iterable[Task],
) -> DuplicateCheck:
    data = task_fingerprint(question, solution, tags)
    result = FingerprintIndex.from_tasks(
        (task for task in existing_tasks if task.fingerprint and len(task.fingerprint) == SHA256_LENGTH)
    ).check(data.fingerprint)
    if result.is_duplicate:
        logger.info("Exact duplicate of task %s detected", result.matching_task_id)
    return result


class TaskRegistry:
    """Persisted generated tasks; every save goes through the exact duplicate check."""

    def __init__(self, store: KeyedDocumentStore):
        self.store = store
        self._lock = threading.RLock()

    def list_tasks(self, module_id: Optional[str] = None) -> List[Task]:
        tasks = [Task.model_validate(item) for item in get_collection(self.store, TASKS_KEY)]
        if module_id is None:
            return tasks
        return [task for task in tasks if task.module_id == module_id]

    def add_task(self, task: Task) -> DuplicateCheck:
        """Store ``task`` with its fingerprint unless an identical task exists in its module."""

        data = task_fingerprint(task.question, task.solution, task.tags)
        with self._lock:
            result = check_task_duplicate(task.question, task.solution, task.tags, self.list_tasks(task.module_id))
            if result.is_duplicate:
                return result
            items = get_collection(self.store, TASKS_KEY)
            items.append(task.model_copy(update={"fingerprint": data.fingerprint}).model_dump(mode="json", by_alias=True))
            set_collection(self.store, TASKS_KEY, items)
        return result


__all__ = [
    "normalize_text",
    "normalize_tags",
    "sha256_hash",
    "simple_hash",
    "task_fingerprint",
    "DuplicateCheck",
    "FingerprintIndex",
    "build_fingerprint_map",
    "check_fingerprint_duplicate",
    "check_task_duplicate",
    "TaskRegistry",
]
