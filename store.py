"""Keyed JSON document stores.

Every durable record lives under a collection key (``document_analyses``,
``module_profiles`` ...) as one JSON list. Callers read the whole collection,
modify it and write it back.
"""

from __future__ import annotations

import json
import logging
import os
import sqlite3
import threading
from typing import Any, Dict, List, Optional, Protocol

logger = logging.getLogger(__name__)

STORE_PATH = os.getenv("STORE_PATH", "analysis.db")

DOCUMENT_ANALYSES_KEY = "document_analyses"
MODULE_PROFILES_KEY = "module_profiles"
TOPIC_COVERAGE_KEY = "topic_coverage"
TASKS_KEY = "tasks"
QUEUE_STATE_KEY = "analysis_queue_state"


class StoreError(Exception):
    """Raised when the backing store cannot read or write a key."""


class KeyedDocumentStore(Protocol):
    def get(self, key: str) -> Optional[Any]:
        ...

    def set(self, key: str, value: Any) -> None:
        ...


class InMemoryDocumentStore:
    """Process-local store; values are copied through JSON on the way in and out."""

    def __init__(self) -> None:
        self._data: Dict[str, str] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def set(self, key: str, value: Any) -> None:
        encoded = json.dumps(value, ensure_ascii=False)
        with self._lock:
            self._data[key] = encoded

    def keys(self) -> List[str]:
        with self._lock:
            return sorted(self._data)


class SQLiteDocumentStore:
    """SQLite-backed store with a single ``kv`` table.

    One connection is shared across threads and serialised with a lock, which
    also makes ``:memory:`` databases usable from the queue worker.
    """

    def __init__(self, database: str = STORE_PATH):
        self.database = database
        self._conn: Optional[sqlite3.Connection] = None
        self._lock = threading.Lock()

    def init(self) -> None:
        with self._lock:
            if self._conn is not None:
                return
            try:
                conn = sqlite3.connect(self.database, check_same_thread=False)
                conn.row_factory = sqlite3.Row
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS kv (
                        key TEXT PRIMARY KEY,
                        value TEXT NOT NULL,
                        updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
                    )
                    """
                )
                conn.commit()
            except sqlite3.Error as exc:
                raise StoreError(f"Cannot open store at {self.database}: {exc}") from exc
            self._conn = conn
            logger.info("Opened SQLite store at %s", self.database)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def _connection(self) -> sqlite3.Connection:
        if self._conn is None:
            self.init()
        assert self._conn is not None
        return self._conn

    def get(self, key: str) -> Optional[Any]:
        conn = self._connection()
        with self._lock:
            try:
                row = conn.execute("SELECT value FROM kv WHERE key = ?", (key,)).fetchone()
            except sqlite3.Error as exc:
                raise StoreError(f"Failed to read '{key}': {exc}") from exc
        if row is None:
            return None
        return json.loads(row["value"])

    def set(self, key: str, value: Any) -> None:
        encoded = json.dumps(value, ensure_ascii=False)
        conn = self._connection()
        with self._lock:
            try:
                conn.execute(
                    """
                    INSERT INTO kv (key, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)
                    ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = CURRENT_TIMESTAMP
                    """,
                    (key, encoded),
                )
                conn.commit()
            except sqlite3.Error as exc:
                conn.rollback()
                raise StoreError(f"Failed to write '{key}': {exc}") from exc


def get_collection(store: KeyedDocumentStore, key: str) -> List[Dict[str, Any]]:
    value = store.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        logger.warning("Collection %s holds %s, treating as empty", key, type(value).__name__)
        return []
    return value


def set_collection(store: KeyedDocumentStore, key: str, items: List[Dict[str, Any]]) -> None:
    store.set(key, list(items))


__all__ = [
    "DOCUMENT_ANALYSES_KEY",
    "MODULE_PROFILES_KEY",
    "TOPIC_COVERAGE_KEY",
    "TASKS_KEY",
    "QUEUE_STATE_KEY",
    "StoreError",
    "KeyedDocumentStore",
    "InMemoryDocumentStore",
    "SQLiteDocumentStore",
    "get_collection",
    "set_collection",
]
