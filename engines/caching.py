"""Memory-bounded embedding cache shared by the semantic duplicate checks."""

import hashlib
from collections import OrderedDict
from threading import Lock
from typing import List, Optional


class EmbeddingCache:
    """Thread-safe LRU cache for embeddings with size limit."""

    def __init__(self, max_size: int = 10000):
        if max_size <= 0:
            raise ValueError("max_size must be positive")
        self._cache: "OrderedDict[str, List[float]]" = OrderedDict()
        self._max_size = max_size
        self._lock = Lock()
        self.hits = 0
        self.misses = 0

    def add(self, text: str, embedding: List[float]) -> None:
        """Store an embedding, evicting the least recently used entry when full."""
        key = self._make_key(text)
        with self._lock:
            if key in self._cache:
                self._cache.move_to_end(key)
            self._cache[key] = list(embedding)
            while len(self._cache) > self._max_size:
                self._cache.popitem(last=False)

    def get(self, text: str) -> Optional[List[float]]:
        """Retrieve an embedding and mark it as most recently used."""
        key = self._make_key(text)
        with self._lock:
            embedding = self._cache.get(key)
            if embedding is None:
                self.misses += 1
                return None
            self.hits += 1
            self._cache.move_to_end(key)
            return list(embedding)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)

    @staticmethod
    def _make_key(text: str) -> str:
        """Full-text digest; texts sharing a prefix must not collide."""
        return hashlib.sha256(text.encode("utf-8")).hexdigest()
