"""Near-duplicate detection for generated tasks.

Two strategies share one result shape:

* ``soft``: a weighted mix of token Jaccard and character 3-/4-gram
  similarity. Always available, no external calls.
* ``embedding``: cosine similarity of embedding vectors from a configured
  :class:`EmbeddingBackend`. If the backend fails the check falls back to the
  soft strategy and reports ``method="soft"``.

Weights and thresholds are configuration (:class:`SimilarityConfig`), read
from ``SIMILARITY_WEIGHTS``, ``SIMILARITY_SOFT_THRESHOLD`` and
``SIMILARITY_EMBEDDING_THRESHOLD``.
"""

from __future__ import annotations

import hashlib
import logging
import math
import os
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Protocol, Sequence, Set, Tuple

import requests

from engines.caching import EmbeddingCache
from engines.validation import VectorLengthMismatchError
from env_validation import safe_float, safe_float_list, safe_int
from normalizer import tokenize
from schemas import SemanticCheckResult, Task

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS = (0.3, 0.4, 0.3)
DEFAULT_SOFT_THRESHOLD = 0.85
DEFAULT_EMBEDDING_THRESHOLD = 0.92
DEFAULT_EMBEDDING_URL = "http://localhost:4891/v1/embeddings"
MAX_EMBEDDING_INPUT = 8000

_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(frozen=True)
class SimilarityConfig:
    jaccard_weight: float = DEFAULT_WEIGHTS[0]
    trigram_weight: float = DEFAULT_WEIGHTS[1]
    fourgram_weight: float = DEFAULT_WEIGHTS[2]
    soft_threshold: float = DEFAULT_SOFT_THRESHOLD
    embedding_threshold: float = DEFAULT_EMBEDDING_THRESHOLD

    def __post_init__(self) -> None:
        weights = (self.jaccard_weight, self.trigram_weight, self.fourgram_weight)
        if any(weight < 0 for weight in weights) or sum(weights) <= 0:
            raise ValueError(f"Similarity weights must be non-negative with a positive sum, got {weights}")
        for name in ("soft_threshold", "embedding_threshold"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")

    @classmethod
    def from_env(cls) -> "SimilarityConfig":
        weights = safe_float_list("SIMILARITY_WEIGHTS", DEFAULT_WEIGHTS)
        if len(weights) != 3:
            logger.warning("SIMILARITY_WEIGHTS needs three values; using defaults")
            weights = list(DEFAULT_WEIGHTS)
        return cls(
            jaccard_weight=weights[0],
            trigram_weight=weights[1],
            fourgram_weight=weights[2],
            soft_threshold=safe_float("SIMILARITY_SOFT_THRESHOLD", DEFAULT_SOFT_THRESHOLD),
            embedding_threshold=safe_float("SIMILARITY_EMBEDDING_THRESHOLD", DEFAULT_EMBEDDING_THRESHOLD),
        )


# ------------------------------------------------------------------
# Pure similarity measures
# ------------------------------------------------------------------
def _set_similarity(left: Set[str], right: Set[str]) -> float:
    if not left and not right:
        return 1.0
    if not left or not right:
        return 0.0
    intersection = len(left & right)
    return intersection / (len(left) + len(right) - intersection)


def jaccard_similarity(text_a: str, text_b: str) -> float:
    return _set_similarity(set(tokenize(text_a)), set(tokenize(text_b)))


def char_ngrams(text: str, n: int = 3) -> Set[str]:
    normalized = _WHITESPACE_RE.sub(" ", text.lower()).strip()
    return {normalized[i:i + n] for i in range(len(normalized) - n + 1)}


def ngram_similarity(text_a: str, text_b: str, n: int = 3) -> float:
    return _set_similarity(char_ngrams(text_a, n), char_ngrams(text_b, n))


def soft_semantic_similarity(text_a: str, text_b: str, config: Optional[SimilarityConfig] = None) -> float:
    """Weighted Jaccard/trigram/fourgram similarity in ``[0, 1]``."""

    config = config or SimilarityConfig()
    total = config.jaccard_weight + config.trigram_weight + config.fourgram_weight
    score = (
        config.jaccard_weight * jaccard_similarity(text_a, text_b)
        + config.trigram_weight * ngram_similarity(text_a, text_b, 3)
        + config.fourgram_weight * ngram_similarity(text_a, text_b, 4)
    )
    return score / total


def cosine_similarity(vec_a: Sequence[float], vec_b: Sequence[float]) -> float:
    if len(vec_a) != len(vec_b):
        raise VectorLengthMismatchError(len(vec_a), len(vec_b))
    if not vec_a:
        return 0.0
    dot = sum(x * y for x, y in zip(vec_a, vec_b))
    norm_a = math.sqrt(sum(x * x for x in vec_a))
    norm_b = math.sqrt(sum(y * y for y in vec_b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def task_text(task: Task) -> str:
    return f"{task.question} {task.solution}".strip()


# ------------------------------------------------------------------
# Embedding backends
# ------------------------------------------------------------------
class EmbeddingBackend(Protocol):
    """Simple protocol implemented by embedding backends."""

    def embed(self, text: str) -> List[float]:
        raise NotImplementedError("EmbeddingBackend implementations must define embed().")


class HashEmbeddingBackend:
    """Deterministic embedding using hashed token frequencies."""

    def __init__(self, dimensions: int = 256) -> None:
        self.dimensions = max(8, dimensions)

    def embed(self, text: str) -> List[float]:
        vector = [0.0] * self.dimensions
        for token in tokenize(text):
            bucket = int(hashlib.sha256(token.encode("utf-8")).hexdigest(), 16) % self.dimensions
            vector[bucket] += 1.0
        norm = math.sqrt(sum(value * value for value in vector))
        if norm:
            vector = [value / norm for value in vector]
        return vector


class HTTPEmbeddingBackend:
    """OpenAI-style ``/v1/embeddings`` client."""

    def __init__(self, url: Optional[str] = None, *, model: Optional[str] = None, timeout: Optional[int] = None):
        self.url = url or os.getenv("EMBEDDING_URL") or DEFAULT_EMBEDDING_URL
        self.model = model or os.getenv("EMBEDDING_MODEL", "text-embedding-3-small")
        self.timeout = timeout if timeout is not None else safe_int("LLM_TIMEOUT", 120)

    def embed(self, text: str) -> List[float]:
        response = requests.post(
            self.url,
            json={"model": self.model, "input": text[:MAX_EMBEDDING_INPUT]},
            timeout=self.timeout,
        )
        response.raise_for_status()
        data = response.json()
        try:
            vector = data["data"][0]["embedding"]
        except (KeyError, IndexError, TypeError) as exc:
            raise ValueError(f"Unexpected embedding response: {data!r}"[:300]) from exc
        return [float(value) for value in vector]


def embedding_backend_from_env() -> Optional[EmbeddingBackend]:
    """HTTP backend when ``EMBEDDING_URL`` is set; ``None`` keeps the soft check only."""

    url = os.getenv("EMBEDDING_URL")
    if not url:
        return None
    logger.info("Embedding similarity enabled via %s", url)
    return HTTPEmbeddingBackend(url)


# ------------------------------------------------------------------
# Deduplicator
# ------------------------------------------------------------------
class SemanticDeduplicator:
    def __init__(
        self,
        config: Optional[SimilarityConfig] = None,
        embedding_backend: Optional[EmbeddingBackend] = None,
        cache: Optional[EmbeddingCache] = None,
    ) -> None:
        self.config = config or SimilarityConfig()
        self.embedding_backend = embedding_backend
        self.cache = cache if cache is not None else EmbeddingCache()

    def _embed(self, text: str) -> List[float]:
        cached = self.cache.get(text)
        if cached is not None:
            return cached
        vector = self.embedding_backend.embed(text)
        self.cache.add(text, vector)
        return vector

    def _best_soft_match(self, candidate_text: str, tasks: Iterable[Task]) -> Tuple[float, Optional[str]]:
        best, best_id = 0.0, None
        for task in tasks:
            similarity = soft_semantic_similarity(candidate_text, task_text(task), self.config)
            if best_id is None or similarity > best:
                best, best_id = similarity, task.id
        return best, best_id

    def _best_embedding_match(self, candidate_text: str, tasks: Iterable[Task]) -> Tuple[float, Optional[str]]:
        candidate = self._embed(candidate_text)
        best, best_id = 0.0, None
        for task in tasks:
            similarity = cosine_similarity(candidate, self._embed(task_text(task)))
            if best_id is None or similarity > best:
                best, best_id = similarity, task.id
        return best, best_id

    def find_semantic_duplicates(
        self,
        candidate_text: str,
        existing_tasks: Sequence[Task],
        threshold: Optional[float] = None,
    ) -> SemanticCheckResult:
        """Most similar existing task and whether it reaches the duplicate threshold.

        ``threshold`` overrides the configured threshold of whichever method runs.
        """

        if self.embedding_backend is not None:
            try:
                similarity, task_id = self._best_embedding_match(candidate_text, existing_tasks)
            except VectorLengthMismatchError:
                raise
            except (requests.RequestException, ValueError, OSError) as exc:
                logger.warning("Embedding similarity unavailable, using soft similarity: %s", exc)
            else:
                limit = self.config.embedding_threshold if threshold is None else threshold
                return self._result(similarity, task_id, limit, "embedding")

        similarity, task_id = self._best_soft_match(candidate_text, existing_tasks)
        limit = self.config.soft_threshold if threshold is None else threshold
        return self._result(similarity, task_id, limit, "soft")

    @staticmethod
    def _result(similarity: float, task_id: Optional[str], threshold: float, method: str) -> SemanticCheckResult:
        is_duplicate = task_id is not None and similarity >= threshold
        return SemanticCheckResult(
            is_duplicate=is_duplicate,
            similarity=similarity,
            matching_task_id=task_id if is_duplicate else None,
            method=method,
        )

    def get_top_k_similar_tasks(
        self,
        candidate_text: str,
        existing_tasks: Sequence[Task],
        k: int = 10,
        topic_id: Optional[str] = None,
    ) -> List[Tuple[str, float]]:
        """``(task_id, similarity)`` pairs, most similar first, restricted to ``topic_id`` when given."""

        if k <= 0:
            return []
        pool = [task for task in existing_tasks if topic_id is None or task.topic_id == topic_id]
        scored = [
            (task.id, soft_semantic_similarity(candidate_text, task_text(task), self.config))
            for task in pool
        ]
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored[:k]


__all__ = [
    "SimilarityConfig",
    "jaccard_similarity",
    "char_ngrams",
    "ngram_similarity",
    "soft_semantic_similarity",
    "cosine_similarity",
    "task_text",
    "EmbeddingBackend",
    "HashEmbeddingBackend",
    "HTTPEmbeddingBackend",
    "embedding_backend_from_env",
    "SemanticDeduplicator",
]
