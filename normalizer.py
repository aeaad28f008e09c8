"""Text normalisation, hashing and evidence matching helpers.

Everything here is a pure function. The analysis cache hashes documents with
:func:`compute_source_hash`, the extractor grounds model output with
:func:`has_valid_evidence`, and the dedup engines share :func:`tokenize`.
"""

from __future__ import annotations

import hashlib
import math
import re
import unicodedata
from typing import Iterable, List

__all__ = [
    "MAX_SNIPPET_LENGTH",
    "normalize_text_for_hash",
    "sha256_hex",
    "compute_source_hash",
    "compute_aggregate_hash",
    "strip_punctuation",
    "tokenize",
    "evidence_words",
    "has_valid_evidence",
    "truncate_snippet",
]

MAX_SNIPPET_LENGTH = 200

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_text_for_hash(text: str) -> str:
    """NFC-normalise, collapse whitespace runs and strip ``text``."""

    if not text:
        return ""
    normalized = unicodedata.normalize("NFC", text)
    return _WHITESPACE_RE.sub(" ", normalized).strip()


def sha256_hex(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def compute_source_hash(text: str) -> str:
    """Content hash of a document, insensitive to whitespace layout."""

    return sha256_hex(normalize_text_for_hash(text))


def compute_aggregate_hash(hashes: Iterable[str]) -> str:
    """Order-independent hash over constituent document hashes."""

    return sha256_hex("|".join(sorted(hashes)))


def strip_punctuation(text: str) -> str:
    """Replace every Unicode punctuation or symbol character with a space."""

    return "".join(
        " " if unicodedata.category(char)[0] in ("P", "S") else char for char in text
    )


def tokenize(text: str) -> List[str]:
    """Lowercase word tokens longer than one character."""

    if not text:
        return []
    cleaned = strip_punctuation(text.lower())
    return [token for token in cleaned.split() if len(token) > 1]


def evidence_words(snippet: str, min_word_length: int = 3) -> List[str]:
    return [word for word in snippet.lower().split() if len(word) > min_word_length]


def has_valid_evidence(
    snippet: str,
    source_text: str,
    *,
    min_word_length: int = 3,
    min_ratio: float = 0.6,
) -> bool:
    """Return ``True`` when ``snippet`` is approximately present in ``source_text``.

    Words of the snippet longer than ``min_word_length`` are matched as
    case-insensitive substrings of the source. At least ``ceil(n * min_ratio)``
    of them must match. A snippet without qualifying words passes, a missing
    snippet fails.
    """

    if not snippet or not isinstance(snippet, str):
        return False
    words = evidence_words(snippet, min_word_length)
    if not words:
        return True
    haystack = source_text.lower()
    matched = sum(1 for word in words if word in haystack)
    return matched >= math.ceil(len(words) * min_ratio)


def truncate_snippet(snippet: str, limit: int = MAX_SNIPPET_LENGTH) -> str:
    return (snippet or "")[:limit]
