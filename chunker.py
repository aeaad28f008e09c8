"""Sentence-aligned, overlapping text windows for chunk-wise extraction."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import List

from env_validation import safe_int

DEFAULT_MAX_CHARS = 12000
DEFAULT_OVERLAP = 500
BOUNDARY_SEARCH_FRACTION = 0.2

_SENTENCE_END_RE = re.compile(r"[.!?]\s+(?=[A-ZÄÖÜ])")


@dataclass(frozen=True)
class TextChunk:
    index: int
    start_pos: int
    end_pos: int
    text: str


@dataclass(frozen=True)
class ChunkingConfig:
    max_chars: int = DEFAULT_MAX_CHARS
    overlap: int = DEFAULT_OVERLAP

    @classmethod
    def from_env(cls) -> "ChunkingConfig":
        return cls(
            max_chars=safe_int("CHUNK_MAX_CHARS", DEFAULT_MAX_CHARS),
            overlap=safe_int("CHUNK_OVERLAP", DEFAULT_OVERLAP),
        )


def _sentence_boundary(text: str, start: int, end: int, max_chars: int) -> int:
    """Last sentence end inside the final 20% of ``text[start:end]``, else ``end``."""

    search_from = max(start, end - int(max_chars * BOUNDARY_SEARCH_FRACTION))
    boundary = end
    for match in _SENTENCE_END_RE.finditer(text, search_from, end):
        # keep the punctuation in the current chunk
        boundary = match.start() + 1
    return boundary


def chunk_text(
    text: str,
    max_chars: int = DEFAULT_MAX_CHARS,
    overlap: int = DEFAULT_OVERLAP,
) -> List[TextChunk]:
    """Split ``text`` into windows of at most ``max_chars`` characters.

    Chunks cover the whole input without gaps. Consecutive chunks share
    ``overlap`` characters unless that would stop the window from moving
    forward, in which case the next chunk starts where the previous one ended.
    """

    if max_chars <= 0:
        raise ValueError("max_chars must be positive")
    if overlap < 0:
        raise ValueError("overlap cannot be negative")

    length = len(text)
    if length <= max_chars:
        return [TextChunk(index=0, start_pos=0, end_pos=length, text=text)]

    chunks: List[TextChunk] = []
    start = 0
    while start < length:
        end = min(length, start + max_chars)
        if end < length:
            end = _sentence_boundary(text, start, end, max_chars)

        chunks.append(TextChunk(index=len(chunks), start_pos=start, end_pos=end, text=text[start:end]))
        if end >= length:
            break

        next_start = end - overlap
        if next_start <= start:
            next_start = end
        start = next_start
    return chunks


def chunk_document(text: str, config: ChunkingConfig | None = None) -> List[TextChunk]:
    config = config or ChunkingConfig()
    return chunk_text(text, max_chars=config.max_chars, overlap=config.overlap)
