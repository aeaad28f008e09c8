"""Validation errors and checks for extracted analysis items."""

import re


class AnalysisError(Exception):
    """Base class for analysis pipeline errors."""
    pass


class ChunkParseError(AnalysisError):
    """Raised when a model response for a chunk contains no usable JSON object."""
    pass


class VectorLengthMismatchError(ValueError):
    """Raised when two vectors of different dimension are compared."""

    def __init__(self, left: int, right: int):
        super().__init__(f"Vector length mismatch: {left} != {right}")
        self.left = left
        self.right = right


_LATEX_INDICATORS = (
    re.compile(r"\\"),
    re.compile(r"\^"),
    re.compile(r"_"),
    re.compile(r"\{.*\}"),
)

_TEXT_INDICATORS = (
    re.compile(r"^[A-Za-z\s,.:;!?äöüÄÖÜß]+$"),
    re.compile(r"\bBeispiel\b", re.IGNORECASE),
    re.compile(r"\bsiehe\b", re.IGNORECASE),
    re.compile(r"\bbzw\.", re.IGNORECASE),
)


def is_valid_latex(latex: str) -> bool:
    """Return True when ``latex`` looks like a formula rather than prose.

    A LaTeX marker (backslash, ``^``, ``_`` or braces) is required and no
    prose marker may be present.
    """
    if not latex or not isinstance(latex, str):
        return False
    if not any(pattern.search(latex) for pattern in _LATEX_INDICATORS):
        return False
    return not any(pattern.search(latex) for pattern in _TEXT_INDICATORS)


__all__ = [
    "AnalysisError",
    "ChunkParseError",
    "VectorLengthMismatchError",
    "is_valid_latex",
]
