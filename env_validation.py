"""Environment variable validation and typed accessors."""

import os
import logging
from typing import Dict, Iterable, List

logger = logging.getLogger(__name__)

DEFAULT_TEXTGEN_URL = "http://localhost:4891/v1/chat/completions"
DEFAULT_ANALYSIS_MODEL = "gpt-4o-mini"


class EnvironmentError(Exception):
    """Raised when environment variables are missing or invalid."""
    pass


def safe_int(name: str, default: int) -> int:
    raw = os.getenv(name, "")
    try:
        return int(raw) if raw else default
    except (TypeError, ValueError):
        return default


def safe_float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw) if raw else default
    except (TypeError, ValueError):
        return default


def safe_float_list(name: str, default: Iterable[float]) -> List[float]:
    """Parse a comma separated list of floats, falling back to ``default``."""
    raw = os.getenv(name, "")
    if not raw:
        return list(default)
    try:
        return [float(part) for part in raw.split(",") if part.strip()]
    except ValueError:
        logger.warning("Ignoring malformed %s value '%s'", name, raw)
        return list(default)


def get_env_bool(name: str, default: bool = False) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on", "enabled"}


def validate_environment() -> None:
    """Validate analysis configuration.

    Applies defaults for unset variables and raises EnvironmentError when a
    supplied value cannot be used.
    """
    defaults = {
        "TEXTGEN_URL": DEFAULT_TEXTGEN_URL,
        "ANALYSIS_MODEL": DEFAULT_ANALYSIS_MODEL,
        "STORE_PATH": "analysis.db",
    }

    # Apply defaults before validation so dependent modules see consistent values.
    for var, value in defaults.items():
        if not os.getenv(var):
            os.environ[var] = value
            logger.info("Environment variable %s not set; using default '%s'", var, value)

    url_vars = {"TEXTGEN_URL", "EMBEDDING_URL"}
    for var in url_vars:
        value = os.getenv(var)
        if value and not (value.startswith("http://") or value.startswith("https://")):
            raise EnvironmentError(f"Invalid URL format for {var}: {value}")

    positive_ints: Dict[str, int] = {
        "CHUNK_MAX_CHARS": 12000,
        "LLM_TIMEOUT": 120,
    }
    for var, default in positive_ints.items():
        if safe_int(var, default) <= 0:
            raise EnvironmentError(f"{var} must be a positive integer")

    if safe_int("LLM_MAX_RETRIES", 2) < 0:
        raise EnvironmentError("LLM_MAX_RETRIES must not be negative")

    max_chars = safe_int("CHUNK_MAX_CHARS", 12000)
    overlap = safe_int("CHUNK_OVERLAP", 500)
    if overlap < 0 or overlap >= max_chars:
        raise EnvironmentError(
            f"CHUNK_OVERLAP must be between 0 and CHUNK_MAX_CHARS ({max_chars}), got {overlap}"
        )

    weights = safe_float_list("SIMILARITY_WEIGHTS", (0.3, 0.4, 0.3))
    if len(weights) != 3 or any(weight < 0 for weight in weights) or sum(weights) <= 0:
        raise EnvironmentError("SIMILARITY_WEIGHTS must be three non-negative numbers")

    for var in ("SIMILARITY_SOFT_THRESHOLD", "SIMILARITY_EMBEDDING_THRESHOLD"):
        threshold = safe_float(var, 0.85)
        if not (0.0 < threshold <= 1.0):
            raise EnvironmentError(f"{var} must be in (0, 1], got {threshold}")

    optional_vars = {
        "LLM_RATE_LIMIT_COOLDOWN": "Cooldown seconds after a rate-limit response",
        "SIMILARITY_WEIGHTS": "Jaccard/trigram/fourgram similarity weights",
        "EMBEDDING_URL": "Embedding endpoint for the embedding duplicate check",
    }
    for var, description in optional_vars.items():
        if not os.getenv(var):
            logger.warning("Optional environment variable not set: %s (%s)", var, description)
