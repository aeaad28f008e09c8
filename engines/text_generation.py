"""Client for the external text generation service.

Callers depend on the :class:`TextGenerationService` protocol. The default
implementation posts OpenAI-style chat completion payloads with ``requests``
and retries transient failures with exponential backoff and jitter. Every
failure surfaces as :class:`TextGenerationError` carrying an
:class:`ErrorKind`; retry and cooldown decisions switch on that kind only.
"""

from __future__ import annotations

import json
import logging
import os
import random
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, TypeVar

import requests

from env_validation import DEFAULT_ANALYSIS_MODEL, DEFAULT_TEXTGEN_URL, safe_float, safe_int

logger = logging.getLogger(__name__)

_LLM_LOGGER = logging.getLogger("lernbuddy.textgen")
if not _LLM_LOGGER.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(logging.Formatter("%(message)s"))
    _LLM_LOGGER.addHandler(_handler)
_LLM_LOGGER.setLevel(logging.INFO)
_LLM_LOGGER.propagate = False

T = TypeVar("T")


class ErrorKind(str, Enum):
    RATE_LIMITED = "rateLimited"
    TIMEOUT = "timeout"
    TRANSPORT = "transport"
    OTHER = "other"


RETRYABLE_KINDS = frozenset({ErrorKind.RATE_LIMITED, ErrorKind.TIMEOUT, ErrorKind.TRANSPORT})


class TextGenerationError(Exception):
    """Failure of a text generation call, classified by ``kind``."""

    def __init__(self, kind: ErrorKind, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.kind = ErrorKind(kind)
        self.message = message
        self.status_code = status_code

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS


class TextGenerationService(Protocol):
    def generate(
        self,
        prompt: str,
        *,
        model: Optional[str] = None,
        json_mode: bool = False,
        max_retries: Optional[int] = None,
    ) -> str:
        ...


def classify_http_status(status: int) -> ErrorKind:
    if status == 429:
        return ErrorKind.RATE_LIMITED
    if status in (408, 504):
        return ErrorKind.TIMEOUT
    if 500 <= status < 600:
        return ErrorKind.TRANSPORT
    return ErrorKind.OTHER


def classify_exception(exc: BaseException) -> ErrorKind:
    """Map any exception to an :class:`ErrorKind`; unknown errors are ``other``."""

    if isinstance(exc, TextGenerationError):
        return exc.kind
    if isinstance(exc, requests.Timeout):
        return ErrorKind.TIMEOUT
    if isinstance(exc, requests.ConnectionError):
        return ErrorKind.TRANSPORT
    if isinstance(exc, requests.HTTPError) and exc.response is not None:
        return classify_http_status(exc.response.status_code)
    return ErrorKind.OTHER


@dataclass(frozen=True)
class RetryPolicy:
    base_delay: float = 1.0
    max_delay: float = 30.0
    jitter: float = 1.0

    def delay_for(self, attempt: int, rng: Optional[random.Random] = None) -> float:
        """Seconds to wait before retry ``attempt`` (1-based)."""

        backoff = min(self.base_delay * (2 ** attempt), self.max_delay)
        spread = (rng or random).uniform(0.0, self.jitter) if self.jitter > 0 else 0.0
        return backoff + spread


def with_retry(
    call: Callable[[], T],
    policy: RetryPolicy,
    *,
    attempts: int,
    sleep: Callable[[float], None] = time.sleep,
    rng: Optional[random.Random] = None,
    on_rate_limit: Optional[Callable[[TextGenerationError], None]] = None,
) -> T:
    """Run ``call`` up to ``attempts`` times, retrying retryable errors only."""

    attempts = max(1, attempts)
    for attempt in range(attempts):
        if attempt > 0:
            delay = policy.delay_for(attempt, rng)
            logger.info("Text generation retry %d/%d in %.2fs", attempt + 1, attempts, delay)
            sleep(delay)
        try:
            return call()
        except TextGenerationError as exc:
            if exc.kind is ErrorKind.RATE_LIMITED and on_rate_limit is not None:
                on_rate_limit(exc)
            if not exc.retryable:
                raise
            logger.warning(
                "Text generation attempt %d/%d failed (%s): %s",
                attempt + 1,
                attempts,
                exc.kind.value,
                exc.message,
            )
            if attempt == attempts - 1:
                raise TextGenerationError(
                    exc.kind,
                    f"Text generation failed after {attempts} attempts: {exc.message}",
                    status_code=exc.status_code,
                ) from exc
    raise AssertionError("unreachable")


def _extract_content(data: Any) -> str:
    try:
        return data["choices"][0]["message"]["content"]
    except (KeyError, IndexError, TypeError):
        try:
            return data["choices"][0]["text"]
        except (KeyError, IndexError, TypeError):
            raise TextGenerationError(ErrorKind.OTHER, f"Unexpected response shape: {str(data)[:300]}")


class HTTPTextGenerationService:
    """``requests``-based client for an OpenAI-compatible completion endpoint."""

    def __init__(
        self,
        url: Optional[str] = None,
        *,
        model: Optional[str] = None,
        timeout: Optional[int] = None,
        max_retries: Optional[int] = None,
        temperature: Optional[float] = None,
        rate_limit_cooldown: Optional[float] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.url = url or os.getenv("TEXTGEN_URL") or DEFAULT_TEXTGEN_URL
        self.model = model or os.getenv("ANALYSIS_MODEL") or DEFAULT_ANALYSIS_MODEL
        self.timeout = timeout if timeout is not None else safe_int("LLM_TIMEOUT", 120)
        self.max_retries = max_retries if max_retries is not None else safe_int("LLM_MAX_RETRIES", 2)
        self.temperature = temperature if temperature is not None else safe_float("LLM_TEMPERATURE", 0.1)
        self.rate_limit_cooldown = (
            rate_limit_cooldown
            if rate_limit_cooldown is not None
            else safe_float("LLM_RATE_LIMIT_COOLDOWN", 60.0)
        )
        self.policy = policy or RetryPolicy()
        self._sleep = sleep
        self._clock = clock
        self._rng = rng
        self._cooldown_until = 0.0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------
    def generate(
        self,
        prompt: str,
        *,
        model: Optional[str] = None,
        json_mode: bool = False,
        max_retries: Optional[int] = None,
    ) -> str:
        model_id = model or self.model
        messages = [{"role": "user", "content": prompt}]
        retries = max_retries if max_retries is not None else self.max_retries
        counter = {"attempt": 0}

        def _attempt() -> str:
            counter["attempt"] += 1
            self._wait_for_cooldown()
            return self._post(messages, model_id, json_mode, counter["attempt"])

        return with_retry(
            _attempt,
            self.policy,
            attempts=retries + 1,
            sleep=self._sleep,
            rng=self._rng,
            on_rate_limit=self._start_cooldown,
        )

    def in_cooldown(self) -> bool:
        return self._clock() < self._cooldown_until

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _start_cooldown(self, exc: TextGenerationError) -> None:
        self._cooldown_until = self._clock() + self.rate_limit_cooldown
        logger.warning("Rate limited by text generation service; cooling down for %.0fs", self.rate_limit_cooldown)

    def _wait_for_cooldown(self) -> None:
        remaining = self._cooldown_until - self._clock()
        if remaining > 0:
            self._sleep(remaining)

    def _payload(self, messages: List[Dict[str, str]], model_id: str, json_mode: bool) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model_id,
            "messages": messages,
            "temperature": self.temperature,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}
        return payload

    def _post(self, messages: List[Dict[str, str]], model_id: str, json_mode: bool, attempt: int) -> str:
        start = time.perf_counter()
        outcome = "ok"
        error_kind: Optional[str] = None
        try:
            try:
                response = requests.post(
                    self.url,
                    json=self._payload(messages, model_id, json_mode),
                    timeout=self.timeout,
                )
                if response.status_code == 400:
                    # some local servers reject response_format/temperature
                    minimal = {"model": model_id, "messages": messages}
                    response = requests.post(self.url, json=minimal, timeout=self.timeout)
                response.raise_for_status()
                data = response.json()
            except requests.HTTPError as exc:
                status = exc.response.status_code if exc.response is not None else 0
                body = exc.response.text[:300] if exc.response is not None else ""
                raise TextGenerationError(
                    classify_http_status(status),
                    f"HTTP {status}: {body}",
                    status_code=status,
                ) from exc
            except requests.RequestException as exc:
                raise TextGenerationError(classify_exception(exc), str(exc)) from exc
            except ValueError as exc:
                raise TextGenerationError(ErrorKind.OTHER, f"Invalid JSON from text generation service: {exc}") from exc
            return _extract_content(data)
        except TextGenerationError as exc:
            outcome = "error"
            error_kind = exc.kind.value
            raise
        finally:
            log_record = {
                "event": "textgen_call",
                "model": model_id,
                "attempt": attempt,
                "latency_ms": int((time.perf_counter() - start) * 1000),
                "outcome": outcome,
                "error_kind": error_kind,
            }
            _LLM_LOGGER.info(json.dumps(log_record, ensure_ascii=False))


__all__ = [
    "ErrorKind",
    "RETRYABLE_KINDS",
    "TextGenerationError",
    "TextGenerationService",
    "classify_http_status",
    "classify_exception",
    "RetryPolicy",
    "with_retry",
    "HTTPTextGenerationService",
]
