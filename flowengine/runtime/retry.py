"""
Retry classification and the per-run circuit breaker.

Only transient failures are retried: network timeouts and resets, HTTP
408, 429 and 5xx. Everything else (other 4xx, malformed input, bad
config) fails immediately.

Delays honour a provider's Retry-After (seconds or HTTP date, capped at
60s); otherwise exponential backoff 250ms, 500ms, 1s, ... capped at 8s.
No jitter, so delays are deterministic.

The circuit breaker counts terminal node failures in a run. Once it hits
its threshold it stays open for the rest of the run and no node is
retried again.
"""

import logging
import time
from collections.abc import Mapping
from dataclasses import dataclass
from email.utils import parsedate_to_datetime

import httpx

from flowengine.errors import (
    NodeConfigError,
    NodeExecutionError,
    NodeTimeoutError,
    ResourceExhaustedError,
    SecurityError,
)

logger = logging.getLogger(__name__)

RETRY_AFTER_HEADER = "retry-after"
MAX_RETRY_AFTER_MS = 60_000.0
BASE_BACKOFF_MS = 250.0
MAX_BACKOFF_MS = 8_000.0
DEFAULT_CIRCUIT_BREAKER_THRESHOLD = 5

_TRANSIENT_SIGNATURES = ("timeout", "timed out", "etimedout", "econnreset", "connection reset")
_RATE_LIMIT_SIGNATURES = ("429", "rate limit")
_SERVER_ERROR_SIGNATURES = ("internal server", "bad gateway", "service unavailable")


@dataclass
class ResponseMeta:
    """The bits of an upstream HTTP response that retry decisions look at."""

    status: int | None = None
    headers: Mapping[str, str] | None = None
    min_delay_ms: float | None = None

    @classmethod
    def from_error(cls, error: BaseException) -> "ResponseMeta | None":
        if isinstance(error, NodeExecutionError) and (
            error.status or error.headers or error.retry_after_ms is not None
        ):
            return cls(status=error.status, headers=error.headers, min_delay_ms=error.retry_after_ms)
        return None

    def header(self, name: str) -> str | None:
        for key, value in (self.headers or {}).items():
            if key.lower() == name:
                return value
        return None


@dataclass
class RetryDecision:
    """Outcome of should_retry()."""

    retry: bool
    delay_ms: float = 0.0
    reason: str = ""


def parse_retry_after(value: str | None, now: float | None = None) -> float | None:
    """
    Parse a Retry-After value into milliseconds.

    Accepts delta-seconds ("120") or an HTTP date. Returns None when the
    value is missing or unparseable; dates in the past give 0.
    """
    if value is None or not value.strip():
        return None
    value = value.strip()
    try:
        seconds = int(value)
    except ValueError:
        pass
    else:
        return seconds * 1000.0 if seconds >= 0 else None

    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    current = time.time() if now is None else now
    return max(0.0, (when.timestamp() - current) * 1000.0)


def is_retryable_error(error: BaseException, response: ResponseMeta | None = None) -> bool:
    """Whether a failure looks transient."""
    if isinstance(error, SecurityError | ResourceExhaustedError | NodeConfigError):
        return False
    if isinstance(error, NodeTimeoutError | TimeoutError | httpx.TimeoutException):
        return True
    if isinstance(error, httpx.NetworkError):
        return True

    if response is None:
        response = ResponseMeta.from_error(error)
    status = response.status if response else None
    if status is not None:
        if status in (408, 429) or 500 <= status < 600:
            return True
        return False

    message = str(error).lower()
    if any(sig in message for sig in _TRANSIENT_SIGNATURES):
        return True
    if any(sig in message for sig in _RATE_LIMIT_SIGNATURES):
        return True
    return any(sig in message for sig in _SERVER_ERROR_SIGNATURES)


def get_retry_delay(attempt: int, response: ResponseMeta | None = None) -> float:
    """
    Delay in ms before the next attempt, given the attempt that just failed.

    Retry-After wins over backoff. A known floor (min_delay_ms, e.g. the
    rate limiter's remaining cooldown after a 429) raises whichever applies.
    Both are capped at 60s.
    """
    delay = min(MAX_BACKOFF_MS, BASE_BACKOFF_MS * 2 ** (max(attempt, 1) - 1))
    if response is None:
        return delay
    retry_after = parse_retry_after(response.header(RETRY_AFTER_HEADER))
    if retry_after is not None and retry_after > 0:
        delay = min(retry_after, MAX_RETRY_AFTER_MS)
    if response.min_delay_ms:
        delay = max(delay, min(response.min_delay_ms, MAX_RETRY_AFTER_MS))
    return delay


def should_retry(
    error: BaseException,
    attempt: int,
    max_retries: int,
    response: ResponseMeta | None = None,
) -> RetryDecision:
    """
    Decide whether a failed attempt should be retried.

    Args:
        error: What the attempt raised
        attempt: 1-based number of the attempt that just failed
        max_retries: Retries allowed after the first attempt
        response: Upstream response metadata, if not carried on the error

    Returns:
        RetryDecision with the delay to wait, or the reason not to retry
    """
    if attempt > max_retries:
        return RetryDecision(retry=False, reason="max retries exceeded")
    if response is None:
        response = ResponseMeta.from_error(error)
    if not is_retryable_error(error, response):
        return RetryDecision(retry=False, reason="error is not retryable (e.g. 4xx, bad input)")
    return RetryDecision(retry=True, delay_ms=get_retry_delay(attempt, response))


class RunCircuitBreaker:
    """
    One per run. Counts terminal node failures; never resets.

    Example:
        breaker = RunCircuitBreaker(threshold=5)
        breaker.record_failure()
        if breaker.is_open:
            ...  # stop retrying anywhere in the run
    """

    def __init__(self, threshold: int = DEFAULT_CIRCUIT_BREAKER_THRESHOLD):
        if threshold < 1:
            raise ValueError("Circuit breaker threshold must be at least 1")
        self.threshold = threshold
        self._failure_count = 0

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def is_open(self) -> bool:
        return self._failure_count >= self.threshold

    def record_failure(self) -> bool:
        """Count a terminal failure. Returns True if this one opened the breaker."""
        was_open = self.is_open
        self._failure_count += 1
        if self.is_open and not was_open:
            logger.warning(
                "Circuit breaker open after %d terminal failures; retries disabled for this run",
                self._failure_count,
                extra={"event": "circuit_opened"},
            )
            return True
        return False
