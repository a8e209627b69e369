"""
Provider rate limiting: per BYOK key, per user, or global (platform key).

Keeps marketplace runs from producing 429 storms against external AI
providers. One limiter per process, injected into executors; buckets
live in memory.

Bucket key, most specific first:
    key:<fingerprint>:<provider>   caller brought their own key
    user:<user_id>:<provider>      platform key, known user
    global:<provider>              platform key, anonymous

Each bucket has a fixed 60s window. An upstream 429 puts the bucket into
a 60s cooldown regardless of remaining budget.
"""

import logging
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass

from flowengine.config import DEFAULT_PROVIDER_LIMITS

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60.0
COOLDOWN_AFTER_THROTTLE_SECONDS = 60.0
DEFAULT_LIMIT_PER_WINDOW = 60


@dataclass(frozen=True)
class RateLimitIdentity:
    """Who a provider call is billed to."""

    api_key_fingerprint: str | None = None
    user_id: str | None = None

    def bucket_key(self, provider: str) -> str:
        if self.api_key_fingerprint:
            return f"key:{self.api_key_fingerprint}:{provider}"
        if self.user_id:
            return f"user:{self.user_id}:{provider}"
        return f"global:{provider}"


@dataclass
class RateLimitDecision:
    allowed: bool
    retry_after_ms: float | None = None


@dataclass
class _Bucket:
    count: int
    reset_at: float


class ProviderRateLimiter:
    """
    In-memory, thread-safe provider budget tracker.

    Example:
        limiter = ProviderRateLimiter()
        identity = RateLimitIdentity(user_id="u1")

        decision = limiter.check("openai", identity)
        if decision.allowed:
            limiter.record("openai", identity)
            ...  # call the provider
    """

    def __init__(
        self,
        limits: Mapping[str, int] | None = None,
        window_seconds: float = WINDOW_SECONDS,
        cooldown_seconds: float = COOLDOWN_AFTER_THROTTLE_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._limits = dict(DEFAULT_PROVIDER_LIMITS)
        self._limits.update(limits or {})
        self._window = window_seconds
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._cooldowns: dict[str, float] = {}
        self._lock = threading.Lock()

    def limit_for(self, provider: str) -> int:
        return self._limits.get(provider, DEFAULT_LIMIT_PER_WINDOW)

    def _current_bucket(self, key: str, now: float) -> _Bucket:
        bucket = self._buckets.get(key)
        if bucket is None or now >= bucket.reset_at:
            bucket = _Bucket(count=0, reset_at=now + self._window)
            self._buckets[key] = bucket
        return bucket

    def check(self, provider: str, identity: RateLimitIdentity) -> RateLimitDecision:
        """Whether one more call fits in the bucket right now."""
        key = identity.bucket_key(provider)
        with self._lock:
            now = self._clock()
            cooldown_until = self._cooldowns.get(key)
            if cooldown_until is not None:
                if now < cooldown_until:
                    return RateLimitDecision(
                        allowed=False, retry_after_ms=(cooldown_until - now) * 1000.0
                    )
                del self._cooldowns[key]

            bucket = self._current_bucket(key, now)
            if bucket.count >= self.limit_for(provider):
                return RateLimitDecision(
                    allowed=False, retry_after_ms=(bucket.reset_at - now) * 1000.0
                )
            return RateLimitDecision(allowed=True)

    def record(self, provider: str, identity: RateLimitIdentity) -> None:
        """Count one call against the bucket."""
        key = identity.bucket_key(provider)
        with self._lock:
            self._current_bucket(key, self._clock()).count += 1

    def record_throttle(self, provider: str, identity: RateLimitIdentity) -> None:
        """The provider answered 429: cool the bucket down."""
        key = identity.bucket_key(provider)
        with self._lock:
            self._cooldowns[key] = self._clock() + self._cooldown
        logger.warning(
            "Provider %s throttled %s; cooling down for %.0fs",
            provider,
            key.split(":", 1)[0],
            self._cooldown,
            extra={"event": "provider_throttled"},
        )

    def cooldown_remaining_ms(self, provider: str, identity: RateLimitIdentity) -> float:
        """Milliseconds until a throttled bucket accepts calls again (0 if not cooling down)."""
        key = identity.bucket_key(provider)
        with self._lock:
            cooldown_until = self._cooldowns.get(key)
            if cooldown_until is None:
                return 0.0
            return max(0.0, (cooldown_until - self._clock()) * 1000.0)
