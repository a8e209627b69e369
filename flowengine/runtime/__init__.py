"""Per-run and per-process coordination: pools, retries, rate limits, events."""

from flowengine.runtime.event_bus import EventBus, EventType, RunEvent
from flowengine.runtime.rate_limiter import (
    ProviderRateLimiter,
    RateLimitDecision,
    RateLimitIdentity,
)
from flowengine.runtime.resource_pool import ResourcePoolManager, get_pool_limit
from flowengine.runtime.retry import (
    ResponseMeta,
    RetryDecision,
    RunCircuitBreaker,
    get_retry_delay,
    is_retryable_error,
    parse_retry_after,
    should_retry,
)

__all__ = [
    "EventBus",
    "EventType",
    "RunEvent",
    "ProviderRateLimiter",
    "RateLimitDecision",
    "RateLimitIdentity",
    "ResourcePoolManager",
    "get_pool_limit",
    "ResponseMeta",
    "RetryDecision",
    "RunCircuitBreaker",
    "get_retry_delay",
    "is_retryable_error",
    "parse_retry_after",
    "should_retry",
]
