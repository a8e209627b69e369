"""
Exception hierarchy for the workflow engine.

Node behaviours raise these; the executor turns them into NodeState errors
and uses the type (plus any HTTP status / headers carried along) to decide
between retrying, applying the node's failure policy, or failing hard.
"""

from collections.abc import Mapping


class FlowEngineError(Exception):
    """Base class for all engine errors."""


class GraphValidationError(FlowEngineError):
    """The submitted graph is structurally invalid and cannot be scheduled."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Invalid graph")


class InvalidTransitionError(FlowEngineError):
    """A NodeState was asked to move backwards or out of a terminal state."""


class NodeExecutionError(FlowEngineError):
    """A node failed while running.

    ``status`` and ``headers`` describe the upstream HTTP response, when there
    was one, so retry classification can look at 429/5xx and Retry-After.
    ``retry_after_ms`` is a floor on the next retry delay (e.g. a provider
    cooldown the caller already knows about).
    """

    kind = "execution"

    def __init__(
        self,
        message: str,
        status: int | None = None,
        headers: Mapping[str, str] | None = None,
        retry_after_ms: float | None = None,
    ):
        super().__init__(message)
        self.status = status
        self.headers = dict(headers or {})
        self.retry_after_ms = retry_after_ms


class ProviderError(NodeExecutionError):
    """An AI provider (e.g. OpenAI) returned an error response."""

    kind = "provider"


class NodeTimeoutError(NodeExecutionError):
    """A single node attempt exceeded its timeout."""

    kind = "timeout"


class NodeConfigError(NodeExecutionError):
    """The node's configuration or inputs make the call impossible."""

    kind = "config"


class SecurityError(NodeExecutionError):
    """A security boundary refused the node's action. Never retried."""

    kind = "security"


class EgressDeniedError(SecurityError):
    """The egress guard refused an outbound URL."""


class RateLimitExceededError(SecurityError):
    """The provider rate limiter refused the call."""

    def __init__(self, message: str, retry_after_ms: float | None = None):
        super().__init__(message, status=429, retry_after_ms=retry_after_ms)


class ResourceExhaustedError(NodeExecutionError):
    """A response exceeded a size or structure cap."""

    kind = "resource"


class ResponseTooLargeError(ResourceExhaustedError):
    """Response body exceeded the byte cap."""


class JsonLimitExceededError(ResourceExhaustedError):
    """Parsed JSON exceeded the depth or string-length cap."""


class TokenLimitExceededError(ResourceExhaustedError):
    """A provider call would exceed the per-node or per-run token limit."""
