"""Security boundaries: network egress guard and secret handling."""

from flowengine.security.egress import (
    EgressDecision,
    EgressGuard,
    EgressPolicy,
    EgressResponse,
    check_json_limits,
    get_network_access,
    strip_sensitive_headers,
    validate_url,
)
from flowengine.security.secrets import (
    fingerprint_api_key,
    redact_secrets,
    strip_graph_secrets,
)

__all__ = [
    "EgressDecision",
    "EgressGuard",
    "EgressPolicy",
    "EgressResponse",
    "check_json_limits",
    "get_network_access",
    "strip_sensitive_headers",
    "validate_url",
    "fingerprint_api_key",
    "redact_secrets",
    "strip_graph_secrets",
]
