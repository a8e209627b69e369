"""
Secret handling for graphs and run records.

Graphs are persisted and shown to buyers, and node errors end up in the
run log, so neither may carry API keys.
"""

import copy
import hashlib
import re
from typing import Any

SECRET_CONFIG_KEYS = frozenset({"apiKey", "api_key", "secret", "token"})

_OPENAI_KEY = re.compile(r"\bsk-[A-Za-z0-9_-]{20,}\b")
_LONG_TOKEN = re.compile(r"\b[A-Za-z0-9]{32,}\b")
_API_KEY_ASSIGNMENT = re.compile(r"api[_-]?key[\"\s:=]+([A-Za-z0-9_-]{20,})", re.IGNORECASE)
_SECRET_NAME_PARTS = ("key", "secret", "token")

REDACTED = "***REDACTED***"


def strip_graph_secrets(payload: dict[str, Any]) -> dict[str, Any]:
    """
    Deep copy of a graph payload with secret keys removed from every node config.

    Handles both the builder shape (``node["data"]["config"]``) and the flat
    shape (``node["config"]``). The input is not mutated.
    """
    out = copy.deepcopy(payload)
    for node in out.get("nodes") or []:
        if not isinstance(node, dict):
            continue
        for holder in (node, node.get("data")):
            if isinstance(holder, dict) and isinstance(holder.get("config"), dict):
                for key in SECRET_CONFIG_KEYS:
                    holder["config"].pop(key, None)
    return out


def redact_secrets(value: Any) -> Any:
    """Mask API keys and secret-looking values in strings, lists and mappings."""
    if isinstance(value, str):
        value = _OPENAI_KEY.sub(f"sk-{REDACTED}", value)
        value = _LONG_TOKEN.sub(lambda m: f"{m.group(0)[:8]}{REDACTED}", value)
        return _API_KEY_ASSIGNMENT.sub(f'api_key="{REDACTED}"', value)
    if isinstance(value, list):
        return [redact_secrets(v) for v in value]
    if isinstance(value, dict):
        redacted = {}
        for k, v in value.items():
            if any(part in str(k).lower() for part in _SECRET_NAME_PARTS):
                redacted[k] = REDACTED
            else:
                redacted[k] = redact_secrets(v)
        return redacted
    return value


def fingerprint_api_key(api_key: str) -> str:
    """Non-reversible identity for a user-supplied key (rate-limit bucketing)."""
    return hashlib.sha256(api_key.strip().encode("utf-8")).hexdigest()[:16]
