"""Shared engine configuration.

Centralises reading of ~/.flowengine/configuration.json and the
FLOWENGINE_* environment variables so the executor, the CLI and the
node handlers agree on limits and defaults.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_POOL_LIMITS: dict[str, int] = {"llm": 2, "http": 4, "image": 1, "cpu": 4}
DEFAULT_PROVIDER_LIMITS: dict[str, int] = {"openai": 60}
DEFAULT_MAX_RETRIES = 2
DEFAULT_CIRCUIT_BREAKER_THRESHOLD = 5
DEFAULT_OPENAI_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MAX_TOKENS_PER_NODE = 50_000
DEFAULT_MAX_TOKENS_PER_RUN = 200_000

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

FLOWENGINE_CONFIG_FILE = Path.home() / ".flowengine" / "configuration.json"


def get_engine_config_file() -> dict[str, Any]:
    """Load ~/.flowengine/configuration.json, or {} if absent or unreadable."""
    if not FLOWENGINE_CONFIG_FILE.exists():
        return {}
    try:
        with open(FLOWENGINE_CONFIG_FILE, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


def _split_hosts(value: str | None) -> list[str]:
    if not value:
        return []
    return [h.strip().lower() for h in value.split(",") if h.strip()]


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def get_pool_limits() -> dict[str, int]:
    """Pool limits: defaults, overridden by the config file's "pools" section."""
    limits = dict(DEFAULT_POOL_LIMITS)
    for name, value in get_engine_config_file().get("pools", {}).items():
        if name in limits and isinstance(value, int) and value > 0:
            limits[name] = value
    return limits


def get_provider_limits() -> dict[str, int]:
    limits = dict(DEFAULT_PROVIDER_LIMITS)
    configured = get_engine_config_file().get("providers", {})
    for name, value in configured.items():
        if isinstance(value, int) and value > 0:
            limits[name] = value
    return limits


def get_token_limits() -> tuple[int, int]:
    """(per node, per run) token limits; the config file's "tokens" section overrides."""
    configured = get_engine_config_file().get("tokens", {})
    per_node = configured.get("max_per_node")
    per_run = configured.get("max_per_run")
    return (
        per_node if isinstance(per_node, int) and per_node > 0 else DEFAULT_MAX_TOKENS_PER_NODE,
        per_run if isinstance(per_run, int) and per_run > 0 else DEFAULT_MAX_TOKENS_PER_RUN,
    )


def get_allow_hosts() -> list[str]:
    configured = get_engine_config_file().get("http", {}).get("allow_hosts", [])
    return [str(h).lower() for h in configured] + _split_hosts(
        os.environ.get("FLOWENGINE_HTTP_ALLOW_HOSTS")
    )


def get_deny_hosts() -> list[str]:
    configured = get_engine_config_file().get("http", {}).get("deny_hosts", [])
    return [str(h).lower() for h in configured] + _split_hosts(
        os.environ.get("FLOWENGINE_HTTP_DENY_HOSTS")
    )


def get_platform_api_key() -> str | None:
    """Platform OpenAI key, read from the env var named in configuration."""
    openai = get_engine_config_file().get("openai", {})
    env_var = openai.get("api_key_env_var", "OPENAI_API_KEY")
    return os.environ.get(env_var) or None


def get_openai_base_url() -> str:
    return get_engine_config_file().get("openai", {}).get("base_url", DEFAULT_OPENAI_BASE_URL)


# ---------------------------------------------------------------------------
# EngineConfig: shared by executor and CLI
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Engine configuration loaded from ~/.flowengine/configuration.json and env."""

    pool_limits: dict[str, int] = field(default_factory=get_pool_limits)
    provider_limits: dict[str, int] = field(default_factory=get_provider_limits)
    max_retries: int = DEFAULT_MAX_RETRIES
    circuit_breaker_threshold: int = DEFAULT_CIRCUIT_BREAKER_THRESHOLD
    max_tokens_per_node: int = field(default_factory=lambda: get_token_limits()[0])
    max_tokens_per_run: int = field(default_factory=lambda: get_token_limits()[1])
    allow_hosts: list[str] = field(default_factory=get_allow_hosts)
    deny_hosts: list[str] = field(default_factory=get_deny_hosts)
    openai_base_url: str = field(default_factory=get_openai_base_url)
    platform_api_key: str | None = field(default_factory=get_platform_api_key)
    log_level: str = field(default_factory=lambda: os.environ.get("FLOWENGINE_LOG_LEVEL", "INFO"))
