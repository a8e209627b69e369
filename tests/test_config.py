"""Tests for configuration loading from the config file and environment."""

import json

import pytest

from flowengine import config
from flowengine.config import (
    DEFAULT_OPENAI_BASE_URL,
    DEFAULT_POOL_LIMITS,
    EngineConfig,
    get_allow_hosts,
    get_deny_hosts,
    get_engine_config_file,
    get_platform_api_key,
    get_pool_limits,
    get_provider_limits,
    get_token_limits,
)


@pytest.fixture
def config_file(tmp_path, monkeypatch):
    path = tmp_path / "configuration.json"
    monkeypatch.setattr(config, "FLOWENGINE_CONFIG_FILE", path)
    for var in ("FLOWENGINE_HTTP_ALLOW_HOSTS", "FLOWENGINE_HTTP_DENY_HOSTS", "OPENAI_API_KEY"):
        monkeypatch.delenv(var, raising=False)

    def write(data) -> None:
        path.write_text(json.dumps(data), encoding="utf-8")

    return write


def test_missing_file_gives_defaults(config_file):
    assert get_engine_config_file() == {}
    assert get_pool_limits() == DEFAULT_POOL_LIMITS
    cfg = EngineConfig()
    assert cfg.openai_base_url == DEFAULT_OPENAI_BASE_URL
    assert cfg.platform_api_key is None
    assert cfg.allow_hosts == []
    assert (cfg.max_tokens_per_node, cfg.max_tokens_per_run) == (50_000, 200_000)


def test_unreadable_file_gives_defaults(config_file, tmp_path):
    (tmp_path / "configuration.json").write_text("{oops", encoding="utf-8")
    assert get_engine_config_file() == {}


def test_pool_overrides_ignore_bad_values(config_file):
    config_file({"pools": {"llm": 5, "http": 0, "cpu": "many", "gpu": 3}})
    assert get_pool_limits() == {**DEFAULT_POOL_LIMITS, "llm": 5}


def test_provider_limits(config_file):
    config_file({"providers": {"openai": 10, "anthropic": 20}})
    assert get_provider_limits() == {"openai": 10, "anthropic": 20}


def test_hosts_merge_file_and_env(config_file, monkeypatch):
    config_file({"http": {"allow_hosts": ["API.Example.com"], "deny_hosts": ["bad.example"]}})
    monkeypatch.setenv("FLOWENGINE_HTTP_ALLOW_HOSTS", "one.test, two.test,")
    monkeypatch.setenv("FLOWENGINE_HTTP_DENY_HOSTS", "Evil.test")

    assert get_allow_hosts() == ["api.example.com", "one.test", "two.test"]
    assert get_deny_hosts() == ["bad.example", "evil.test"]


def test_platform_key_env_var_is_configurable(config_file, monkeypatch):
    config_file({"openai": {"api_key_env_var": "MY_OPENAI_KEY", "base_url": "http://proxy.local/v1"}})
    monkeypatch.setenv("MY_OPENAI_KEY", "sk-platform")

    cfg = EngineConfig()
    assert get_platform_api_key() == "sk-platform"
    assert cfg.platform_api_key == "sk-platform"
    assert cfg.openai_base_url == "http://proxy.local/v1"


def test_token_limits(config_file):
    config_file({"tokens": {"max_per_node": 8000, "max_per_run": "lots"}})
    assert get_token_limits() == (8000, 200_000)
    assert EngineConfig().max_tokens_per_node == 8000
