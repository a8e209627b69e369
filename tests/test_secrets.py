"""Tests for secret stripping and redaction."""

from flowengine.security.secrets import (
    REDACTED,
    fingerprint_api_key,
    redact_secrets,
    strip_graph_secrets,
)


def test_strip_graph_secrets_both_shapes():
    payload = {
        "nodes": [
            {"id": "a", "data": {"config": {"apiKey": "sk-x", "prompt": "hi"}}},
            {"id": "b", "config": {"token": "t", "secret": "s", "api_key": "k", "url": "u"}},
        ]
    }
    stripped = strip_graph_secrets(payload)
    assert stripped["nodes"][0]["data"]["config"] == {"prompt": "hi"}
    assert stripped["nodes"][1]["config"] == {"url": "u"}
    # Input untouched
    assert payload["nodes"][0]["data"]["config"]["apiKey"] == "sk-x"


def test_redact_openai_key_in_text():
    text = "OpenAI API error: 401 Incorrect API key provided: sk-proj-abcdefghijklmnopqrstuvwx"
    redacted = redact_secrets(text)
    assert "abcdefghijklmnopqrstuvwx" not in redacted
    assert REDACTED in redacted


def test_redact_long_token_keeps_prefix():
    token = "A1" * 20
    assert redact_secrets(f"token {token}") == f"token {token[:8]}{REDACTED}"


def test_redact_secret_named_keys():
    value = {"headers": {"Authorization": "Bearer x", "X-Api-Key": "abc"}, "items": [{"token": "t"}]}
    assert redact_secrets(value) == {
        "headers": {"Authorization": "Bearer x", "X-Api-Key": REDACTED},
        "items": [{"token": REDACTED}],
    }


def test_plain_text_untouched():
    assert redact_secrets("connection reset by peer") == "connection reset by peer"
    assert redact_secrets(42) == 42


def test_fingerprint_is_stable_and_opaque():
    fp = fingerprint_api_key("sk-secret-value")
    assert fp == fingerprint_api_key("  sk-secret-value  ")
    assert len(fp) == 16
    assert "secret" not in fp
