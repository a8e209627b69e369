"""Shared fixtures for flowengine tests."""

import asyncio
from collections.abc import Callable
from typing import Any

import httpx
import pytest

from flowengine.config import DEFAULT_POOL_LIMITS, DEFAULT_PROVIDER_LIMITS, EngineConfig
from flowengine.observability.logging import clear_trace_context


@pytest.fixture(autouse=True)
def _clean_trace_context():
    clear_trace_context()
    yield
    clear_trace_context()


@pytest.fixture
def engine_config() -> EngineConfig:
    """Config that ignores ~/.flowengine and the environment."""
    return EngineConfig(
        pool_limits=dict(DEFAULT_POOL_LIMITS),
        provider_limits=dict(DEFAULT_PROVIDER_LIMITS),
        allow_hosts=[],
        deny_hosts=[],
        openai_base_url="https://api.openai.test/v1",
        platform_api_key=None,
        max_tokens_per_node=50_000,
        max_tokens_per_run=200_000,
        log_level="DEBUG",
    )


@pytest.fixture
def fast_sleep(monkeypatch) -> list[float]:
    """Make asyncio.sleep instant; returns the list of requested delays."""
    real_sleep = asyncio.sleep
    delays: list[float] = []

    async def _sleep(delay: float, result: Any = None) -> Any:
        delays.append(delay)
        await real_sleep(0)
        return result

    monkeypatch.setattr(asyncio, "sleep", _sleep)
    return delays


@pytest.fixture
def mock_client() -> Callable[[Callable[[httpx.Request], httpx.Response]], httpx.AsyncClient]:
    """Build an AsyncClient whose requests are answered by a handler function."""

    def _make(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(handler), follow_redirects=False)

    return _make
