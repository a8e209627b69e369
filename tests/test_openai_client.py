"""Tests for the OpenAI provider client and key resolution."""

import json

import httpx
import pytest

from flowengine.errors import NodeTimeoutError, ProviderError, RateLimitExceededError
from flowengine.llm.openai import OpenAIClient, identity_for, resolve_api_key
from flowengine.runtime.rate_limiter import ProviderRateLimiter, RateLimitIdentity
from flowengine.security.secrets import fingerprint_api_key

BASE = "https://api.openai.test/v1"
USER = RateLimitIdentity(user_id="u1")


class TestKeyResolution:
    def test_run_option_key_first(self):
        assert resolve_api_key("n", {"n": " sk-a "}, {"__api_key_n": "sk-b"}, "sk-p") == ("sk-a", True)

    def test_input_key(self):
        assert resolve_api_key("n", {}, {"__api_key_n": "sk-b"}, "sk-p") == ("sk-b", True)

    def test_platform_key(self):
        assert resolve_api_key("n", {}, {}, "sk-p") == ("sk-p", False)
        assert resolve_api_key("n") == (None, False)

    def test_identity(self):
        assert identity_for("sk-a", True, "u1") == RateLimitIdentity(
            api_key_fingerprint=fingerprint_api_key("sk-a")
        )
        assert identity_for("sk-p", False, "u1") == RateLimitIdentity(user_id="u1")


class TestCalls:
    @pytest.mark.asyncio
    async def test_chat(self, mock_client):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url == f"{BASE}/chat/completions"
            assert request.headers["authorization"] == "Bearer sk-test"
            body = json.loads(request.content)
            assert body["messages"] == [{"role": "user", "content": "hi"}]
            return httpx.Response(
                200,
                json={
                    "model": "gpt-4o-mini",
                    "choices": [{"message": {"content": "hello"}, "finish_reason": "stop"}],
                    "usage": {"total_tokens": 5},
                },
            )

        limiter = ProviderRateLimiter()
        async with mock_client(handler) as client:
            openai = OpenAIClient(BASE, rate_limiter=limiter, client=client)
            response = await openai.chat("sk-test", USER, [{"role": "user", "content": "hi"}])

        assert response.to_output() == {
            "content": "hello",
            "model": "gpt-4o-mini",
            "usage": {"total_tokens": 5},
            "finishReason": "stop",
        }

    @pytest.mark.asyncio
    async def test_embeddings_and_image(self, mock_client):
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/embeddings"):
                return httpx.Response(200, json={"data": [{"embedding": [0.1, 0.2]}]})
            body = json.loads(request.content)
            assert "quality" not in body
            return httpx.Response(200, json={"data": [{"url": "https://img.test/1.png"}]})

        async with mock_client(handler) as client:
            openai = OpenAIClient(BASE, client=client)
            assert await openai.embeddings("sk-test", USER, "text") == [0.1, 0.2]
            assert await openai.image("sk-test", USER, "a cat", model="dall-e-2", size="256x256") == "https://img.test/1.png"

    @pytest.mark.asyncio
    async def test_429_throttles_bucket(self, mock_client):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(429, headers={"Retry-After": "2"}, json={"error": "slow down"})

        limiter = ProviderRateLimiter()
        async with mock_client(handler) as client:
            openai = OpenAIClient(BASE, rate_limiter=limiter, client=client)
            with pytest.raises(ProviderError) as exc_info:
                await openai.chat("sk-test", USER, [{"role": "user", "content": "hi"}])
            assert exc_info.value.status == 429
            assert exc_info.value.headers["retry-after"] == "2"
            # The retry delay has to cover the cooldown, not just Retry-After
            assert exc_info.value.retry_after_ms == pytest.approx(60_000.0, abs=1_000.0)

            # Bucket is cooling down: the next call is refused locally
            with pytest.raises(RateLimitExceededError):
                await openai.chat("sk-test", USER, [{"role": "user", "content": "hi"}])

    @pytest.mark.asyncio
    async def test_error_body_redacted(self, mock_client):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(401, text="Incorrect API key provided: sk-abcdefghijklmnopqrstuvwxyz012345")

        async with mock_client(handler) as client:
            with pytest.raises(ProviderError) as exc_info:
                await OpenAIClient(BASE, client=client).embeddings("sk-test", USER, "x")
        assert "abcdefghijklmnopqrstuvwxyz012345" not in str(exc_info.value)
        assert exc_info.value.status == 401

    @pytest.mark.asyncio
    async def test_timeout(self, mock_client):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("timed out", request=request)

        async with mock_client(handler) as client:
            with pytest.raises(NodeTimeoutError):
                await OpenAIClient(BASE, client=client).embeddings("sk-test", USER, "x")

    @pytest.mark.asyncio
    async def test_calls_are_counted(self, mock_client):
        limiter = ProviderRateLimiter({"openai": 1})
        async with mock_client(lambda r: httpx.Response(200, json={"data": [{"embedding": []}]})) as client:
            openai = OpenAIClient(BASE, rate_limiter=limiter, client=client)
            await openai.embeddings("sk-test", USER, "x")
            with pytest.raises(RateLimitExceededError):
                await openai.embeddings("sk-test", USER, "x")
