"""
OpenAI provider client.

Every call goes check -> call -> record through the process-wide
ProviderRateLimiter. An upstream 429 puts the caller's bucket into
cooldown and surfaces as a ProviderError carrying the status, the
headers and the remaining cooldown, so the retry waits out both
Retry-After and the limiter.
"""

import logging
from collections.abc import Mapping
from typing import Any

import httpx

from flowengine.config import DEFAULT_OPENAI_BASE_URL
from flowengine.errors import NodeConfigError, NodeTimeoutError, ProviderError, RateLimitExceededError
from flowengine.llm.provider import LLMResponse
from flowengine.runtime.rate_limiter import ProviderRateLimiter, RateLimitIdentity
from flowengine.security.secrets import fingerprint_api_key, redact_secrets

logger = logging.getLogger(__name__)

PROVIDER = "openai"
API_KEY_INPUT_PREFIX = "__api_key_"
MAX_ERROR_BODY_CHARS = 500


def resolve_api_key(
    node_id: str,
    api_keys: Mapping[str, str] | None = None,
    inputs: Mapping[str, Any] | None = None,
    platform_key: str | None = None,
) -> tuple[str | None, bool]:
    """
    Find the key a node should call the provider with.

    Returns:
        (key, user_supplied). A caller-supplied key (per-node in run
        options, or the ``__api_key_<node_id>`` run input) wins over the
        platform key.
    """
    for candidate in (
        (api_keys or {}).get(node_id),
        (inputs or {}).get(f"{API_KEY_INPUT_PREFIX}{node_id}"),
    ):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip(), True
    if platform_key:
        return platform_key, False
    return None, False


def identity_for(api_key: str | None, user_supplied: bool, user_id: str | None) -> RateLimitIdentity:
    """Rate-limit identity: BYOK fingerprint, else the user, else global."""
    if api_key and user_supplied:
        return RateLimitIdentity(api_key_fingerprint=fingerprint_api_key(api_key))
    return RateLimitIdentity(user_id=user_id)


class OpenAIClient:
    """
    Thin async client for the three OpenAI endpoints nodes use.

    Example:
        client = OpenAIClient(rate_limiter=ProviderRateLimiter())
        response = await client.chat(
            api_key, RateLimitIdentity(user_id="u1"),
            messages=[{"role": "user", "content": "hello"}],
        )
    """

    def __init__(
        self,
        base_url: str = DEFAULT_OPENAI_BASE_URL,
        rate_limiter: ProviderRateLimiter | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.rate_limiter = rate_limiter or ProviderRateLimiter()
        self._client = client

    async def chat(
        self,
        api_key: str,
        identity: RateLimitIdentity,
        messages: list[dict[str, Any]],
        model: str = "gpt-4",
        temperature: float = 0.7,
        max_tokens: int = 2000,
        timeout: float = 30.0,
    ) -> LLMResponse:
        data = await self._post(
            "/chat/completions",
            api_key,
            identity,
            {
                "model": model,
                "messages": messages,
                "temperature": temperature,
                "max_tokens": max_tokens,
                "stream": False,
            },
            timeout,
        )
        choice = (data.get("choices") or [{}])[0]
        return LLMResponse(
            content=(choice.get("message") or {}).get("content") or "",
            model=data.get("model", model),
            usage=data.get("usage") or {},
            finish_reason=choice.get("finish_reason") or "",
            raw_response=data,
        )

    async def embeddings(
        self,
        api_key: str,
        identity: RateLimitIdentity,
        text: str,
        model: str = "text-embedding-3-small",
        timeout: float = 15.0,
    ) -> list[float]:
        data = await self._post(
            "/embeddings", api_key, identity, {"model": model, "input": text}, timeout
        )
        return (data.get("data") or [{}])[0].get("embedding") or []

    async def image(
        self,
        api_key: str,
        identity: RateLimitIdentity,
        prompt: str,
        model: str = "dall-e-3",
        size: str = "1024x1024",
        quality: str = "standard",
        timeout: float = 60.0,
    ) -> str:
        body = {"model": model, "prompt": prompt, "size": size, "n": 1}
        if model == "dall-e-3":
            body["quality"] = quality
        data = await self._post("/images/generations", api_key, identity, body, timeout)
        return (data.get("data") or [{}])[0].get("url") or ""

    async def _post(
        self,
        path: str,
        api_key: str,
        identity: RateLimitIdentity,
        body: dict[str, Any],
        timeout: float,
    ) -> dict[str, Any]:
        if not api_key:
            raise NodeConfigError("OpenAI API key required")

        decision = self.rate_limiter.check(PROVIDER, identity)
        if not decision.allowed:
            raise RateLimitExceededError(
                "OpenAI rate limit reached for this run; try again later",
                retry_after_ms=decision.retry_after_ms,
            )

        headers = {"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"}
        url = f"{self.base_url}{path}"
        try:
            if self._client is not None:
                response = await self._client.post(url, json=body, headers=headers, timeout=timeout)
            else:
                async with httpx.AsyncClient(follow_redirects=False) as client:
                    response = await client.post(url, json=body, headers=headers, timeout=timeout)
        except httpx.TimeoutException as e:
            raise NodeTimeoutError(f"OpenAI request timeout ({path})") from e
        finally:
            self.rate_limiter.record(PROVIDER, identity)

        retry_after_ms = None
        if response.status_code == 429:
            self.rate_limiter.record_throttle(PROVIDER, identity)
            # The retry must not land inside our own cooldown
            retry_after_ms = self.rate_limiter.cooldown_remaining_ms(PROVIDER, identity)
        if response.status_code >= 400:
            detail = redact_secrets(response.text[:MAX_ERROR_BODY_CHARS])
            raise ProviderError(
                f"OpenAI API error: {response.status_code} {detail}",
                status=response.status_code,
                headers=dict(response.headers),
                retry_after_ms=retry_after_ms,
            )

        try:
            return response.json()
        except ValueError as e:
            raise ProviderError(f"OpenAI returned invalid JSON: {e}") from e
