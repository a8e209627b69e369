"""
Node behaviours, one async handler per spec id.

A handler receives a NodeContext (typed config, upstream outputs in edge
order, run inputs, and the run's egress guard, provider client and token
budget) and returns the node's output. Failures are raised as engine
errors; the executor owns retries, timeouts and failure policy.
"""

import asyncio
import json
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

from flowengine.errors import NodeConfigError, NodeExecutionError
from flowengine.graph.node import NodeSpec, RunMode
from flowengine.llm.openai import OpenAIClient
from flowengine.llm.tokens import TokenBudget, count_chat_tokens, estimate_tokens
from flowengine.nodes import contracts as c
from flowengine.runtime.rate_limiter import RateLimitIdentity
from flowengine.security.egress import EgressGuard

logger = logging.getLogger(__name__)

MAX_DELAY_MS = 600_000
_PLACEHOLDER = re.compile(r"\{\{\s*input(?:\.([A-Za-z0-9_.-]+))?\s*\}\}")


@dataclass
class NodeContext:
    """Everything a handler may touch while running one attempt."""

    node: NodeSpec
    config: c.NodeConfig
    inbound: list[Any] = field(default_factory=list)
    inputs: dict[str, Any] = field(default_factory=dict)
    mode: RunMode = RunMode.DEV
    api_key: str | None = None
    identity: RateLimitIdentity = field(default_factory=RateLimitIdentity)
    egress: EgressGuard | None = None
    openai: OpenAIClient | None = None
    tokens: TokenBudget | None = None
    timeout_ms: float | None = None

    @property
    def first_input(self) -> Any:
        return self.inbound[0] if self.inbound else None

    @property
    def timeout_seconds(self) -> float:
        return (self.timeout_ms or 30_000) / 1000.0


NodeHandler = Callable[[NodeContext], Awaitable[Any]]


def _is_blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


def _text_from(ctx: NodeContext, fallback: str | None) -> str | None:
    """Upstream string if there is one, else the configured text."""
    value = ctx.first_input
    if isinstance(value, str) and value:
        return value
    return fallback or None


def _charge_tokens(ctx: NodeContext, tokens: int) -> None:
    if ctx.tokens is not None:
        ctx.tokens.charge(ctx.node.id, tokens)


def _require_openai(ctx: NodeContext) -> OpenAIClient:
    if ctx.openai is None:
        raise NodeConfigError("No OpenAI client configured for this run")
    if not ctx.api_key:
        raise NodeConfigError("OpenAI API key required. Provide one in the run options.")
    return ctx.openai


async def input_node(ctx: NodeContext) -> Any:
    external = ctx.inputs.get(ctx.node.id)
    if external is not None:
        return external
    config: c.InputConfig = ctx.config
    for candidate in (config.value, config.text, config.default_value):
        if candidate is not None:
            return candidate
    return ""


async def merge_node(ctx: NodeContext) -> Any:
    valid = [v for v in ctx.inbound if not _is_blank(v)]
    if not valid:
        return None
    if all(isinstance(v, str) for v in valid):
        return " ".join(valid)
    if all(isinstance(v, list) for v in valid):
        return [item for v in valid for item in v]
    if all(isinstance(v, dict) for v in valid):
        merged: dict[str, Any] = {}
        for v in valid:
            merged.update(v)
        return merged
    return valid


async def merge_json_node(ctx: NodeContext) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for value in ctx.inbound:
        if isinstance(value, dict):
            merged.update(value)
    return merged


async def output_node(ctx: NodeContext) -> Any:
    valid = [v for v in ctx.inbound if v is not None]
    if not valid:
        return None
    if len(valid) == 1:
        return valid[0]
    config: c.OutputConfig = ctx.config
    if config.format == "text":
        return "\n".join(v if isinstance(v, str) else json.dumps(v, default=str) for v in valid)
    return {"results": valid, "count": len(valid)}


async def openai_chat_node(ctx: NodeContext) -> dict[str, Any]:
    client = _require_openai(ctx)
    config: c.OpenAIChatConfig = ctx.config

    upstream = ctx.first_input
    if isinstance(upstream, list) and upstream and all(isinstance(m, dict) for m in upstream):
        messages = upstream
    else:
        prompt = _text_from(ctx, config.prompt)
        if not prompt:
            raise NodeConfigError("Prompt or messages array required")
        messages = []
        if config.system:
            messages.append({"role": "system", "content": config.system})
        messages.append({"role": "user", "content": prompt})

    _charge_tokens(ctx, count_chat_tokens(messages, config.max_tokens).total)
    response = await client.chat(
        ctx.api_key,
        ctx.identity,
        messages=messages,
        model=config.model,
        temperature=config.temperature,
        max_tokens=config.max_tokens,
        timeout=ctx.timeout_seconds,
    )
    return response.to_output()


async def openai_embeddings_node(ctx: NodeContext) -> list[float]:
    client = _require_openai(ctx)
    config: c.OpenAIEmbeddingsConfig = ctx.config
    text = _text_from(ctx, config.text)
    if not text:
        raise NodeConfigError("Text input required for embeddings")
    _charge_tokens(ctx, estimate_tokens(text))
    return await client.embeddings(
        ctx.api_key, ctx.identity, text=text, model=config.model, timeout=ctx.timeout_seconds
    )


async def openai_image_node(ctx: NodeContext) -> str:
    client = _require_openai(ctx)
    config: c.OpenAIImageConfig = ctx.config
    prompt = _text_from(ctx, config.prompt)
    if not prompt:
        raise NodeConfigError("Prompt required for image generation")
    _charge_tokens(ctx, estimate_tokens(prompt))
    return await client.image(
        ctx.api_key,
        ctx.identity,
        prompt=prompt,
        model=config.model,
        size=config.size,
        quality=config.quality,
        timeout=ctx.timeout_seconds,
    )


async def http_request_node(ctx: NodeContext) -> dict[str, Any]:
    if ctx.egress is None:
        raise NodeConfigError("No egress guard configured for this run")
    config: c.HttpRequestConfig = ctx.config

    upstream = ctx.first_input
    url = config.url
    headers = dict(config.headers)
    body = config.body
    if isinstance(upstream, str) and upstream.strip():
        url = upstream.strip()
    elif isinstance(upstream, dict):
        url = upstream.get("url") or url
        headers.update(upstream.get("headers") or {})
        body = upstream.get("body", body)
    if not url:
        raise NodeConfigError("URL required for HTTP request")

    guard = EgressGuard(
        ctx.egress.policy.with_node_lists(config.allow_only, config.deny_hosts),
        client=ctx.egress.client,
    )
    response = await guard.request(
        config.method,
        url,
        headers=headers,
        body=body,
        timeout=ctx.timeout_seconds,
        follow_redirects=config.follow_redirects,
    )
    if response.status >= 400 and config.fail_on_http_error:
        raise NodeExecutionError(
            f"HTTP {response.status} {response.reason} from {url}",
            status=response.status,
            headers=response.headers,
        )
    return response.to_output()


async def json_parse_node(ctx: NodeContext) -> Any:
    value = ctx.first_input
    if not isinstance(value, str):
        return value
    try:
        return json.loads(value)
    except ValueError as e:
        raise NodeConfigError(f"Invalid JSON: {e}") from e


def _as_number(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return float("nan")


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return "" if value is None else str(value)


async def condition_node(ctx: NodeContext) -> bool:
    config: c.ConditionConfig = ctx.config
    value = ctx.first_input
    match config.operator:
        case "falsy":
            return not value
        case "equals":
            return _as_text(value) == _as_text(config.compare_value)
        case "notEquals":
            return _as_text(value) != _as_text(config.compare_value)
        case "gt":
            return _as_number(value) > _as_number(config.compare_value)
        case "lt":
            return _as_number(value) < _as_number(config.compare_value)
        case _:
            return bool(value)


async def delay_node(ctx: NodeContext) -> Any:
    config: c.DelayConfig = ctx.config
    await asyncio.sleep(max(0.0, min(config.duration, MAX_DELAY_MS)) / 1000.0)
    return ctx.first_input


async def loop_node(ctx: NodeContext) -> list[Any]:
    config: c.LoopConfig = ctx.config
    items = ctx.first_input
    if not isinstance(items, list):
        raise NodeConfigError("Loop input must be an array")
    if len(items) > config.max_iterations:
        raise NodeConfigError(
            f"Array length ({len(items)}) exceeds max iterations ({config.max_iterations})"
        )
    return items


def _lookup(value: Any, path: str) -> Any:
    for part in path.split("."):
        if isinstance(value, dict):
            value = value.get(part)
        elif isinstance(value, list) and part.isdigit() and int(part) < len(value):
            value = value[int(part)]
        else:
            return None
    return value


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    return json.dumps(value, default=str)


async def template_node(ctx: NodeContext) -> str:
    config: c.TemplateConfig = ctx.config
    value = ctx.first_input

    def substitute(match: re.Match) -> str:
        path = match.group(1)
        return _render(_lookup(value, path) if path else value)

    return _PLACEHOLDER.sub(substitute, config.template)


async def map_node(ctx: NodeContext) -> list[Any]:
    config: c.MapConfig = ctx.config
    items = ctx.first_input
    if not isinstance(items, list):
        raise NodeConfigError("Map input must be an array")
    return [_lookup(item, config.field) for item in items]


async def passthrough_node(ctx: NodeContext) -> Any:
    """Dev-mode stand-in for spec ids this engine does not know."""
    logger.info("No behaviour for spec '%s'; passing input through", ctx.node.spec_id)
    if len(ctx.inbound) <= 1:
        return ctx.first_input
    return list(ctx.inbound)


HANDLERS: dict[str, NodeHandler] = {
    "input": input_node,
    "merge": merge_node,
    "merge-json": merge_json_node,
    "output": output_node,
    "openai-chat": openai_chat_node,
    "openai-embeddings": openai_embeddings_node,
    "openai-image": openai_image_node,
    "http-request": http_request_node,
    "json-parse": json_parse_node,
    "condition": condition_node,
    "delay": delay_node,
    "loop": loop_node,
    "template": template_node,
    "map": map_node,
}
