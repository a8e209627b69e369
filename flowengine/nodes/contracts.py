"""
Node contracts: the typed configuration for every known spec id.

Builder payloads carry config as a loose camelCase mapping. Each spec id
maps to a pydantic model here, so config is validated once when the graph
is submitted and handlers only ever see a typed object.
"""

from dataclasses import dataclass
from typing import Any, Literal

from pydantic import BaseModel, Field, ValidationError
from pydantic.alias_generators import to_camel

from flowengine.errors import NodeConfigError
from flowengine.graph.node import NodeSpec

HostList = str | list[str] | None


class NodeConfig(BaseModel):
    """Fields every node accepts."""

    name: str | None = None
    timeout: float | None = Field(default=None, gt=0, description="Per-attempt timeout in ms")
    retries: int | None = Field(default=None, ge=0, le=10)
    failure_policy: str | None = None
    fallback_value: Any = None

    model_config = {"alias_generator": to_camel, "populate_by_name": True, "extra": "allow"}


class InputConfig(NodeConfig):
    question: str | None = None
    input_type: str | None = None
    value: Any = None
    text: str | None = None
    default_value: Any = None


class MergeConfig(NodeConfig):
    pass


class OutputConfig(NodeConfig):
    format: Literal["json", "text"] = "json"


class OpenAIChatConfig(NodeConfig):
    prompt: str | None = None
    system: str | None = None
    model: str = "gpt-4"
    temperature: float = Field(default=0.7, ge=0, le=2)
    max_tokens: int = Field(default=2000, ge=1, le=128_000)


class OpenAIEmbeddingsConfig(NodeConfig):
    text: str | None = None
    model: str = "text-embedding-3-small"


class OpenAIImageConfig(NodeConfig):
    prompt: str | None = None
    model: Literal["dall-e-2", "dall-e-3"] = "dall-e-3"
    size: str = "1024x1024"
    quality: Literal["standard", "hd"] = "standard"


class HttpRequestConfig(NodeConfig):
    url: str | None = None
    method: Literal["GET", "POST", "PUT", "PATCH", "DELETE", "HEAD"] = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Any = None
    allow_only: HostList = None
    deny_hosts: HostList = None
    follow_redirects: bool = True
    fail_on_http_error: bool = True


class JsonParseConfig(NodeConfig):
    pass


class ConditionConfig(NodeConfig):
    operator: Literal["truthy", "falsy", "equals", "notEquals", "gt", "lt"] = "truthy"
    compare_value: Any = None


class DelayConfig(NodeConfig):
    duration: float = Field(default=1000, ge=0, description="Delay in ms")


class LoopConfig(NodeConfig):
    max_iterations: int = Field(default=1000, ge=1)


class TemplateConfig(NodeConfig):
    template: str = "{{input}}"


class MapConfig(NodeConfig):
    field: str


@dataclass(frozen=True)
class NodeContract:
    """What a spec id accepts and how it behaves."""

    spec_id: str
    config_model: type[NodeConfig]
    output_type: str
    step_label: str
    default_timeout_ms: float | None = None
    has_side_effects: bool = False
    expensive: bool = False


CONTRACTS: dict[str, NodeContract] = {
    c.spec_id: c
    for c in (
        NodeContract("input", InputConfig, "json", "Collecting input data"),
        NodeContract("merge", MergeConfig, "string", "Combining data"),
        NodeContract("merge-json", MergeConfig, "json", "Combining data"),
        NodeContract("output", OutputConfig, "json", "Preparing output"),
        NodeContract(
            "openai-chat",
            OpenAIChatConfig,
            "json",
            "Processing with AI",
            default_timeout_ms=30_000,
            has_side_effects=True,
            expensive=True,
        ),
        NodeContract(
            "openai-embeddings",
            OpenAIEmbeddingsConfig,
            "array",
            "Generating embeddings",
            default_timeout_ms=15_000,
            has_side_effects=True,
            expensive=True,
        ),
        NodeContract(
            "openai-image",
            OpenAIImageConfig,
            "string",
            "Creating image",
            default_timeout_ms=60_000,
            has_side_effects=True,
            expensive=True,
        ),
        NodeContract(
            "http-request",
            HttpRequestConfig,
            "json",
            "Fetching data",
            default_timeout_ms=30_000,
            has_side_effects=True,
            expensive=True,
        ),
        NodeContract("json-parse", JsonParseConfig, "json", "Parsing JSON"),
        NodeContract("condition", ConditionConfig, "boolean", "Evaluating condition"),
        NodeContract("delay", DelayConfig, "json", "Waiting"),
        NodeContract("loop", LoopConfig, "array", "Iterating"),
        NodeContract("template", TemplateConfig, "string", "Transforming data"),
        NodeContract("map", MapConfig, "array", "Transforming data"),
    )
}


def get_contract(spec_id: str) -> NodeContract | None:
    return CONTRACTS.get(spec_id)


def is_known_spec(spec_id: str) -> bool:
    return spec_id in CONTRACTS


def parse_node_config(node: NodeSpec) -> NodeConfig:
    """
    Validate a node's raw config against its contract.

    Unknown spec ids get the bare NodeConfig (dev-mode passthrough nodes
    still honour timeout/retries).

    Raises:
        NodeConfigError: the config does not match the contract
    """
    contract = get_contract(node.spec_id)
    model = contract.config_model if contract else NodeConfig
    try:
        return model.model_validate(node.config)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in e.errors()
        )
        raise NodeConfigError(f"Node '{node.id}' ({node.spec_id}) has invalid config: {problems}") from e


def effective_timeout_ms(node: NodeSpec, config: NodeConfig) -> float | None:
    """Per-attempt timeout: explicit config, else the contract default."""
    if config.timeout is not None:
        return config.timeout
    contract = get_contract(node.spec_id)
    return contract.default_timeout_ms if contract else None
