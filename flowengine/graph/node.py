"""
Node Protocol - The building block of a workflow graph.

A node is one unit of work. Its ``spec_id`` selects the behaviour (see
``flowengine.nodes``), ``config`` parameterises it, and the declared
policy fields say what happens when it fails.

Nodes never talk to each other directly: the executor hands each node the
outputs of its upstream nodes (in edge order) and records what it returns.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, model_validator


class ResourceClass(StrEnum):
    """Concurrency class a node is scheduled under."""

    LLM = "llm"
    HTTP = "http"
    IMAGE = "image"
    CPU = "cpu"


class FailurePolicy(StrEnum):
    """What to do once a node has failed for good."""

    FAIL_FAST = "fail_fast"  # Fail the whole run
    CONTINUE = "continue"  # Mark failed, let edge gating decide downstream
    SKIP_DOWNSTREAM = "skip_downstream"  # Mark failed, skip everything downstream
    USE_FALLBACK_VALUE = "use_fallback_value"  # Substitute fallbackValue, count as success


class RunMode(StrEnum):
    """dev = builder preview, marketplace = untrusted buyer run."""

    DEV = "dev"
    MARKETPLACE = "marketplace"


SPEC_TO_RESOURCE: dict[str, ResourceClass] = {
    "openai-chat": ResourceClass.LLM,
    "openai-embeddings": ResourceClass.LLM,
    "openai-image": ResourceClass.IMAGE,
    "http-request": ResourceClass.HTTP,
}


def get_resource_class(spec_id: str) -> ResourceClass:
    """Resource class for a spec id; anything unlisted is CPU-bound."""
    return SPEC_TO_RESOURCE.get(spec_id, ResourceClass.CPU)


class NodeSpec(BaseModel):
    """
    Specification for a single node.

    Example:
        NodeSpec(
            id="summarize",
            spec_id="openai-chat",
            config={"prompt": "Summarize the input", "model": "gpt-4o-mini"},
            failure_policy="use_fallback_value",
            fallback_value="(no summary)",
        )
    """

    id: str
    spec_id: str = Field(alias="specId", description="Selects the node behaviour")
    config: dict[str, Any] = Field(default_factory=dict)

    # Declared policy. Builder payloads keep these inside config, so they are
    # lifted out of config when not given at node level.
    failure_policy: str | None = Field(default=None, alias="failurePolicy")
    fallback_value: Any = Field(default=None, alias="fallbackValue")

    title: str = ""

    model_config = {"extra": "allow", "populate_by_name": True}

    @model_validator(mode="after")
    def _lift_policy_from_config(self) -> "NodeSpec":
        if self.failure_policy is None and "failurePolicy" in self.config:
            self.failure_policy = self.config["failurePolicy"]
        if "fallback_value" not in self.model_fields_set and "fallbackValue" in self.config:
            self.fallback_value = self.config["fallbackValue"]
        return self

    @property
    def resource_class(self) -> ResourceClass:
        return get_resource_class(self.spec_id)

    @property
    def label(self) -> str:
        return self.title or self.config.get("name") or self.spec_id
