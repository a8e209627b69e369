"""
flowengine - Execution engine for marketplace workflow graphs.

Runs directed graphs of typed nodes (LLM calls, HTTP requests, transforms,
conditions, merges) submitted by untrusted publishers: resource-bounded,
retried where a failure is transient, and fenced off from the internal
network.

Example:
    from flowengine import GraphExecutor, GraphSpec, RunOptions

    result = await GraphExecutor().execute(
        GraphSpec.from_payload(payload), RunOptions(mode="dev")
    )
"""

from flowengine.config import EngineConfig
from flowengine.graph import (
    EdgeSpec,
    GraphExecutor,
    GraphSpec,
    NodeSpec,
    RunMode,
    compute_version_hash,
    get_run_mode,
    validate_graph,
)
from flowengine.runtime import EventBus, EventType, ProviderRateLimiter
from flowengine.schemas import NodeState, NodeStatus, RunOptions, RunResult, RunStatus

__all__ = [
    "EngineConfig",
    "EdgeSpec",
    "GraphExecutor",
    "GraphSpec",
    "NodeSpec",
    "RunMode",
    "compute_version_hash",
    "get_run_mode",
    "validate_graph",
    "EventBus",
    "EventType",
    "ProviderRateLimiter",
    "NodeState",
    "NodeStatus",
    "RunOptions",
    "RunResult",
    "RunStatus",
]
