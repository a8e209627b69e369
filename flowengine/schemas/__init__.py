"""Schema definitions for runs and their outcomes."""

from flowengine.schemas.run import (
    NODE_TRANSITIONS,
    NodeState,
    NodeStatus,
    RunOptions,
    RunResult,
    RunStatus,
)

__all__ = [
    "NODE_TRANSITIONS",
    "NodeState",
    "NodeStatus",
    "RunOptions",
    "RunResult",
    "RunStatus",
]
