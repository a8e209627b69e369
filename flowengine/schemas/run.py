"""
Run Schema - The outcome of executing a workflow graph.

A RunResult holds one NodeState per node plus the run's event log. It is
what the status display and the run history store consume.
"""

from datetime import datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, PositiveInt, computed_field

from flowengine.errors import InvalidTransitionError
from flowengine.graph.node import RunMode
from flowengine.runtime.event_bus import RunEvent


class NodeStatus(StrEnum):
    """Lifecycle of a node within a run. Forward-only."""

    PENDING = "pending"
    QUEUED = "queued"  # Ready; waiting for a resource slot
    RUNNING = "running"  # Holding or re-acquiring a slot (retries stay here)
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.SUCCEEDED, NodeStatus.FAILED, NodeStatus.SKIPPED)


NODE_TRANSITIONS: dict[NodeStatus, frozenset[NodeStatus]] = {
    # pending -> failed covers configuration errors found before dispatch
    NodeStatus.PENDING: frozenset({NodeStatus.QUEUED, NodeStatus.SKIPPED, NodeStatus.FAILED}),
    NodeStatus.QUEUED: frozenset({NodeStatus.RUNNING, NodeStatus.SKIPPED}),
    NodeStatus.RUNNING: frozenset({NodeStatus.SUCCEEDED, NodeStatus.FAILED}),
    NodeStatus.SUCCEEDED: frozenset(),
    NodeStatus.FAILED: frozenset(),
    NodeStatus.SKIPPED: frozenset(),
}


class RunStatus(StrEnum):
    """Overall status of a run."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    TIMED_OUT = "timed_out"


class RunOptions(BaseModel):
    """
    Per-run settings supplied by the caller.

    Anything left unset falls back to EngineConfig.
    """

    mode: RunMode = RunMode.MARKETPLACE
    run_id: str | None = None
    user_id: str | None = None
    inputs: dict[str, Any] = Field(default_factory=dict)
    api_keys: dict[str, str] = Field(default_factory=dict, description="Per-node API keys (BYOK)")
    pool_limits: dict[str, PositiveInt] = Field(default_factory=dict)
    timeout_seconds: float | None = Field(default=None, gt=0)
    max_retries: int | None = Field(default=None, ge=0)
    circuit_breaker_threshold: int | None = Field(default=None, ge=1)
    max_tokens_per_node: int | None = Field(default=None, ge=1)
    max_tokens_per_run: int | None = Field(default=None, ge=1)


class NodeState(BaseModel):
    """Per-node record of one run."""

    node_id: str
    spec_id: str
    resource_class: str
    status: NodeStatus = NodeStatus.PENDING
    output: Any = None
    error: str | None = None
    error_kind: str | None = None  # execution, provider, timeout, config, security, resource
    attempts: int = 0
    used_fallback: bool = False
    history: list[NodeStatus] = Field(default_factory=lambda: [NodeStatus.PENDING])

    queued_at: datetime | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None

    def transition(self, next_status: NodeStatus) -> None:
        """Move forward; raises InvalidTransitionError on any other move."""
        if next_status not in NODE_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"Invalid node transition for '{self.node_id}': {self.status} -> {next_status}"
            )
        now = datetime.now()
        if next_status == NodeStatus.QUEUED:
            self.queued_at = now
        elif next_status == NodeStatus.RUNNING:
            self.started_at = now
        else:
            self.finished_at = now
        self.status = next_status
        self.history.append(next_status)

    @computed_field
    @property
    def duration_ms(self) -> int:
        """Time from first start to finish (0 if the node never ran)."""
        if self.started_at is None or self.finished_at is None:
            return 0
        return int((self.finished_at - self.started_at).total_seconds() * 1000)


class RunResult(BaseModel):
    """The complete outcome of one run. Never left in an ambiguous state."""

    run_id: str
    mode: str
    status: RunStatus = RunStatus.RUNNING
    version_hash: str = ""
    nodes: dict[str, NodeState] = Field(default_factory=dict)
    events: list[RunEvent] = Field(default_factory=list)
    final_outputs: list[dict[str, Any]] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    circuit_open: bool = False

    started_at: datetime = Field(default_factory=datetime.now)
    completed_at: datetime | None = None

    @computed_field
    @property
    def duration_ms(self) -> int:
        if self.completed_at is None:
            return 0
        return int((self.completed_at - self.started_at).total_seconds() * 1000)

    @property
    def success(self) -> bool:
        return self.status == RunStatus.SUCCEEDED

    def node(self, node_id: str) -> NodeState:
        return self.nodes[node_id]

    def outputs(self) -> dict[str, Any]:
        """Outputs of every succeeded node, by node id."""
        return {
            nid: state.output
            for nid, state in self.nodes.items()
            if state.status == NodeStatus.SUCCEEDED
        }

    def log_lines(self) -> list[dict[str, Any]]:
        """Event log in display form, ordered by occurrence."""
        return [e.to_dict() for e in self.events]
