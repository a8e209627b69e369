"""Tests for node state transitions and run schemas."""

import pytest
from pydantic import ValidationError

from flowengine.errors import InvalidTransitionError
from flowengine.schemas.run import NodeState, NodeStatus, RunOptions, RunResult, RunStatus


def state() -> NodeState:
    return NodeState(node_id="n", spec_id="template", resource_class="cpu")


def test_forward_path():
    s = state()
    s.transition(NodeStatus.QUEUED)
    s.transition(NodeStatus.RUNNING)
    s.transition(NodeStatus.SUCCEEDED)
    assert s.history == [NodeStatus.PENDING, NodeStatus.QUEUED, NodeStatus.RUNNING, NodeStatus.SUCCEEDED]
    assert s.queued_at is not None and s.started_at is not None and s.finished_at is not None
    assert s.duration_ms >= 0


@pytest.mark.parametrize(
    "path",
    [
        [NodeStatus.RUNNING],
        [NodeStatus.SUCCEEDED],
        [NodeStatus.QUEUED, NodeStatus.FAILED],
        [NodeStatus.QUEUED, NodeStatus.RUNNING, NodeStatus.SKIPPED],
        [NodeStatus.SKIPPED, NodeStatus.QUEUED],
        [NodeStatus.QUEUED, NodeStatus.RUNNING, NodeStatus.SUCCEEDED, NodeStatus.FAILED],
    ],
)
def test_illegal_transitions(path):
    s = state()
    with pytest.raises(InvalidTransitionError):
        for status in path:
            s.transition(status)


def test_pending_can_fail_directly():
    s = state()
    s.transition(NodeStatus.FAILED)
    assert s.status.is_terminal


def test_run_options_validation():
    assert RunOptions().mode == "marketplace"
    assert RunOptions(mode="dev", pool_limits={"llm": 3}).pool_limits == {"llm": 3}
    with pytest.raises(ValidationError):
        RunOptions(pool_limits={"llm": 0})
    with pytest.raises(ValidationError):
        RunOptions(timeout_seconds=0)


def test_run_result_outputs():
    result = RunResult(run_id="r", mode="dev", status=RunStatus.SUCCEEDED)
    ok = state()
    ok.transition(NodeStatus.QUEUED)
    ok.transition(NodeStatus.RUNNING)
    ok.output = "x"
    ok.transition(NodeStatus.SUCCEEDED)
    result.nodes["n"] = ok
    assert result.success
    assert result.outputs() == {"n": "x"}
    assert result.model_dump(mode="json")["nodes"]["n"]["status"] == "succeeded"
