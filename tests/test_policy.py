"""Tests for the policy resolver and edge gating."""

import pytest

from flowengine.graph.edge import EdgeGating, EdgeSpec
from flowengine.graph.node import FailurePolicy, NodeSpec, RunMode
from flowengine.graph.policy import (
    get_edge_gating,
    get_failure_policy,
    get_fallback_value,
    get_run_mode,
    satisfies_edge_gating,
)


def node(**kwargs) -> NodeSpec:
    return NodeSpec(id="n", spec_id="template", **kwargs)


class TestRunMode:
    def test_builder_test_is_dev(self):
        assert get_run_mode(is_builder_test=True, is_marketplace_run=True) == RunMode.DEV

    def test_everything_else_is_marketplace(self):
        assert get_run_mode(is_demo=True) == RunMode.MARKETPLACE
        assert get_run_mode(is_marketplace_run=True) == RunMode.MARKETPLACE
        assert get_run_mode() == RunMode.MARKETPLACE


class TestFailurePolicy:
    def test_default_is_fail_fast(self):
        assert get_failure_policy(node()) == FailurePolicy.FAIL_FAST

    def test_declared(self):
        assert get_failure_policy(node(failure_policy="continue")) == FailurePolicy.CONTINUE

    def test_lifted_from_config(self):
        n = NodeSpec(
            id="n",
            spec_id="template",
            config={"failurePolicy": "use_fallback_value", "fallbackValue": "n/a"},
        )
        assert get_failure_policy(n) == FailurePolicy.USE_FALLBACK_VALUE
        assert get_fallback_value(n) == "n/a"

    def test_unknown_value_is_fail_fast(self):
        assert get_failure_policy(node(failure_policy="yolo")) == FailurePolicy.FAIL_FAST


class TestEdgeGating:
    def test_default_is_require_success(self):
        assert get_edge_gating(EdgeSpec(source="a", target="b")) == EdgeGating.REQUIRE_SUCCESS

    def test_alias(self):
        edge = EdgeSpec.model_validate({"source": "a", "target": "b", "edgeGating": "require_truthy"})
        assert get_edge_gating(edge) == EdgeGating.REQUIRE_TRUTHY

    def test_unknown_is_require_success(self):
        edge = EdgeSpec(source="a", target="b", gating="require_type:xml")
        assert get_edge_gating(edge) == EdgeGating.REQUIRE_SUCCESS

    @pytest.mark.parametrize("status", ["failed", "skipped"])
    def test_non_success_satisfies_only_allow_on_failure(self, status):
        for gating in EdgeGating:
            expected = gating == EdgeGating.ALLOW_ON_FAILURE
            assert satisfies_edge_gating("x", status, gating) is expected

    @pytest.mark.parametrize(
        "output,expected",
        [("", False), ("   ", False), (None, False), ([], False), ("x", True), ([1], True), (0, True), ({}, True)],
    )
    def test_require_non_empty(self, output, expected):
        assert satisfies_edge_gating(output, "succeeded", EdgeGating.REQUIRE_NON_EMPTY) is expected

    @pytest.mark.parametrize("output,expected", [(0, False), ("", False), (False, False), ("no", True), (1, True)])
    def test_require_truthy(self, output, expected):
        assert satisfies_edge_gating(output, "succeeded", EdgeGating.REQUIRE_TRUTHY) is expected

    def test_require_type(self):
        assert satisfies_edge_gating({"a": 1}, "succeeded", EdgeGating.REQUIRE_JSON)
        assert satisfies_edge_gating([1], "succeeded", EdgeGating.REQUIRE_JSON)
        assert not satisfies_edge_gating("{}", "succeeded", EdgeGating.REQUIRE_JSON)
        assert satisfies_edge_gating([], "succeeded", EdgeGating.REQUIRE_ARRAY)
        assert not satisfies_edge_gating({}, "succeeded", EdgeGating.REQUIRE_ARRAY)
        assert satisfies_edge_gating("", "succeeded", EdgeGating.REQUIRE_STRING)
        assert not satisfies_edge_gating(1, "succeeded", EdgeGating.REQUIRE_STRING)

    def test_edge_is_satisfied_by(self):
        edge = EdgeSpec(source="a", target="b", gating="require_non_empty")
        assert not edge.is_satisfied_by("", "succeeded")
        assert edge.is_satisfied_by("x", "succeeded")
