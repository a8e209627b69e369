"""
Policy resolver: failure policy, edge gating and fallback values.

Pure functions over the declared graph configuration. Unknown or
malformed values resolve to the safest default (fail_fast,
require_success) rather than raising, because graphs come from untrusted
publishers and a typo must not loosen behaviour.
"""

from typing import Any

from flowengine.graph.edge import EdgeGating, EdgeSpec
from flowengine.graph.node import FailurePolicy, NodeSpec, RunMode

_FAILURE_POLICIES = {p.value: p for p in FailurePolicy}
_GATINGS = {g.value: g for g in EdgeGating}


def get_run_mode(
    is_builder_test: bool = False,
    is_demo: bool = False,
    is_marketplace_run: bool = False,
) -> RunMode:
    """Only a builder test run is dev mode; everything else runs as marketplace."""
    if is_builder_test:
        return RunMode.DEV
    if is_demo or is_marketplace_run:
        return RunMode.MARKETPLACE
    # Not flagged at all: treat as untrusted
    return RunMode.MARKETPLACE


def get_failure_policy(node: NodeSpec) -> FailurePolicy:
    """Declared failure policy, defaulting to fail_fast."""
    return _FAILURE_POLICIES.get(str(node.failure_policy), FailurePolicy.FAIL_FAST)


def get_edge_gating(edge: EdgeSpec) -> EdgeGating:
    """Declared gating rule, defaulting to require_success."""
    return _GATINGS.get(str(edge.gating), EdgeGating.REQUIRE_SUCCESS)


def get_fallback_value(node: NodeSpec) -> Any:
    """Substitute output used under use_fallback_value."""
    return node.fallback_value


def satisfies_edge_gating(output: Any, source_status: str, gating: EdgeGating) -> bool:
    """
    Check whether an upstream outcome satisfies an edge.

    Args:
        output: The source node's output (the fallback value if one was used)
        source_status: The source's terminal status ("succeeded", "failed"
            or "skipped")
        gating: The edge's gating rule

    Returns:
        True if the target may count this dependency as met
    """
    if source_status != "succeeded":
        return gating == EdgeGating.ALLOW_ON_FAILURE

    if gating in (EdgeGating.REQUIRE_SUCCESS, EdgeGating.ALLOW_ON_FAILURE):
        return True
    if gating == EdgeGating.REQUIRE_NON_EMPTY:
        if output is None:
            return False
        if isinstance(output, str):
            return len(output.strip()) > 0
        if isinstance(output, list):
            return len(output) > 0
        return True
    if gating == EdgeGating.REQUIRE_TRUTHY:
        return bool(output)
    if gating == EdgeGating.REQUIRE_JSON:
        return isinstance(output, dict | list)
    if gating == EdgeGating.REQUIRE_ARRAY:
        return isinstance(output, list)
    if gating == EdgeGating.REQUIRE_STRING:
        return isinstance(output, str)
    return True
