"""Graph structures: Nodes, Edges, policies, validation and execution."""

from flowengine.graph.node import (
    FailurePolicy,
    NodeSpec,
    ResourceClass,
    RunMode,
    get_resource_class,
)
from flowengine.graph.edge import EdgeGating, EdgeSpec, GraphSpec
from flowengine.graph.policy import (
    get_edge_gating,
    get_failure_policy,
    get_fallback_value,
    get_run_mode,
    satisfies_edge_gating,
)
from flowengine.graph.version import canonical_projection, compute_version_hash
from flowengine.graph.validator import GraphValidationResult, validate_graph
from flowengine.graph.executor import GraphExecutor

__all__ = [
    # Model
    "NodeSpec",
    "EdgeSpec",
    "GraphSpec",
    "ResourceClass",
    "RunMode",
    "FailurePolicy",
    "EdgeGating",
    "get_resource_class",
    # Policy
    "get_run_mode",
    "get_failure_policy",
    "get_edge_gating",
    "get_fallback_value",
    "satisfies_edge_gating",
    # Version identity
    "canonical_projection",
    "compute_version_hash",
    # Validation / execution
    "GraphValidationResult",
    "validate_graph",
    "GraphExecutor",
]
