"""
Edge Protocol - How nodes connect in a graph.

Edges define:
1. Source and target nodes
2. A gating rule deciding whether the source's outcome unlocks the target

A target runs only once every incoming edge is satisfied (AND-join; there
is no OR-join). Each edge is evaluated exactly once, when its source
reaches a terminal state.

Gating rules:
- require_success: source succeeded (default)
- allow_on_failure: source reached any terminal state
- require_non_empty: source succeeded with a non-null, non-blank output
- require_truthy: source succeeded with a truthy output
- require_type:json / require_type:array / require_type:string:
  source succeeded with an output of that shape
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field, ValidationError

from flowengine.errors import GraphValidationError
from flowengine.graph.node import NodeSpec


class EdgeGating(StrEnum):
    """When an edge satisfies its target's dependency."""

    REQUIRE_SUCCESS = "require_success"
    ALLOW_ON_FAILURE = "allow_on_failure"
    REQUIRE_NON_EMPTY = "require_non_empty"
    REQUIRE_TRUTHY = "require_truthy"
    REQUIRE_JSON = "require_type:json"
    REQUIRE_ARRAY = "require_type:array"
    REQUIRE_STRING = "require_type:string"


class EdgeSpec(BaseModel):
    """
    Specification for an edge between nodes.

    Examples:
        # Default: target runs only if the source succeeded
        EdgeSpec(source="fetch", target="parse")

        # Error handler runs whatever happened upstream
        EdgeSpec(source="fetch", target="notify", gating="allow_on_failure")

        # Only summarize when the upstream produced text
        EdgeSpec(source="extract", target="summarize", gating="require_non_empty")
    """

    id: str = ""
    source: str = Field(description="Source node ID")
    target: str = Field(description="Target node ID")
    gating: str | None = Field(
        default=None,
        alias="edgeGating",
        description="Raw gating rule; unknown values resolve to require_success",
    )

    model_config = {"extra": "allow", "populate_by_name": True}

    @property
    def key(self) -> str:
        return self.id or f"{self.source}->{self.target}"

    def is_satisfied_by(self, output: Any, source_status: str) -> bool:
        """Whether the source's terminal outcome satisfies this edge."""
        from flowengine.graph.policy import get_edge_gating, satisfies_edge_gating

        return satisfies_edge_gating(output, source_status, get_edge_gating(self))


class GraphSpec(BaseModel):
    """
    A complete workflow graph: ordered nodes plus ordered edges.

    Immutable once a run starts. ``allowed_hosts`` is the workflow-level
    network allow list declared by the publisher; when present the egress
    guard becomes default-deny for every HTTP node in the run.
    """

    id: str = ""
    name: str = ""
    nodes: list[NodeSpec] = Field(default_factory=list)
    edges: list[EdgeSpec] = Field(default_factory=list)
    allowed_hosts: list[str] = Field(default_factory=list, alias="allowedHosts")

    model_config = {"extra": "allow", "populate_by_name": True}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "GraphSpec":
        """
        Build a GraphSpec from a builder payload.

        Accepts both the builder shape
        ``{"nodes": [{"id", "data": {"specId", "config", "title"}}],
        "edges": [{"source", "target", "data": {"gating"}}]}``
        and the flat shape (``specId``/``config`` directly on the node,
        ``edgeGating`` directly on the edge).

        Raises:
            GraphValidationError: If the payload is not a graph at all
        """
        try:
            return cls._parse(payload)
        except (ValidationError, AttributeError, TypeError) as e:
            raise GraphValidationError([f"Malformed graph payload: {e}"]) from e

    @classmethod
    def _parse(cls, payload: dict[str, Any]) -> "GraphSpec":
        nodes = []
        for raw in payload.get("nodes") or []:
            data = raw.get("data") or {}
            node = {k: v for k, v in raw.items() if k not in ("data", "position")}
            if "specId" not in node and "spec_id" not in node:
                node["specId"] = data.get("specId", "")
            if "config" not in node:
                node["config"] = data.get("config") or {}
            if "title" not in node and data.get("title"):
                node["title"] = data["title"]
            nodes.append(NodeSpec.model_validate(node))

        edges = []
        for raw in payload.get("edges") or []:
            data = raw.get("data") or {}
            edge = {k: v for k, v in raw.items() if k not in ("data",)}
            if "edgeGating" not in edge and "gating" not in edge:
                gating = data.get("gating", data.get("edgeGating"))
                if gating is not None:
                    edge["edgeGating"] = gating
            edges.append(EdgeSpec.model_validate(edge))

        return cls(
            id=str(payload.get("id", "")),
            name=str(payload.get("name", "")),
            nodes=nodes,
            edges=edges,
            allowed_hosts=list(payload.get("allowedHosts") or payload.get("allowed_hosts") or []),
        )

    def get_node(self, node_id: str) -> NodeSpec | None:
        """Get a node by ID."""
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def get_outgoing_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges leaving a node, in declaration order."""
        return [e for e in self.edges if e.source == node_id]

    def get_incoming_edges(self, node_id: str) -> list[EdgeSpec]:
        """Get all edges entering a node, in declaration order."""
        return [e for e in self.edges if e.target == node_id]

    def entry_nodes(self) -> list[str]:
        """Nodes with no incoming edges; ready as soon as the run starts."""
        targets = {e.target for e in self.edges}
        return [n.id for n in self.nodes if n.id not in targets]

    def sink_nodes(self) -> list[str]:
        """Nodes with no outgoing edges."""
        sources = {e.source for e in self.edges}
        return [n.id for n in self.nodes if n.id not in sources]
