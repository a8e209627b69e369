"""
Version identity for published workflow snapshots.

The hash covers a canonical projection of the graph: each node's id,
spec id and config, and each edge's source and target, in declaration
order. Volatile fields (timestamps, UI hints, editor state) and secrets
are dropped from config before hashing, and mapping keys are sorted, so
two behaviourally identical graphs always hash the same.
"""

import hashlib
import json
from typing import Any

from flowengine.graph.edge import GraphSpec
from flowengine.security.secrets import SECRET_CONFIG_KEYS

VERSION_HASH_LENGTH = 16

VOLATILE_CONFIG_KEYS = frozenset(
    {
        "createdAt",
        "updatedAt",
        "lastRunAt",
        "timestamp",
        "position",
        "selected",
        "dragging",
        "collapsed",
        "width",
        "height",
        "uiHints",
    }
)


def _canonical_config(config: dict[str, Any]) -> dict[str, Any]:
    return {
        key: value
        for key, value in config.items()
        if key not in VOLATILE_CONFIG_KEYS and key not in SECRET_CONFIG_KEYS
    }


def canonical_projection(graph: GraphSpec) -> dict[str, Any]:
    """The behaviour-relevant part of a graph, as plain JSON-able data."""
    return {
        "nodes": [
            {"id": node.id, "specId": node.spec_id, "config": _canonical_config(node.config)}
            for node in graph.nodes
        ],
        "edges": [{"source": edge.source, "target": edge.target} for edge in graph.edges],
    }


def compute_version_hash(graph: GraphSpec | dict[str, Any]) -> str:
    """
    Stable 16-hex-character content hash of a graph.

    Accepts a GraphSpec or a raw builder payload.
    """
    if not isinstance(graph, GraphSpec):
        graph = GraphSpec.from_payload(graph)
    canonical = json.dumps(
        canonical_projection(graph),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:VERSION_HASH_LENGTH]
