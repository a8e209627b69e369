"""Structural validation for submitted graphs.

Runs before scheduling. Errors make the graph unrunnable (the executor
rejects the run); warnings are surfaced on the run result but do not
block it. Node configs are parsed into their typed contracts here, once,
so the executor never sees an unparsed config.
"""

import logging
from collections import deque
from dataclasses import dataclass, field

from flowengine.errors import NodeConfigError
from flowengine.graph.edge import GraphSpec
from flowengine.graph.node import RunMode
from flowengine.nodes.contracts import (
    NodeConfig,
    OpenAIImageConfig,
    get_contract,
    is_known_spec,
    parse_node_config,
)

logger = logging.getLogger(__name__)

MAX_NODES = 50
MAX_EXPENSIVE_NODES = 10
MAX_DEPTH = 20

DALL_E_2_SIZES = ("256x256", "512x512", "1024x1024")
DALL_E_3_SIZES = ("1024x1024", "1792x1024", "1024x1792")


@dataclass
class GraphValidationResult:
    """Result of validating a graph."""

    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    configs: dict[str, NodeConfig] = field(default_factory=dict)
    # Errors that belong to a single node (bad config, unknown spec)
    node_errors: dict[str, str] = field(default_factory=dict)

    @property
    def valid(self) -> bool:
        return not self.errors

    @property
    def error(self) -> str:
        """Get combined error message."""
        return "; ".join(self.errors) if self.errors else ""


def _adjacency(graph: GraphSpec) -> dict[str, list[str]]:
    adj: dict[str, list[str]] = {n.id: [] for n in graph.nodes}
    for edge in graph.edges:
        if edge.source in adj and edge.target in adj:
            adj[edge.source].append(edge.target)
    return adj


def find_cycle(graph: GraphSpec) -> list[str] | None:
    """Return one cycle as a list of node ids, or None if the graph is acyclic."""
    adj = _adjacency(graph)
    done: set[str] = set()

    for root in adj:
        if root in done:
            continue
        # Iterative DFS: path[i] is being expanded by iterators[i]
        path = [root]
        on_path = {root}
        iterators = [iter(adj[root])]
        while iterators:
            for neighbor in iterators[-1]:
                if neighbor in on_path:
                    return path[path.index(neighbor) :] + [neighbor]
                if neighbor not in done:
                    path.append(neighbor)
                    on_path.add(neighbor)
                    iterators.append(iter(adj[neighbor]))
                    break
            else:
                finished = path.pop()
                on_path.discard(finished)
                done.add(finished)
                iterators.pop()
    return None


def max_depth(graph: GraphSpec) -> int:
    """Longest path length, in nodes, from any entry node. Assumes no cycles."""
    adj = _adjacency(graph)
    indegree = {node_id: 0 for node_id in adj}
    for targets in adj.values():
        for target in targets:
            indegree[target] += 1

    depth = {node_id: 1 for node_id in adj}
    ready = deque(node_id for node_id, count in indegree.items() if count == 0)
    while ready:
        node_id = ready.popleft()
        for target in adj[node_id]:
            depth[target] = max(depth[target], depth[node_id] + 1)
            indegree[target] -= 1
            if indegree[target] == 0:
                ready.append(target)
    return max(depth.values(), default=0)


def _image_config_errors(label: str, config: OpenAIImageConfig) -> list[str]:
    errors = []
    if config.model == "dall-e-2":
        if config.quality == "hd":
            errors.append(f"{label}: quality 'hd' is only supported with DALL-E 3")
        if config.size not in DALL_E_2_SIZES:
            errors.append(
                f"{label}: size '{config.size}' is not valid for DALL-E 2 "
                f"(use one of {', '.join(DALL_E_2_SIZES)})"
            )
    elif config.size not in DALL_E_3_SIZES:
        errors.append(
            f"{label}: size '{config.size}' is not valid for DALL-E 3 "
            f"(use one of {', '.join(DALL_E_3_SIZES)})"
        )
    return errors


def validate_graph(graph: GraphSpec, mode: RunMode | str = RunMode.MARKETPLACE) -> GraphValidationResult:
    """
    Validate a graph's structure and node configs.

    Args:
        graph: The graph to check
        mode: Run mode; unknown spec ids are errors in marketplace mode
            and warnings in dev mode

    Returns:
        GraphValidationResult with errors, warnings and typed configs
    """
    mode = RunMode(mode)
    result = GraphValidationResult()

    if not graph.nodes:
        result.errors.append("Workflow must contain at least one node")
        return result

    if len(graph.nodes) > MAX_NODES:
        result.errors.append(
            f"Workflow contains {len(graph.nodes)} nodes, which exceeds the maximum of {MAX_NODES}"
        )
        logger.info("Graph rejected: %d nodes", len(graph.nodes))
        return result

    seen: set[str] = set()
    for node in graph.nodes:
        if node.id in seen:
            result.errors.append(f"Duplicate node id '{node.id}'")
        seen.add(node.id)

    for edge in graph.edges:
        if edge.source == edge.target:
            result.errors.append(f"Edge {edge.key} is a self-loop on '{edge.source}'")
        for end in (edge.source, edge.target):
            if end not in seen:
                result.errors.append(f"Edge {edge.key} references unknown node '{end}'")

    cycle = find_cycle(graph)
    if cycle and len(cycle) > 2:
        result.errors.append(f"Workflow contains a circular dependency: {' -> '.join(cycle)}")

    expensive = 0
    for node in graph.nodes:
        contract = get_contract(node.spec_id)
        if not is_known_spec(node.spec_id):
            message = f"Node '{node.id}' uses unknown spec '{node.spec_id}'"
            if mode == RunMode.MARKETPLACE:
                result.errors.append(message)
                result.node_errors[node.id] = message
                continue
            result.warnings.append(f"{message}; it will pass its input through")
        elif contract.expensive:
            expensive += 1

        try:
            config = parse_node_config(node)
        except NodeConfigError as e:
            result.errors.append(str(e))
            result.node_errors[node.id] = str(e)
            continue
        result.configs[node.id] = config

        if isinstance(config, OpenAIImageConfig):
            image_errors = _image_config_errors(node.label, config)
            if image_errors:
                result.errors.extend(image_errors)
                result.node_errors[node.id] = "; ".join(image_errors)

    if expensive > MAX_EXPENSIVE_NODES:
        result.warnings.append(
            f"Workflow contains {expensive} nodes that call external services; "
            "each run will consume credits"
        )

    if not cycle:
        depth = max_depth(graph)
        if depth > MAX_DEPTH:
            result.warnings.append(f"Workflow has a depth of {depth} levels")

    if len(graph.nodes) > 1:
        connected = {e.source for e in graph.edges} | {e.target for e in graph.edges}
        disconnected = [n.id for n in graph.nodes if n.id not in connected]
        if disconnected:
            result.warnings.append(
                f"Workflow contains {len(disconnected)} disconnected node(s): "
                f"{', '.join(disconnected)}"
            )

    if result.errors:
        logger.info("Graph rejected with %d error(s)", len(result.errors))
    return result
