"""Node contracts (typed config per spec id) and node behaviours."""

from flowengine.nodes.contracts import (
    CONTRACTS,
    NodeConfig,
    NodeContract,
    effective_timeout_ms,
    get_contract,
    is_known_spec,
    parse_node_config,
)
from flowengine.nodes.handlers import HANDLERS, NodeContext, NodeHandler, passthrough_node

__all__ = [
    "CONTRACTS",
    "HANDLERS",
    "NodeConfig",
    "NodeContext",
    "NodeContract",
    "NodeHandler",
    "effective_timeout_ms",
    "get_contract",
    "is_known_spec",
    "parse_node_config",
    "passthrough_node",
]
