"""Tests for structural graph validation."""

import pytest

from flowengine.errors import GraphValidationError
from flowengine.graph.edge import GraphSpec
from flowengine.graph.validator import find_cycle, max_depth, validate_graph
from flowengine.nodes.contracts import OpenAIChatConfig


def graph(nodes, edges=()) -> GraphSpec:
    return GraphSpec.from_payload(
        {
            "nodes": [
                {"id": nid, "specId": spec, "config": config}
                for nid, spec, config in (n if len(n) == 3 else (*n, {}) for n in nodes)
            ],
            "edges": [{"source": s, "target": t} for s, t in edges],
        }
    )


def chain(length: int) -> GraphSpec:
    ids = [f"n{i}" for i in range(length)]
    return graph([(i, "template") for i in ids], zip(ids, ids[1:]))


def test_valid_graph_returns_typed_configs():
    g = graph([("in", "input"), ("chat", "openai-chat", {"prompt": "hi", "maxTokens": 50})], [("in", "chat")])
    result = validate_graph(g, "marketplace")
    assert result.valid, result.errors
    assert isinstance(result.configs["chat"], OpenAIChatConfig)
    assert result.configs["chat"].max_tokens == 50


def test_empty_graph():
    assert not validate_graph(GraphSpec()).valid


def test_cycle_rejected():
    g = graph([("a", "template"), ("b", "template"), ("c", "template")], [("a", "b"), ("b", "c"), ("c", "a")])
    assert find_cycle(g) == ["a", "b", "c", "a"]
    result = validate_graph(g, "dev")
    assert not result.valid
    assert "circular" in result.error


def test_self_loop_rejected():
    result = validate_graph(graph([("a", "template")], [("a", "a")]), "dev")
    assert any("self-loop" in e for e in result.errors)


def test_dangling_edge_rejected():
    result = validate_graph(graph([("a", "template")], [("a", "ghost")]), "dev")
    assert any("ghost" in e for e in result.errors)


def test_duplicate_ids_rejected():
    result = validate_graph(graph([("a", "template"), ("a", "input")]), "dev")
    assert any("Duplicate" in e for e in result.errors)


def test_node_limit():
    ids = [f"n{i}" for i in range(51)]
    result = validate_graph(graph([(i, "input") for i in ids]), "dev")
    assert any("exceeds the maximum of 50" in e for e in result.errors)


def test_oversized_graph_stops_at_node_limit():
    result = validate_graph(chain(3000), "dev")
    assert result.errors == ["Workflow contains 3000 nodes, which exceeds the maximum of 50"]
    assert result.configs == {}


def test_long_chains_do_not_recurse():
    g = chain(3000)
    assert find_cycle(g) is None
    assert max_depth(g) == 3000

    ids = [f"n{i}" for i in range(3000)]
    looped = graph([(i, "template") for i in ids], [*zip(ids, ids[1:]), ("n2999", "n0")])
    cycle = find_cycle(looped)
    assert cycle[0] == cycle[-1] == "n0"
    assert len(cycle) == 3001


def test_depth_is_longest_path():
    g = graph(
        [("a", "template"), ("b", "template"), ("c", "template"), ("d", "template")],
        [("a", "b"), ("b", "c"), ("a", "c"), ("c", "d")],
    )
    assert max_depth(g) == 4


def test_unknown_spec_is_mode_gated():
    g = graph([("x", "mystery-node")])
    marketplace = validate_graph(g, "marketplace")
    assert not marketplace.valid
    assert "x" in marketplace.node_errors

    dev = validate_graph(g, "dev")
    assert dev.valid
    assert any("mystery-node" in w for w in dev.warnings)


def test_bad_config_is_a_node_error():
    result = validate_graph(graph([("t", "template", {"retries": 99})]), "dev")
    assert not result.valid
    assert "t" in result.node_errors


def test_map_requires_field():
    result = validate_graph(graph([("m", "map")]), "dev")
    assert "m" in result.node_errors


def test_image_model_combinations():
    bad = graph(
        [
            ("i2", "openai-image", {"model": "dall-e-2", "quality": "hd", "size": "1792x1024"}),
            ("i3", "openai-image", {"model": "dall-e-3", "size": "512x512"}),
        ]
    )
    result = validate_graph(bad, "dev")
    assert len(result.errors) == 3

    good = graph([("i", "openai-image", {"model": "dall-e-2", "size": "256x256"})])
    assert validate_graph(good, "dev").valid


def test_expensive_node_warning():
    nodes = [(f"h{i}", "http-request", {"url": "https://api.example.com"}) for i in range(11)]
    result = validate_graph(graph(nodes), "dev")
    assert result.valid
    assert any("external services" in w for w in result.warnings)


def test_depth_warning():
    g = chain(21)
    assert max_depth(g) == 21
    result = validate_graph(g, "dev")
    assert result.valid
    assert any("depth of 21" in w for w in result.warnings)


def test_disconnected_warning():
    g = graph([("a", "template"), ("b", "template"), ("c", "template")], [("a", "b")])
    result = validate_graph(g, "dev")
    assert any("disconnected" in w and "c" in w for w in result.warnings)


def test_malformed_payload_raises_graph_validation_error():
    with pytest.raises(GraphValidationError) as excinfo:
        GraphSpec.from_payload({"nodes": [{"data": {"specId": "input"}}]})
    assert "Malformed graph payload" in excinfo.value.errors[0]
