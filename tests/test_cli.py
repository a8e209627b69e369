"""Tests for the flowengine command-line interface."""

import json

import pytest

from flowengine import cli
from flowengine import config as engine_config_module
from flowengine.graph.version import compute_version_hash

GRAPH = {
    "nodes": [
        {"id": "in", "data": {"specId": "input", "config": {"value": "hello"}}},
        {"id": "shout", "data": {"specId": "template", "config": {"template": "{{input}}!"}}},
        {"id": "out", "data": {"specId": "output", "config": {}}},
    ],
    "edges": [{"source": "in", "target": "shout"}, {"source": "shout", "target": "out"}],
}


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    monkeypatch.setattr(engine_config_module, "FLOWENGINE_CONFIG_FILE", tmp_path / "missing.json")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.setattr(cli, "configure_logging", lambda **kwargs: None)


@pytest.fixture
def graph_file(tmp_path):
    def write(payload) -> str:
        path = tmp_path / "graph.json"
        path.write_text(json.dumps(payload), encoding="utf-8")
        return str(path)

    return write


def test_run_prints_result(graph_file, capsys):
    code = cli.main(["run", graph_file(GRAPH), "--quiet"])
    output = json.loads(capsys.readouterr().out)

    assert code == 0
    assert output["status"] == "succeeded"
    assert output["final_outputs"][0]["value"] == "hello!"
    assert "events" not in output


def test_run_with_inputs(graph_file, capsys):
    code = cli.main(["run", graph_file(GRAPH), "--input", '{"in": "hi"}'])
    output = json.loads(capsys.readouterr().out)

    assert code == 0
    assert output["final_outputs"][0]["value"] == "hi!"
    assert output["events"]


def test_run_failure_exit_code(graph_file, capsys):
    payload = {"nodes": [{"id": "mystery", "data": {"specId": "custom-widget"}}], "edges": []}
    code = cli.main(["run", graph_file(payload), "--mode", "marketplace"])
    output = json.loads(capsys.readouterr().out)

    assert code == 1
    assert output["status"] == "failed"


def test_run_rejects_non_object_input(graph_file):
    with pytest.raises(SystemExit, match="--input"):
        cli.main(["run", graph_file(GRAPH), "--input", "[1, 2]"])


def test_run_rejects_malformed_input_json(graph_file):
    with pytest.raises(SystemExit, match="--input is not valid JSON"):
        cli.main(["run", graph_file(GRAPH), "--input", "{in: hello"])


def test_validate_reports_network_access(graph_file, capsys):
    payload = {
        "nodes": [
            {
                "id": "fetch",
                "data": {
                    "specId": "http-request",
                    "config": {"url": "https://api.example.com/data", "allowOnly": "api.example.com"},
                },
            }
        ],
        "edges": [],
    }
    code = cli.main(["validate", graph_file(payload)])
    output = json.loads(capsys.readouterr().out)

    assert code == 0
    assert output["valid"] is True
    assert output["network"] == {"has_http_request": True, "allowed_domains": ["api.example.com"]}


def test_validate_invalid_graph(graph_file, capsys):
    payload = {
        "nodes": [{"id": "a", "data": {"specId": "template"}}],
        "edges": [{"source": "a", "target": "a"}],
    }
    code = cli.main(["validate", graph_file(payload)])
    output = json.loads(capsys.readouterr().out)

    assert code == 1
    assert output["valid"] is False
    assert output["errors"]


def test_hash_ignores_secrets(graph_file, capsys):
    with_secret = json.loads(json.dumps(GRAPH))
    with_secret["nodes"][1]["data"]["config"]["apiKey"] = "sk-should-not-matter"

    assert cli.main(["hash", graph_file(with_secret)]) == 0
    printed = capsys.readouterr().out.strip()
    assert printed == compute_version_hash(GRAPH)
    assert len(printed) == 16


def test_missing_graph_file(tmp_path):
    with pytest.raises(SystemExit, match="not found"):
        cli.main(["hash", str(tmp_path / "nope.json")])


def test_invalid_json_file(tmp_path):
    path = tmp_path / "broken.json"
    path.write_text("{not json", encoding="utf-8")
    with pytest.raises(SystemExit, match="not valid JSON"):
        cli.main(["validate", str(path)])


def test_malformed_graph(graph_file):
    with pytest.raises(SystemExit, match="Malformed graph payload"):
        cli.main(["validate", graph_file({"nodes": [{"data": {"specId": "input"}}]})])
