"""
Command-line interface for flowengine.

Usage:
    flowengine run graph.json --mode dev --input '{"in": "hello"}'
    flowengine validate graph.json --mode marketplace
    flowengine hash graph.json
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from flowengine.config import EngineConfig
from flowengine.errors import GraphValidationError
from flowengine.graph.edge import GraphSpec
from flowengine.graph.executor import GraphExecutor
from flowengine.graph.node import RunMode
from flowengine.graph.validator import validate_graph
from flowengine.graph.version import compute_version_hash
from flowengine.observability.logging import configure_logging
from flowengine.schemas.run import RunOptions
from flowengine.security.egress import get_network_access
from flowengine.security.secrets import strip_graph_secrets


def _load_payload(path: str) -> dict[str, Any]:
    graph_path = Path(path)
    if not graph_path.exists():
        raise SystemExit(f"ERROR: graph file not found: {graph_path}")
    try:
        payload = json.loads(graph_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise SystemExit(f"ERROR: {graph_path} is not valid JSON: {e}") from e
    if not isinstance(payload, dict):
        raise SystemExit(f"ERROR: {graph_path} must contain a JSON object")
    return payload


def _print_json(value: Any) -> None:
    print(json.dumps(value, indent=2, default=str))


def cmd_run(args: argparse.Namespace) -> int:
    """Execute a graph and print the run result."""
    payload = _load_payload(args.graph)
    try:
        inputs = json.loads(args.input) if args.input else {}
    except json.JSONDecodeError as e:
        raise SystemExit(f"ERROR: --input is not valid JSON: {e}") from e
    if not isinstance(inputs, dict):
        raise SystemExit("ERROR: --input must be a JSON object keyed by node id")

    options = RunOptions(
        mode=args.mode,
        user_id=args.user_id,
        inputs=inputs,
        timeout_seconds=args.timeout,
    )
    result = asyncio.run(GraphExecutor(EngineConfig()).execute(payload, options))
    _print_json(result.model_dump(mode="json", exclude={"events"} if args.quiet else None))
    return 0 if result.success else 1


def cmd_validate(args: argparse.Namespace) -> int:
    """Validate a graph's structure and node configs."""
    try:
        graph = GraphSpec.from_payload(_load_payload(args.graph))
    except GraphValidationError as e:
        raise SystemExit(f"ERROR: {e}") from e
    validation = validate_graph(graph, args.mode)
    _print_json(
        {
            "valid": validation.valid,
            "errors": validation.errors,
            "warnings": validation.warnings,
            "network": get_network_access(graph),
        }
    )
    return 0 if validation.valid else 1


def cmd_hash(args: argparse.Namespace) -> int:
    """Print the version hash of a graph (secrets stripped first)."""
    payload = strip_graph_secrets(_load_payload(args.graph))
    try:
        print(compute_version_hash(payload))
    except GraphValidationError as e:
        raise SystemExit(f"ERROR: {e}") from e
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="flowengine",
        description="Validate, hash and run workflow graphs",
    )
    parser.add_argument("--log-level", default=None, help="Log level (default from config)")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Execute a graph")
    run_parser.add_argument("graph", help="Path to the graph JSON payload")
    run_parser.add_argument("--mode", choices=[m.value for m in RunMode], default="dev")
    run_parser.add_argument("--input", help="Run inputs as a JSON object keyed by node id")
    run_parser.add_argument("--user-id", help="Caller identity for rate limiting")
    run_parser.add_argument("--timeout", type=float, help="Run timeout in seconds")
    run_parser.add_argument("--quiet", action="store_true", help="Omit the event log")
    run_parser.set_defaults(func=cmd_run)

    validate_parser = subparsers.add_parser("validate", help="Validate a graph")
    validate_parser.add_argument("graph", help="Path to the graph JSON payload")
    validate_parser.add_argument(
        "--mode", choices=[m.value for m in RunMode], default="marketplace"
    )
    validate_parser.set_defaults(func=cmd_validate)

    hash_parser = subparsers.add_parser("hash", help="Print a graph's version hash")
    hash_parser.add_argument("graph", help="Path to the graph JSON payload")
    hash_parser.set_defaults(func=cmd_hash)

    args = parser.parse_args(argv)
    configure_logging(level=args.log_level or EngineConfig().log_level)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
