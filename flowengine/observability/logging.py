"""
Structured logging with automatic run context propagation.

Key Features:
- Plain logger.info() calls pick up run/node context automatically
- ContextVar-based propagation: each node task sees its own node_id
- Dual output modes: JSON for production, human-readable for development

Architecture:
    GraphExecutor.execute() → sets run_id, mode, version_hash
        ↓ (copied into every node task's context)
    node task → adds node_id, spec_id
        ↓
    handler / egress guard / provider client → logger.info(...) gets ALL of it
"""

import json
import logging
import os
import re
from contextvars import ContextVar
from datetime import UTC, datetime
from typing import Any, TextIO

# Each asyncio task gets a copy of the context at creation time, so node
# tasks can add node_id without leaking it into sibling tasks.
trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

_ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*m")


def strip_ansi_codes(text: str) -> str:
    return _ANSI_ESCAPE.sub("", text)


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per record.

    Fields: timestamp, level, logger, message, then whatever the trace
    context holds (run_id, mode, version_hash, node_id, spec_id), then the
    executor's ``extra`` keys listed in EXTRA_FIELDS when present.
    """

    EXTRA_FIELDS = ("event", "attempt", "delay_ms", "resource_class", "status_code")

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
            **(trace_context.get() or {}),
        }
        entry.update(
            (name, getattr(record, name))
            for name in self.EXTRA_FIELDS
            if getattr(record, name, None) is not None
        )
        if record.exc_info:
            entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """One coloured line per record: level, run/node prefix, message, event tag."""

    LEVEL_COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[35m",
    }
    RESET = "\033[0m"

    @staticmethod
    def _prefix(context: dict[str, Any]) -> str:
        parts = [
            f"{label}:{value}"
            for label, value in (
                ("run", str(context.get("run_id", ""))[:8]),
                ("node", context.get("node_id", "")),
            )
            if value
        ]
        return f"[{' | '.join(parts)}] " if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        color = "" if os.environ.get("NO_COLOR") else self.LEVEL_COLORS.get(record.levelno, "")
        reset = self.RESET if color else ""
        event = getattr(record, "event", None)
        tag = f" [{event}]" if event is not None else ""
        prefix = self._prefix(trace_context.get() or {})
        return f"{color}{record.levelname:<8}{reset} {prefix}{record.getMessage()}{tag}"


# httpx logs every request at INFO
NOISY_LOGGERS = ("httpx", "httpcore")


def _resolve_format(format: str) -> str:
    if format != "auto":
        return format
    if os.getenv("LOG_FORMAT", "").lower() == "json" or os.getenv("ENV", "").lower() == "production":
        return "json"
    return "human"


def configure_logging(
    level: str = "INFO",
    format: str = "auto",
    stream: TextIO | None = None,
) -> None:
    """
    Install a single root handler. Call once at startup.

    Args:
        level: Root log level name
        format: "json", "human", or "auto" (JSON when LOG_FORMAT=json or
            ENV=production)
        stream: Where records go (stderr by default)
    """
    handler = logging.StreamHandler(stream)
    if _resolve_format(format) == "json":
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(HumanReadableFormatter())

    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(level.upper())
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(root.level, logging.WARNING))


def set_trace_context(**kwargs: Any) -> None:
    """
    Merge fields into the current trace context.

    Called by the executor (run_id, mode, version_hash) and by each node
    task (node_id, spec_id). Handlers never need to call it.
    """
    current = trace_context.get() or {}
    trace_context.set({**current, **kwargs})


def get_trace_context() -> dict:
    """Return a copy of the current trace context (empty dict if unset)."""
    context = trace_context.get() or {}
    return context.copy()


def clear_trace_context() -> None:
    """Clear trace context. Mostly useful between tests."""
    trace_context.set(None)
