"""
Run-correlated logging.

Every engine log record is tagged with the run it belongs to, without the
engine passing ids around:

    WorkflowEngine.execute()       sets run_id + workflow_id
    WorkflowEngine._execute_node() adds node_id
    node implementation            logger.info(...) inherits all three

The tags live in a ContextVar, so concurrent runs on one event loop never
see each other's ids. Two formatters render them: JSON lines for log
shippers, and a colourised one-liner for terminals.
"""

import json
import logging
import os
import re
from contextvars import ContextVar, Token
from datetime import UTC, datetime
from typing import Any

trace_context: ContextVar[dict[str, Any] | None] = ContextVar("trace_context", default=None)

_ANSI = re.compile(r"\x1b\[[0-9;]*m")

# LogRecord attributes passed via extra={...} that are worth keeping
_EXTRA_FIELDS = ("event", "node_id", "node_type", "latency_ms")

# trace key -> short label used by the human formatter
_PREFIX_LABELS = {"run_id": "run", "workflow_id": "wf", "node_id": "node"}


def strip_ansi_codes(text: str) -> str:
    return _ANSI.sub("", text)


def _record_extras(record: logging.LogRecord) -> dict[str, Any]:
    return {
        name: getattr(record, name)
        for name in _EXTRA_FIELDS
        if getattr(record, name, None) is not None
    }


class StructuredFormatter(logging.Formatter):
    """One JSON object per record: base fields, trace context, then extras."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": strip_ansi_codes(record.getMessage()),
            **(trace_context.get() or {}),
        }
        for name, value in _record_extras(record).items():
            entry[name] = strip_ansi_codes(value) if isinstance(value, str) else value
        if record.exc_info:
            entry["exception"] = strip_ansi_codes(self.formatException(record.exc_info))
        return json.dumps(entry, default=str)


class HumanReadableFormatter(logging.Formatter):
    """``[INFO    ] [run:1a2b3c4d | wf:qa | node:answer] message``"""

    COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    @staticmethod
    def _context_prefix() -> str:
        context = trace_context.get() or {}
        parts = []
        for key, label in _PREFIX_LABELS.items():
            value = context.get(key)
            if not value:
                continue
            # uuid-based run ids are long; the tail is enough to correlate
            parts.append(f"{label}:{value[-8:] if key == 'run_id' else value}")
        return f"[{' | '.join(parts)}] " if parts else ""

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        line = (
            f"{color}[{record.levelname:<8}]{self.RESET} "
            f"{self._context_prefix()}{record.getMessage()}"
        )
        event = getattr(record, "event", None)
        if event is not None:
            line += f" [{event}]"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def _resolve_format(format: str) -> str:
    if format != "auto":
        return format
    if os.getenv("LOG_FORMAT", "").lower() == "json":
        return "json"
    return "json" if os.getenv("ENV", "development").lower() == "production" else "human"


def configure_logging(level: str = "INFO", format: str = "auto") -> None:
    """
    Install a single stream handler on the root logger.

    Meant for host applications and test fixtures; the engine itself only
    creates module loggers and never touches handlers.

    Args:
        level: Root log level name
        format: "json", "human", or "auto" (json when LOG_FORMAT=json or
            ENV=production)
    """
    formatter: logging.Formatter
    if _resolve_format(format) == "json":
        formatter = StructuredFormatter()
    else:
        formatter = HumanReadableFormatter()

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())


def set_trace_context(**fields: Any) -> Token:
    """
    Merge fields into the current trace context. A None value removes the key.

    Returns:
        Token for reset_trace_context(), restoring the context as it was
    """
    merged = {**(trace_context.get() or {}), **fields}
    return trace_context.set({key: value for key, value in merged.items() if value is not None})


def reset_trace_context(token: Token) -> None:
    """Undo a set_trace_context() call made in the same context."""
    trace_context.reset(token)


def get_trace_context() -> dict:
    return dict(trace_context.get() or {})


def clear_trace_context() -> None:
    trace_context.set(None)
