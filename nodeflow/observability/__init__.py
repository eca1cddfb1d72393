"""Logging helpers that tag records with the run, workflow and node they belong to."""

from nodeflow.observability.logging import (
    HumanReadableFormatter,
    StructuredFormatter,
    clear_trace_context,
    configure_logging,
    get_trace_context,
    reset_trace_context,
    set_trace_context,
)

__all__ = [
    "configure_logging",
    "set_trace_context",
    "reset_trace_context",
    "get_trace_context",
    "clear_trace_context",
    "StructuredFormatter",
    "HumanReadableFormatter",
]
