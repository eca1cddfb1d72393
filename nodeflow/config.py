"""Shared nodeflow configuration utilities.

Reads ~/.nodeflow/configuration.json once per lookup so that every engine
instance resolves its defaults the same way. Environment variables win over
the file, explicit constructor arguments win over both.
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

DEFAULT_NODE_TIMEOUT = 60.0
DEFAULT_MAX_EXECUTION_TIME = 300.0
DEFAULT_EVENT_HISTORY = 1000

NODE_TIMEOUT_ENV_VAR = "NODEFLOW_NODE_TIMEOUT"
MAX_EXECUTION_TIME_ENV_VAR = "NODEFLOW_MAX_EXECUTION_TIME"

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

NODEFLOW_CONFIG_FILE = Path.home() / ".nodeflow" / "configuration.json"


def get_nodeflow_config(path: Path | None = None) -> dict[str, Any]:
    """Load nodeflow configuration from ~/.nodeflow/configuration.json."""
    config_file = path or NODEFLOW_CONFIG_FILE
    if not config_file.exists():
        return {}
    try:
        with open(config_file, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}
    return data if isinstance(data, dict) else {}


# ---------------------------------------------------------------------------
# Derived helpers
# ---------------------------------------------------------------------------


def _seconds(env_var: str, config_key: str, default: float) -> float:
    raw = os.environ.get(env_var)
    if raw is None:
        execution = get_nodeflow_config().get("execution")
        raw = execution.get(config_key) if isinstance(execution, dict) else None
    if raw is None:
        return default
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def get_node_timeout() -> float:
    """Return the per-node timeout in seconds."""
    return _seconds(NODE_TIMEOUT_ENV_VAR, "node_timeout", DEFAULT_NODE_TIMEOUT)


def get_max_execution_time() -> float:
    """Return the global run time budget in seconds."""
    return _seconds(MAX_EXECUTION_TIME_ENV_VAR, "max_time", DEFAULT_MAX_EXECUTION_TIME)


# ---------------------------------------------------------------------------
# EngineConfig
# ---------------------------------------------------------------------------


@dataclass
class EngineConfig:
    """Execution limits for a WorkflowEngine."""

    node_timeout_seconds: float = field(default_factory=get_node_timeout)
    max_execution_seconds: float = field(default_factory=get_max_execution_time)
    event_history_size: int = DEFAULT_EVENT_HISTORY
