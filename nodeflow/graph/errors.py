"""Exceptions raised by the workflow engine."""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from nodeflow.schemas.run import RunResult


class NodeflowError(Exception):
    """Base class for engine errors."""


class GraphStructureError(NodeflowError, ValueError):
    """The graph definition cannot be run (e.g. no start node)."""


class InvalidStateTransition(NodeflowError):
    """A node state change would break the pending -> running -> terminal order."""


class NodeExecutionError(NodeflowError):
    """A node failed while executing. Fatal for the run."""

    def __init__(self, node_id: str, message: str):
        super().__init__(message)
        self.node_id = node_id
        self.message = message
        # Set by the step debugger: the failed run with its partial state
        self.result: "RunResult | None" = None

    def __str__(self) -> str:
        return f"Node '{self.node_id}' failed: {self.message}"


class NodeTimeoutError(NodeExecutionError):
    """A node did not settle within its timeout."""

    def __init__(self, node_id: str, timeout: float):
        super().__init__(node_id, f"execution timed out after {timeout:g}s")
        self.timeout = timeout
