"""
Run Schema - The outcome of one workflow run.

A RunResult is always well-formed, whether the run completed, failed,
was aborted or ran out of time. Failed runs keep the per-node outputs and
states gathered up to the failure point for diagnosis.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class RunStatus(StrEnum):
    """Terminal status of a run."""

    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"
    TIMED_OUT = "timed_out"


class RunResult(BaseModel):
    """
    Returned by WorkflowEngine.execute().

    ``result`` is the final output of the graph's end node; ``error`` is set
    for every non-completed status.
    """

    run_id: str
    workflow_id: str
    status: RunStatus
    success: bool

    result: Any = None
    error: str | None = None
    failed_node: str | None = None

    node_outputs: dict[str, dict[str, Any]] = Field(default_factory=dict)
    node_states: dict[str, str] = Field(default_factory=dict)
    node_errors: dict[str, str] = Field(default_factory=dict)
    blocked_nodes: list[str] = Field(
        default_factory=list,
        description="Nodes reached but never ready (their inputs never all completed)",
    )
    variables: dict[str, Any] = Field(default_factory=dict)

    duration_ms: int = 0

    model_config = {"extra": "allow"}

    @property
    def aborted(self) -> bool:
        return self.status == RunStatus.ABORTED

    def summary(self) -> dict[str, Any]:
        """Compact form used in event payloads."""
        return {
            "run_id": self.run_id,
            "status": self.status.value,
            "success": self.success,
            "result": self.result,
            "error": self.error,
            "node_outputs": self.node_outputs,
            "duration_ms": self.duration_ms,
        }
