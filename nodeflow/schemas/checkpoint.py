"""
Checkpoint Schema - Pause points yielded by the step debugger.

For every executed node the debugger yields a BEFORE_EXECUTE checkpoint
(state so far), then an AFTER_EXECUTE checkpoint (with the node's output),
and finally one COMPLETE checkpoint carrying the aggregate result.
"""

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field

from nodeflow.graph.node import NodeSpec
from nodeflow.schemas.run import RunResult


class CheckpointType(StrEnum):
    BEFORE_EXECUTE = "before_execute"
    AFTER_EXECUTE = "after_execute"
    COMPLETE = "complete"


class StepCheckpoint(BaseModel):
    """A single pause point in a step-debug run."""

    type: CheckpointType
    run_id: str

    node_id: str | None = None
    node: NodeSpec | None = None
    output: dict[str, Any] | None = None  # AFTER_EXECUTE only

    # State snapshots at checkpoint time
    node_outputs: dict[str, dict[str, Any]] = Field(default_factory=dict)
    node_states: dict[str, str] = Field(default_factory=dict)

    result: RunResult | None = None  # COMPLETE only

    def describe(self) -> str:
        if self.type == CheckpointType.COMPLETE:
            return "complete"
        return f"{self.type.value}: {self.node_id}"
