"""Result and checkpoint schemas."""

from nodeflow.schemas.checkpoint import CheckpointType, StepCheckpoint
from nodeflow.schemas.run import RunResult, RunStatus

__all__ = ["RunResult", "RunStatus", "CheckpointType", "StepCheckpoint"]
