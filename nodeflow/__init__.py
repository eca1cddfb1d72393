"""
nodeflow - execution engine for workflow graphs of heterogeneous nodes.

Build a GraphSpec, register node types on a NodeTypeRegistry and hand both
to a WorkflowEngine:

    engine = WorkflowEngine(node_registry=NodeTypeRegistry.with_builtins())
    result = await engine.execute(graph, {"question": "..."})
"""

from nodeflow.config import EngineConfig
from nodeflow.graph import (
    CancellationToken,
    ConnectionSpec,
    GraphSpec,
    GraphStructureError,
    GraphValidator,
    NodeExecutionError,
    NodeSpec,
    NodeState,
    NodeTimeoutError,
    NodeTypeRegistry,
    NodeTypeSpec,
    RunContext,
    ValidationResult,
    WorkflowEngine,
)
from nodeflow.runtime import ActiveRunRegistry, EngineEvent, EventBus, EventType
from nodeflow.schemas import CheckpointType, RunResult, RunStatus, StepCheckpoint

__all__ = [
    "WorkflowEngine",
    "EngineConfig",
    "GraphSpec",
    "NodeSpec",
    "ConnectionSpec",
    "NodeTypeRegistry",
    "NodeTypeSpec",
    "RunContext",
    "NodeState",
    "CancellationToken",
    "GraphValidator",
    "ValidationResult",
    "RunResult",
    "RunStatus",
    "StepCheckpoint",
    "CheckpointType",
    "EventBus",
    "EventType",
    "EngineEvent",
    "ActiveRunRegistry",
    "GraphStructureError",
    "NodeExecutionError",
    "NodeTimeoutError",
]
