"""Graph structures: nodes, connections, validation and the execution engine."""

from nodeflow.graph.builtin_nodes import BUILTIN_NODE_TYPES, register_builtin_nodes
from nodeflow.graph.connection_index import ConnectionIndex
from nodeflow.graph.context import CancellationToken, CancelReason, ExecutionContext, NodeState
from nodeflow.graph.edge import ConnectionSpec, GraphSpec
from nodeflow.graph.errors import (
    GraphStructureError,
    InvalidStateTransition,
    NodeExecutionError,
    NodeflowError,
    NodeTimeoutError,
)
from nodeflow.graph.executor import WorkflowEngine
from nodeflow.graph.node import (
    FINAL_OUTPUT_PORT,
    NodeSpec,
    NodeTypeRegistry,
    NodeTypeSpec,
    RunContext,
)
from nodeflow.graph.scheduler import ReadyQueue
from nodeflow.graph.validator import GraphValidator, ValidationResult

__all__ = [
    # Node
    "NodeSpec",
    "NodeTypeSpec",
    "NodeTypeRegistry",
    "RunContext",
    "FINAL_OUTPUT_PORT",
    "BUILTIN_NODE_TYPES",
    "register_builtin_nodes",
    # Connection
    "ConnectionSpec",
    "GraphSpec",
    "ConnectionIndex",
    # Execution state
    "ExecutionContext",
    "NodeState",
    "CancellationToken",
    "CancelReason",
    "ReadyQueue",
    # Engine
    "WorkflowEngine",
    # Validation
    "GraphValidator",
    "ValidationResult",
    # Errors
    "NodeflowError",
    "GraphStructureError",
    "InvalidStateTransition",
    "NodeExecutionError",
    "NodeTimeoutError",
]
