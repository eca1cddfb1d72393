"""
Per-run execution state.

An ExecutionContext is created at the start of a run, mutated only by the
run loop and the node implementations it calls, and dropped when the run
ends. Contexts are never shared between runs.
"""

import asyncio
import copy
import time
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from nodeflow.graph.errors import InvalidStateTransition


class NodeState(StrEnum):
    """Lifecycle of a node within one run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


_ALLOWED_TRANSITIONS: dict[NodeState, set[NodeState]] = {
    NodeState.PENDING: {NodeState.RUNNING, NodeState.ERROR},
    NodeState.RUNNING: {NodeState.COMPLETED, NodeState.ERROR},
    NodeState.COMPLETED: set(),
    NodeState.ERROR: set(),
}


class CancelReason(StrEnum):
    """Why a run's cancellation token was tripped."""

    ABORTED = "aborted"
    TIMEOUT = "timeout"


class CancellationToken:
    """
    One-way stop signal for a run.

    cancel() is idempotent and the first reason wins; a tripped token can
    never be reset.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._reason: CancelReason | None = None

    def cancel(self, reason: CancelReason = CancelReason.ABORTED) -> bool:
        """Trip the token. Returns False if it was already tripped."""
        if self._reason is not None:
            return False
        self._reason = reason
        self._event.set()
        return True

    @property
    def is_cancelled(self) -> bool:
        return self._reason is not None

    @property
    def reason(self) -> CancelReason | None:
        return self._reason

    async def wait(self) -> CancelReason | None:
        """Block until the token is tripped."""
        await self._event.wait()
        return self._reason


@dataclass
class ExecutionContext:
    """Everything one run accumulates: outputs, states, shared variables."""

    run_id: str
    workflow_id: str
    variables: dict[str, Any] = field(default_factory=dict)
    node_states: dict[str, NodeState] = field(default_factory=dict)
    node_outputs: dict[str, dict[str, Any]] = field(default_factory=dict)
    node_errors: dict[str, str] = field(default_factory=dict)
    cancel_token: CancellationToken = field(default_factory=CancellationToken)
    started_at: float = field(default_factory=time.monotonic)

    @classmethod
    def create(
        cls,
        run_id: str,
        workflow_id: str,
        node_ids: list[str],
        variables: dict[str, Any] | None = None,
    ) -> "ExecutionContext":
        """Fresh context with every node pending and a private copy of the variables."""
        return cls(
            run_id=run_id,
            workflow_id=workflow_id,
            variables=dict(variables or {}),
            node_states={node_id: NodeState.PENDING for node_id in node_ids},
        )

    def state_of(self, node_id: str) -> NodeState:
        return self.node_states.get(node_id, NodeState.PENDING)

    def _transition(self, node_id: str, new_state: NodeState) -> None:
        current = self.state_of(node_id)
        if new_state not in _ALLOWED_TRANSITIONS[current]:
            raise InvalidStateTransition(
                f"Node '{node_id}' cannot move from {current} to {new_state}"
            )
        self.node_states[node_id] = new_state

    def mark_running(self, node_id: str) -> None:
        self._transition(node_id, NodeState.RUNNING)

    def mark_completed(self, node_id: str, output: dict[str, Any]) -> None:
        if node_id in self.node_outputs:
            raise InvalidStateTransition(f"Output of node '{node_id}' is already recorded")
        self._transition(node_id, NodeState.COMPLETED)
        self.node_outputs[node_id] = output

    def mark_failed(self, node_id: str, error: str) -> None:
        self._transition(node_id, NodeState.ERROR)
        self.node_errors[node_id] = error

    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)

    def snapshot(self) -> tuple[dict[str, dict[str, Any]], dict[str, str]]:
        """Copies of (node_outputs, node_states) safe to hand to callers."""
        outputs = {node_id: dict(output) for node_id, output in self.node_outputs.items()}
        states = {node_id: str(state) for node_id, state in self.node_states.items()}
        return outputs, states

    def variables_snapshot(self) -> dict[str, Any]:
        return copy.copy(self.variables)
