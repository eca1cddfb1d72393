"""In-memory tracking of the runs an engine currently has in flight."""

import logging
from collections.abc import Iterator
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from nodeflow.graph.context import ExecutionContext

logger = logging.getLogger(__name__)


class ActiveRunRegistry:
    """
    Run id -> ExecutionContext for every run that has started and not finished.

    One registry belongs to one engine. Inserts happen at run start and
    removals in the run's cleanup path, on success, failure and abort alike.
    """

    def __init__(self) -> None:
        self._runs: dict[str, "ExecutionContext"] = {}

    def register(self, context: "ExecutionContext") -> None:
        if context.run_id in self._runs:
            raise ValueError(f"Run '{context.run_id}' is already active")
        self._runs[context.run_id] = context
        logger.debug(f"Run {context.run_id} registered ({len(self._runs)} active)")

    def unregister(self, run_id: str) -> "ExecutionContext | None":
        context = self._runs.pop(run_id, None)
        if context is not None:
            logger.debug(f"Run {run_id} unregistered ({len(self._runs)} active)")
        return context

    def get(self, run_id: str) -> "ExecutionContext | None":
        return self._runs.get(run_id)

    def run_ids(self) -> list[str]:
        return list(self._runs)

    def contexts(self) -> list["ExecutionContext"]:
        """Snapshot of active contexts, safe to iterate while runs finish."""
        return list(self._runs.values())

    def __contains__(self, run_id: object) -> bool:
        return run_id in self._runs

    def __len__(self) -> int:
        return len(self._runs)

    def __iter__(self) -> Iterator[str]:
        return iter(self.run_ids())
