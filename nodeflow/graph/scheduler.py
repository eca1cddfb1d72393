"""
Ready Queue - dependency-counted scheduling for one run.

Each node carries a counter of unmet incoming connections. Completing a
node decrements the counter of every node it feeds. A node enters the FIFO
queue once it is both *activated* (reached over a taken connection, or the
start node) and its counter is zero, so nothing is ever requeued while it
waits for its inputs.
"""

import logging
from collections import deque
from collections.abc import Iterable

from nodeflow.graph.connection_index import ConnectionIndex
from nodeflow.graph.edge import ConnectionSpec, GraphSpec

logger = logging.getLogger(__name__)


class ReadyQueue:
    """Work queue shared by the run loop and the step debugger."""

    def __init__(self, graph: GraphSpec, index: ConnectionIndex):
        self._index = index
        self._unmet: dict[str, int] = {
            node.id: len(index.incoming_for(node.id)) for node in graph.nodes
        }
        self._activated: set[str] = set()
        self._queued: set[str] = set()
        self._executed: set[str] = set()
        self._queue: deque[str] = deque()

    def seed(self, node_id: str) -> None:
        """Activate an entry node."""
        self._activate(node_id)

    def pop(self) -> str | None:
        """Next ready node id, or None once the queue has drained."""
        while self._queue:
            node_id = self._queue.popleft()
            self._queued.discard(node_id)
            if node_id in self._executed:
                continue
            return node_id
        return None

    def complete(self, node_id: str, taken: Iterable[ConnectionSpec]) -> None:
        """
        Record a completed node.

        Every outgoing connection counts as satisfied; only ``taken``
        connections activate their targets, in the order given.
        """
        self._executed.add(node_id)
        for conn in self._index.outgoing_for(node_id):
            target = conn.target_node_id
            self._unmet[target] = self._unmet.get(target, 0) - 1
            if self._unmet[target] == 0 and target in self._activated:
                self._enqueue(target)
        for conn in taken:
            self._activate(conn.target_node_id)

    def blocked(self) -> list[str]:
        """Activated nodes that never became ready."""
        return sorted(
            node_id
            for node_id in self._activated
            if node_id not in self._executed and node_id not in self._queued
        )

    @property
    def executed(self) -> frozenset[str]:
        return frozenset(self._executed)

    def __len__(self) -> int:
        return len(self._queue)

    def _activate(self, node_id: str) -> None:
        if node_id in self._executed:
            return
        self._activated.add(node_id)
        if self._unmet.get(node_id, 0) <= 0:
            self._enqueue(node_id)

    def _enqueue(self, node_id: str) -> None:
        if node_id in self._queued or node_id in self._executed:
            return
        self._queued.add(node_id)
        self._queue.append(node_id)
        logger.debug(f"Node {node_id} ready ({len(self._queue)} queued)")
