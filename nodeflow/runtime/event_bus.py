"""
Event Bus - Typed pub/sub for engine-to-host notifications.

Hosts (UIs, loggers, tests) use it to:
- Follow run and node lifecycle events as they happen
- Narrow a subscription to one run or one node
- Look back over a bounded history when debugging

Delivery is synchronous: publish() runs every matching handler, in
subscription order, before it returns. A handler that raises is logged and
skipped; the run that published the event carries on.
"""

import asyncio
import itertools
import logging
from collections import Counter, deque
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any

logger = logging.getLogger(__name__)


class EventType(StrEnum):
    """Events the engine publishes. Values are the wire names hosts see."""

    # Run lifecycle
    RUN_STARTED = "start"
    RUN_COMPLETED = "complete"
    RUN_FAILED = "error"
    RUN_ABORTED = "abort"

    # Node lifecycle
    NODE_STARTED = "node_start"
    NODE_COMPLETED = "node_complete"
    NODE_FAILED = "node_error"


@dataclass
class EngineEvent:
    """One notification from a run."""

    type: EventType
    run_id: str
    node_id: str | None = None
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "type": self.type.value,
            "run_id": self.run_id,
            "node_id": self.node_id,
            "data": self.data,
            "timestamp": self.timestamp.isoformat(),
        }


EventHandler = Callable[[EngineEvent], None]


@dataclass
class Subscription:
    """A handler plus the event types and run/node it is interested in."""

    id: str
    event_types: set[EventType]
    handler: EventHandler
    filter_run: str | None = None
    filter_node: str | None = None

    def matches(self, event: EngineEvent) -> bool:
        return (
            event.type in self.event_types
            and self.filter_run in (None, event.run_id)
            and self.filter_node in (None, event.node_id)
        )


class EventBus:
    """
    Pub/sub bus owned by one engine instance.

    Example:
        bus = EventBus()

        def on_complete(event: EngineEvent) -> None:
            print(f"Run {event.run_id} finished in {event.data['duration_ms']}ms")

        bus.subscribe(event_types=[EventType.RUN_COMPLETED], handler=on_complete)

        engine = WorkflowEngine(node_registry=registry, event_bus=bus)
    """

    def __init__(self, max_history: int = 1000):
        self._subscriptions: dict[str, Subscription] = {}
        self._history: deque[EngineEvent] = deque(maxlen=max_history)
        self._ids = itertools.count(1)

    def subscribe(
        self,
        event_types: Iterable[EventType],
        handler: EventHandler,
        filter_run: str | None = None,
        filter_node: str | None = None,
    ) -> str:
        """
        Register a handler.

        Args:
            event_types: Event types the handler wants
            handler: Called synchronously with each matching event
            filter_run: Restrict to one run id
            filter_node: Restrict to one node id

        Returns:
            Subscription id for unsubscribe()
        """
        sub_id = f"sub_{next(self._ids)}"
        subscription = Subscription(
            id=sub_id,
            event_types=set(event_types),
            handler=handler,
            filter_run=filter_run,
            filter_node=filter_node,
        )
        self._subscriptions[sub_id] = subscription
        logger.debug(f"{sub_id} listening for {sorted(subscription.event_types)}")
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Drop a subscription. Returns False if the id is unknown."""
        removed = self._subscriptions.pop(subscription_id, None)
        if removed is not None:
            logger.debug(f"{subscription_id} unsubscribed")
        return removed is not None

    def publish(self, event: EngineEvent) -> None:
        self._history.append(event)

        # Copy so handlers may (un)subscribe during dispatch
        for subscription in list(self._subscriptions.values()):
            if not subscription.matches(event):
                continue
            try:
                subscription.handler(event)
            except Exception as e:
                logger.error(f"✗ Handler {subscription.id} failed on '{event.type}': {e}")

    # === EMITTERS ===

    def emit_run_started(self, run_id: str, workflow_id: str, workflow_name: str = "") -> None:
        self.publish(
            EngineEvent(
                type=EventType.RUN_STARTED,
                run_id=run_id,
                data={"workflow_id": workflow_id, "workflow_name": workflow_name},
            )
        )

    def emit_run_completed(self, run_id: str, result: dict[str, Any]) -> None:
        """The payload is the run summary (result, outputs, duration)."""
        self.publish(EngineEvent(type=EventType.RUN_COMPLETED, run_id=run_id, data=result))

    def emit_run_failed(
        self,
        run_id: str,
        error: str,
        result: dict[str, Any] | None = None,
        node_id: str | None = None,
    ) -> None:
        data: dict[str, Any] = {"error": error}
        if result is not None:
            data["result"] = result
        self.publish(
            EngineEvent(type=EventType.RUN_FAILED, run_id=run_id, node_id=node_id, data=data)
        )

    def emit_run_aborted(self, run_id: str, result: dict[str, Any] | None = None) -> None:
        self.publish(EngineEvent(type=EventType.RUN_ABORTED, run_id=run_id, data=result or {}))

    def emit_node_started(self, run_id: str, node_id: str, node_type: str) -> None:
        self.publish(
            EngineEvent(
                type=EventType.NODE_STARTED,
                run_id=run_id,
                node_id=node_id,
                data={"node_type": node_type},
            )
        )

    def emit_node_completed(
        self,
        run_id: str,
        node_id: str,
        output: dict[str, Any],
        latency_ms: int,
    ) -> None:
        self.publish(
            EngineEvent(
                type=EventType.NODE_COMPLETED,
                run_id=run_id,
                node_id=node_id,
                data={"output": output, "latency_ms": latency_ms},
            )
        )

    def emit_node_failed(self, run_id: str, node_id: str, error: str) -> None:
        self.publish(
            EngineEvent(
                type=EventType.NODE_FAILED,
                run_id=run_id,
                node_id=node_id,
                data={"error": error},
            )
        )

    # === INSPECTION ===

    def get_history(
        self,
        event_type: EventType | None = None,
        run_id: str | None = None,
        limit: int = 100,
    ) -> list[EngineEvent]:
        """Recorded events, newest first, optionally narrowed by type and run."""
        matching = (
            event
            for event in reversed(self._history)
            if (event_type is None or event.type == event_type)
            and (run_id is None or event.run_id == run_id)
        )
        return list(itertools.islice(matching, limit))

    def get_stats(self) -> dict:
        by_type = Counter(event.type.value for event in self._history)
        return {
            "total_events": len(self._history),
            "subscriptions": len(self._subscriptions),
            "events_by_type": dict(by_type),
        }

    async def wait_for(
        self,
        event_type: EventType,
        run_id: str | None = None,
        node_id: str | None = None,
        timeout: float | None = None,
    ) -> EngineEvent | None:
        """
        Block until a matching event is published.

        Returns:
            The first matching event, or None when ``timeout`` elapses first
        """
        future: asyncio.Future[EngineEvent] = asyncio.get_running_loop().create_future()

        def resolve(event: EngineEvent) -> None:
            if not future.done():
                future.set_result(event)

        sub_id = self.subscribe([event_type], resolve, filter_run=run_id, filter_node=node_id)
        try:
            async with asyncio.timeout(timeout):
                return await future
        except TimeoutError:
            return None
        finally:
            self.unsubscribe(sub_id)
