"""Runtime plumbing shared by engine instances: events and active-run tracking."""

from nodeflow.runtime.event_bus import EngineEvent, EventBus, EventHandler, EventType, Subscription
from nodeflow.runtime.run_registry import ActiveRunRegistry

__all__ = [
    "EventBus",
    "EventType",
    "EngineEvent",
    "EventHandler",
    "Subscription",
    "ActiveRunRegistry",
]
