"""Event delivery for stream and daemon notifications."""

from .bus import WILDCARD, Event, EventBus, event_bus

__all__ = ["Event", "EventBus", "WILDCARD", "event_bus"]
