"""
Event Bus - in-process fan-out of update lifecycle events

Update runs announce what happened (started, completed, blocked...) here.
Notification delivery, audit persistence and the UI subscribe; the update
pipeline never waits on or fails because of a subscriber.

Events flow: UpdateEventEmitter -> EventBus -> [subscribers]
"""

import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Update lifecycle event types"""
    UPDATE_STARTED = "update_started"
    UPDATE_COMPLETED = "update_completed"
    UPDATE_FAILED = "update_failed"
    UPDATE_SKIPPED = "update_skipped"
    UPDATE_BLOCKED = "update_blocked"  # vulnerability gate said no
    SELF_UPDATE_LAUNCHED = "self_update_launched"


class Event:
    """
    Standard event object passed through the event bus
    """
    def __init__(
        self,
        event_type: EventType,
        scope_type: str,  # 'container', 'system'
        scope_id: str,
        scope_name: str,
        environment_id: Optional[str] = None,
        data: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None
    ):
        self.event_type = event_type
        self.scope_type = scope_type
        self.scope_id = scope_id
        self.scope_name = scope_name
        self.environment_id = environment_id
        self.data = data or {}
        self.timestamp = timestamp or datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'event_type': self.event_type.value if isinstance(self.event_type, EventType) else str(self.event_type),
            'scope_type': self.scope_type,
            'scope_id': self.scope_id,
            'scope_name': self.scope_name,
            'environment_id': self.environment_id,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
        }


EventHandler = Callable[[Event], Awaitable[None]]


class EventBus:
    """
    Usage:
        bus = get_event_bus()
        bus.subscribe(EventType.UPDATE_FAILED, notify_admins)
        await bus.emit(Event(EventType.UPDATE_FAILED, 'container', 'web', 'web',
                             data={'error_message': '...'}))
    """

    def __init__(self):
        self.subscribers: Dict[str, List[EventHandler]] = {}

    def subscribe(self, event_type: EventType, handler: EventHandler):
        key = event_type.value if isinstance(event_type, EventType) else str(event_type)
        self.subscribers.setdefault(key, []).append(handler)
        logger.info(f"Subscribed handler to event type: {key}")

    def unsubscribe(self, event_type: EventType, handler: EventHandler):
        key = event_type.value if isinstance(event_type, EventType) else str(event_type)
        handlers = self.subscribers.get(key, [])
        try:
            handlers.remove(handler)
        except ValueError:
            logger.warning(f"Handler not found in subscribers for event type: {key}")
            return
        if not handlers:
            del self.subscribers[key]

    async def emit(self, event: Event):
        """Deliver to every subscriber; one failing handler doesn't stop the rest."""
        key = event.event_type.value if isinstance(event.event_type, EventType) else str(event.event_type)
        logger.debug(f"EventBus: Emitting {key} for {event.scope_type}:{event.scope_name}")
        for handler in list(self.subscribers.get(key, [])):
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"EventBus: subscriber failed for {key}: {e}", exc_info=True)


_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get or create global event bus instance"""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus
