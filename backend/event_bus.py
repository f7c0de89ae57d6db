"""
Event Bus - in-process coordination of update events

The executor emits events as an update moves through its steps; subscribers
(currently the SSE broadcaster in api/sse.py) react to them. Every event is
also written to the log with a human-readable summary.

Events flow: DockerUpdateExecutor -> EventBus -> [log, subscribers]

A failing subscriber is logged and skipped; emit() never raises into the
update path.
"""

import logging
from typing import Dict, Any, Optional, List, Callable, Awaitable
from datetime import datetime, timezone
from enum import Enum

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Standard event types in the system"""
    UPDATE_STARTED = "update_started"
    BACKUP_CREATED = "backup_created"
    UPDATE_COMPLETED = "update_completed"
    UPDATE_FAILED = "update_failed"
    ROLLBACK_COMPLETED = "rollback_completed"

    # Emitted before the orchestrator's own container is stopped
    SELF_UPDATE_STARTING = "self_update_starting"


class Event:
    """
    Standard event object passed through the event bus
    """
    def __init__(
        self,
        event_type: EventType,
        container_id: str,
        container_name: str,
        data: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None
    ):
        self.event_type = event_type
        self.container_id = container_id
        self.container_name = container_name
        self.data = data or {}
        self.timestamp = timestamp or datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for logging/processing"""
        return {
            'event_type': _event_type_key(self.event_type),
            'container_id': self.container_id,
            'container_name': self.container_name,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
        }


EventHandler = Callable[[Event], Awaitable[None]]


def _event_type_key(event_type) -> str:
    return event_type.value if isinstance(event_type, EventType) else str(event_type)


class EventBus:
    """
    Centralized event bus for update events

    Usage:
        bus = get_event_bus()
        bus.subscribe(EventType.SELF_UPDATE_STARTING, handler)
        await bus.emit(Event(
            event_type=EventType.UPDATE_STARTED,
            container_id=container_id,
            container_name=container_name,
            data={'target_image': 'nginx:1.27'}
        ))
    """

    def __init__(self):
        self.subscribers: Dict[str, List[EventHandler]] = {}
        logger.info("EventBus initialized")

    def subscribe(self, event_type: EventType, handler: EventHandler):
        """
        Subscribe to specific event type

        Args:
            event_type: Type of event to subscribe to
            handler: Async function that handles the event
        """
        event_type_str = _event_type_key(event_type)
        self.subscribers.setdefault(event_type_str, []).append(handler)
        logger.info(f"Subscribed handler to event type: {event_type_str}")

    def unsubscribe(self, event_type: EventType, handler: EventHandler):
        event_type_str = _event_type_key(event_type)
        if event_type_str in self.subscribers:
            try:
                self.subscribers[event_type_str].remove(handler)
                if not self.subscribers[event_type_str]:
                    del self.subscribers[event_type_str]
                logger.info(f"Unsubscribed handler from event type: {event_type_str}")
            except ValueError:
                logger.warning(f"Handler not found in subscribers for event type: {event_type_str}")

    async def emit(self, event: Event):
        """
        Emit an event - logs it and notifies subscribers

        Args:
            event: Event object to emit
        """
        try:
            title, message = self._generate_event_message(event)
            logger.info(f"{title} - {message}")

            await self._notify_subscribers(event)

        except Exception as e:
            logger.error(f"EventBus: Error processing event {event.event_type}: {e}", exc_info=True)

    async def _notify_subscribers(self, event: Event):
        """Notify all subscribers of this event type"""
        handlers = list(self.subscribers.get(_event_type_key(event.event_type), []))

        for handler in handlers:
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"EventBus: Error in subscriber handler: {e}", exc_info=True)

    def _generate_event_message(self, event: Event) -> tuple:
        """Generate human-readable title and message for event"""
        if event.event_type == EventType.UPDATE_STARTED:
            title = f"Update Started: {event.container_name}"
            target_image = event.data.get('target_image', '?')
            message = f"Starting container update to {target_image}"

        elif event.event_type == EventType.BACKUP_CREATED:
            title = f"Backup Created: {event.container_name}"
            backup_image = event.data.get('backup_image', '?')
            message = f"Recorded {backup_image} as rollback target"

        elif event.event_type == EventType.UPDATE_COMPLETED:
            title = f"Container Update: {event.container_name}"
            previous = event.data.get('previous_image', '?')
            new = event.data.get('new_image', '?')
            message = f"Container successfully updated from {previous} to {new}"

        elif event.event_type == EventType.UPDATE_FAILED:
            title = f"Container Update Failed: {event.container_name}"
            error = event.data.get('error_message', 'Unknown error')
            message = f"Container update failed: {error}"

        elif event.event_type == EventType.ROLLBACK_COMPLETED:
            title = f"Rollback Completed: {event.container_name}"
            message = f"Rolled back {event.container_name} to previous version"

        elif event.event_type == EventType.SELF_UPDATE_STARTING:
            title = f"Self-Update Starting: {event.container_name}"
            op_id = event.data.get('op_id', '?')
            message = f"Handing over to self-update operation {op_id}"

        else:
            title = f"{_event_type_key(event.event_type)}: {event.container_name}"
            message = str(event.data)

        return title, message


# Global singleton instance
_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get or create global event bus instance"""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus
