"""
Event Bus - Centralized event coordination system

This module provides a central event bus that:
1. Receives audit events from the update engine (checker, applier, auto-updater)
2. Writes a human-readable line for each event to the application log
3. Manages event subscribers for extensibility (notifications, UI push, tests)

Events flow: Service → EventBus → [Log, Subscribers]
"""

import logging
from typing import Dict, Any, Optional, List, Callable, Awaitable
from datetime import datetime, timezone
from enum import Enum

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Standard event types in the system"""
    # Update engine run lifecycle
    UPDATER_RUN_STARTED = "updater_run_started"
    UPDATER_RUN_COMPLETED = "updater_run_completed"
    UPDATER_RUN_FAILED = "updater_run_failed"

    # Detection
    UPDATER_CHECK_COMPLETED = "updater_check_completed"
    UPDATER_UPDATE_AVAILABLE = "updater_update_available"

    # Apply steps
    UPDATER_IMAGE_PULLED = "updater_image_pulled"
    UPDATER_IMAGE_PULL_FAILED = "updater_image_pull_failed"
    UPDATER_CONTAINER_STEP = "updater_container_step"
    UPDATER_CONTAINER_UPDATED = "updater_container_updated"
    UPDATER_CONTAINER_FAILED = "updater_container_failed"
    UPDATER_STACK_STEP = "updater_stack_step"
    UPDATER_STACK_UPDATED = "updater_stack_updated"
    UPDATER_STACK_FAILED = "updater_stack_failed"
    UPDATER_ITEM_SKIPPED = "updater_item_skipped"

    # System events
    SYSTEM_STARTUP = "system_startup"
    SYSTEM_SHUTDOWN = "system_shutdown"


class Event:
    """
    Standard event object passed through the event bus
    """
    def __init__(
        self,
        event_type: EventType,
        scope_type: str,  # 'image', 'container', 'stack', 'system'
        scope_id: str,
        scope_name: str,
        data: Optional[Dict[str, Any]] = None,
        timestamp: Optional[datetime] = None
    ):
        self.event_type = event_type
        self.scope_type = scope_type
        self.scope_id = scope_id
        self.scope_name = scope_name
        self.data = data or {}
        self.timestamp = timestamp or datetime.now(timezone.utc)

    @property
    def phase(self) -> Optional[str]:
        return self.data.get('phase')

    def to_dict(self) -> Dict[str, Any]:
        """Convert event to dictionary for logging/processing"""
        return {
            'event_type': self.event_type.value if isinstance(self.event_type, EventType) else str(self.event_type),
            'scope_type': self.scope_type,
            'scope_id': self.scope_id,
            'scope_name': self.scope_name,
            'data': self.data,
            'timestamp': self.timestamp.isoformat(),
        }


class EventBus:
    """
    Centralized event bus for update engine audit events

    Usage:
        bus = get_event_bus()
        await bus.emit(Event(
            event_type=EventType.UPDATER_CONTAINER_STEP,
            scope_type='container',
            scope_id=container_id,
            scope_name=container_name,
            data={'phase': 'container', 'step': 'stop'}
        ))
    """

    def __init__(self):
        self.subscribers: Dict[str, List[Callable[[Event], Awaitable[None]]]] = {}
        # Subscribers registered with subscribe_all() receive every event
        self._wildcard: List[Callable[[Event], Awaitable[None]]] = []
        logger.info("EventBus initialized")

    def subscribe(self, event_type: EventType, handler: Callable[[Event], Awaitable[None]]):
        """
        Subscribe to specific event type

        Args:
            event_type: Type of event to subscribe to
            handler: Async function that handles the event
        """
        event_type_str = event_type.value if isinstance(event_type, EventType) else str(event_type)
        if event_type_str not in self.subscribers:
            self.subscribers[event_type_str] = []
        self.subscribers[event_type_str].append(handler)
        logger.info(f"Subscribed handler to event type: {event_type_str}")

    def subscribe_all(self, handler: Callable[[Event], Awaitable[None]]):
        """Subscribe to every event type"""
        self._wildcard.append(handler)

    def unsubscribe(self, event_type: EventType, handler: Callable[[Event], Awaitable[None]]):
        """
        Unsubscribe from specific event type

        Args:
            event_type: Type of event to unsubscribe from
            handler: Handler function to remove
        """
        event_type_str = event_type.value if isinstance(event_type, EventType) else str(event_type)
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
            logger.debug(f"EventBus: Emitting {event.event_type} for {event.scope_type}:{event.scope_name}")

            title, message = self._generate_event_message(event)
            level = logging.WARNING if event.event_type in _FAILURE_EVENTS else logging.INFO
            logger.log(level, f"[{event.phase or '-'}] {title}: {message}")

            await self._notify_subscribers(event)

        except Exception as e:
            logger.error(f"EventBus: Error processing event {event.event_type}: {e}", exc_info=True)

    async def _notify_subscribers(self, event: Event):
        """Notify all subscribers of this event type"""
        event_type_str = event.event_type.value if isinstance(event.event_type, EventType) else str(event.event_type)
        handlers = list(self.subscribers.get(event_type_str, [])) + list(self._wildcard)

        for handler in handlers:
            try:
                await handler(event)
            except Exception as e:
                logger.error(f"EventBus: Error in subscriber handler: {e}", exc_info=True)

    def _generate_event_message(self, event: Event) -> tuple[str, str]:
        """Generate human-readable title and message for event"""
        data = event.data

        if event.event_type == EventType.UPDATER_RUN_STARTED:
            title = "Update Run Started"
            message = "Dry run" if data.get('dry_run') else "Applying pending updates"

        elif event.event_type == EventType.UPDATER_RUN_COMPLETED:
            title = "Update Run Completed"
            message = (f"checked={data.get('checked', 0)} updated={data.get('updated', 0)} "
                       f"skipped={data.get('skipped', 0)} failed={data.get('failed', 0)}")

        elif event.event_type == EventType.UPDATER_RUN_FAILED:
            title = "Update Run Failed"
            message = data.get('error', 'Unknown error')

        elif event.event_type == EventType.UPDATER_CHECK_COMPLETED:
            title = "Update Check Completed"
            message = f"{data.get('checked', 0)} image(s) checked, {data.get('with_updates', 0)} with updates"

        elif event.event_type == EventType.UPDATER_UPDATE_AVAILABLE:
            title = f"Update Available: {event.scope_name}"
            message = f"Update available: {data.get('current', '?')} → {data.get('latest', '?')}"

        elif event.event_type == EventType.UPDATER_IMAGE_PULLED:
            title = f"Image Pulled: {event.scope_name}"
            message = f"Successfully pulled {data.get('image', '?')}"

        elif event.event_type == EventType.UPDATER_IMAGE_PULL_FAILED:
            title = f"Image Pull Failed: {event.scope_name}"
            message = data.get('error', 'Unknown error')

        elif event.event_type in (EventType.UPDATER_CONTAINER_STEP, EventType.UPDATER_STACK_STEP):
            title = f"{event.scope_type.capitalize()} Step: {event.scope_name}"
            message = f"{data.get('step', '?')} {'ok' if data.get('success', True) else 'failed'}"

        elif event.event_type in (EventType.UPDATER_CONTAINER_UPDATED, EventType.UPDATER_STACK_UPDATED):
            title = f"{event.scope_type.capitalize()} Updated: {event.scope_name}"
            message = f"Updated to {data.get('new_image', '?')}"

        elif event.event_type in (EventType.UPDATER_CONTAINER_FAILED, EventType.UPDATER_STACK_FAILED):
            title = f"{event.scope_type.capitalize()} Update Failed: {event.scope_name}"
            message = data.get('error', 'Unknown error')

        elif event.event_type == EventType.UPDATER_ITEM_SKIPPED:
            title = f"Skipped: {event.scope_name}"
            message = data.get('reason', 'no change required')

        else:
            title = f"{event.event_type.value}: {event.scope_name}"
            message = str(data)

        return title, message


_FAILURE_EVENTS = {
    EventType.UPDATER_RUN_FAILED,
    EventType.UPDATER_IMAGE_PULL_FAILED,
    EventType.UPDATER_CONTAINER_FAILED,
    EventType.UPDATER_STACK_FAILED,
}


# Global singleton instance
_event_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    """Get or create global event bus instance"""
    global _event_bus
    if _event_bus is None:
        _event_bus = EventBus()
    return _event_bus


def reset_event_bus():
    """Drop the global instance (used by tests)"""
    global _event_bus
    _event_bus = None
