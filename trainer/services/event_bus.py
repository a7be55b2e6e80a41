"""
Event bus for live training sessions.

The orchestrator emits lifecycle events here; the WebSocket channel, the
API layer and tests subscribe. Handlers may be plain functions or
coroutines, and a failing handler never affects the session.
"""
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

logger = logging.getLogger(__name__)


class EventType(str, Enum):
    """Types of session events."""
    STATE_CHANGED = "state_changed"
    TURN_APPENDED = "turn_appended"
    METRICS_UPDATED = "metrics_updated"
    EVALUATION_READY = "evaluation_ready"
    WARNING = "warning"
    INTERIM_TRANSCRIPT = "interim_transcript"


@dataclass
class SessionEvent:
    """One event emitted by a session orchestrator."""
    event_type: EventType
    session_id: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventHandler = Callable[[SessionEvent], Union[None, Awaitable[None]]]


async def call_maybe_async(callback: Optional[Callable], *args) -> Any:
    """Call a sync or async callback and return its result."""
    if callback is None:
        return None
    result = callback(*args)
    if inspect.isawaitable(result):
        result = await result
    return result


class SessionEventBus:
    """Event bus for one session's listeners."""

    def __init__(self):
        self._handlers: Dict[EventType, List[EventHandler]] = {}
        self._global_handlers: List[EventHandler] = []

    def subscribe(self, event_type: EventType, handler: EventHandler) -> None:
        """
        Subscribe to specific event type.

        Args:
            event_type: Type of event to listen for
            handler: Function or coroutine function called with the SessionEvent
        """
        self._handlers.setdefault(EventType(event_type), []).append(handler)
        logger.debug(f"Subscribed handler to {event_type}")

    def subscribe_all(self, handler: EventHandler) -> None:
        """Subscribe to all events."""
        self._global_handlers.append(handler)
        logger.debug("Subscribed global handler")

    def unsubscribe(self, event_type: EventType, handler: EventHandler) -> None:
        handlers = self._handlers.get(EventType(event_type), [])
        try:
            handlers.remove(handler)
            logger.debug(f"Unsubscribed handler from {event_type}")
        except ValueError:
            logger.warning(f"Handler not found for {event_type}")

    def unsubscribe_all(self, handler: EventHandler) -> None:
        if handler in self._global_handlers:
            self._global_handlers.remove(handler)

    async def emit(self, event: SessionEvent) -> None:
        """
        Deliver an event to specific subscribers, then to global ones.
        Handler exceptions are logged and swallowed.
        """
        logger.debug(f"Emitting event: {event.event_type.value} for session {event.session_id}")

        handlers = list(self._handlers.get(event.event_type, [])) + list(self._global_handlers)
        for handler in handlers:
            try:
                await call_maybe_async(handler, event)
            except Exception as e:
                logger.error(f"Error in event handler for {event.event_type.value}: {e}")

    def clear_handlers(self) -> None:
        """Clear all event handlers."""
        self._handlers.clear()
        self._global_handlers.clear()
        logger.debug("Cleared all event handlers")
