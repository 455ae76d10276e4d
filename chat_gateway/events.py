"""In-process event bus for gateway lifecycle events."""
import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pydantic import BaseModel, Field

logger = logging.getLogger("ChatGateway.Events")


class GatewayEvent(str, Enum):
    CONNECTED = "connection.opened"
    DISCONNECTED = "connection.closed"
    AUTHENTICATED = "session.authenticated"
    AUTH_FAILED = "session.auth_failed"
    CONVERSATION_CREATED = "conversation.created"
    MESSAGE_APPENDED = "message.appended"
    REQUEST_FAILED = "request.failed"


class BusEvent(BaseModel):
    event: GatewayEvent
    payload: Dict[str, Any] = Field(default_factory=dict)
    seq: int
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class EventEmitter:
    """Async event emitter with listener registry and bounded history."""

    def __init__(self, max_history: int = 1000):
        self._listeners: Dict[GatewayEvent, List[Callable]] = defaultdict(list)
        self._seq_counter = 0
        self._event_history: List[BusEvent] = []
        self._max_history = max_history

    def on(self, event: GatewayEvent, handler: Callable) -> None:
        """Register a listener for an event."""
        if handler not in self._listeners[event]:
            self._listeners[event].append(handler)
            logger.debug(f"Registered handler for event: {event.value}")

    def off(self, event: GatewayEvent, handler: Callable) -> None:
        """Unregister a listener."""
        if handler in self._listeners[event]:
            self._listeners[event].remove(handler)
            logger.debug(f"Unregistered handler for event: {event.value}")

    async def emit(self, event: GatewayEvent, payload: Dict[str, Any]) -> BusEvent:
        """Emit event to all listeners. Listener failures are logged, never raised."""
        self._seq_counter += 1
        bus_event = BusEvent(event=event, payload=payload, seq=self._seq_counter)

        self._event_history.append(bus_event)
        if len(self._event_history) > self._max_history:
            self._event_history = self._event_history[-self._max_history:]

        handlers = list(self._listeners.get(event, []))
        if not handlers:
            return bus_event

        tasks = []
        for handler in handlers:
            try:
                if asyncio.iscoroutinefunction(handler):
                    tasks.append(handler(bus_event))
                else:
                    handler(bus_event)
            except Exception as e:
                logger.error(f"Error in event handler for {event.value}: {e}")

        if tasks:
            results = await asyncio.gather(*tasks, return_exceptions=True)
            for result in results:
                if isinstance(result, Exception):
                    logger.error(f"Error in event handler for {event.value}: {result}")
        return bus_event

    def get_history(self, event: Optional[GatewayEvent] = None, limit: int = 100) -> List[BusEvent]:
        """Return event history, optionally filtered by event type."""
        if event:
            filtered = [e for e in self._event_history if e.event == event]
            return filtered[-limit:]
        return self._event_history[-limit:]

    def clear_listeners(self, event: Optional[GatewayEvent] = None) -> None:
        if event:
            self._listeners[event].clear()
        else:
            self._listeners.clear()
