"""
Event bus for step events.

The run-step reconstructor publishes every step it creates and every delta it
routes to a step through this bus; aggregators and host UIs subscribe to the
event classes they care about.
"""

import inspect
import logging
from collections import defaultdict, deque
from typing import Any, Callable, Deque, Dict, List, Optional

logger = logging.getLogger(__name__)

# Subscribing to this name receives every event
ALL_EVENTS = "*"


class EventBus:
    """
    Async event bus keyed by event class name.

    Listeners may be coroutine functions or plain callables. A listener that
    keeps failing is removed after ``max_listener_errors`` errors so one broken
    consumer cannot flood the log for the rest of the run.
    """

    def __init__(self, max_history: Optional[int] = 1000, max_listener_errors: int = 5):
        """
        Initialize the event bus.

        Args:
            max_history: Number of emitted events kept for inspection (None keeps all)
            max_listener_errors: Errors tolerated per listener before it is removed
        """
        self.events: Deque[Any] = deque(maxlen=max_history)
        self.listeners: Dict[str, List[Callable]] = defaultdict(list)
        self._listener_errors: Dict[str, int] = defaultdict(int)
        self._max_listener_errors = max_listener_errors

    async def emit(self, event: Any) -> None:
        """
        Emit an event to all listeners of its class and to wildcard listeners.

        Args:
            event: The event object to emit
        """
        self.events.append(event)
        event_type = type(event).__name__

        for key in (event_type, ALL_EVENTS):
            # Copy: failing listeners are removed while iterating
            for listener in list(self.listeners.get(key, ())):
                try:
                    result = listener(event)
                    if inspect.isawaitable(result):
                        await result
                except Exception as e:
                    listener_id = f"{key}:{id(listener)}"
                    self._listener_errors[listener_id] += 1

                    logger.error(f"Error in event listener for {event_type}: {e}")

                    if self._listener_errors[listener_id] >= self._max_listener_errors:
                        logger.warning(
                            f"Removing failing listener for {key} after {self._max_listener_errors} errors"
                        )
                        self.listeners[key].remove(listener)

    def subscribe(self, event_type: str, listener: Callable) -> None:
        """
        Subscribe to events of a specific type.

        Args:
            event_type: Name of the event class, or ``ALL_EVENTS``
            listener: Callable (sync or async) receiving the event
        """
        if listener not in self.listeners[event_type]:
            self.listeners[event_type].append(listener)
            logger.debug(f"Subscribed listener to {event_type}")

    def unsubscribe(self, event_type: str, listener: Callable) -> None:
        if event_type in self.listeners and listener in self.listeners[event_type]:
            self.listeners[event_type].remove(listener)
            logger.debug(f"Unsubscribed listener from {event_type}")

    def clear_listeners(self, event_type: Optional[str] = None) -> None:
        if event_type:
            self.listeners.pop(event_type, None)
        else:
            self.listeners.clear()
            self._listener_errors.clear()

    def clear_events(self) -> None:
        """Clear the event history."""
        self.events.clear()

    def get_event_count(self, event_type: Optional[str] = None) -> int:
        """
        Get count of events in history.

        Args:
            event_type: Optional event class name to count. If None, counts all.
        """
        if event_type:
            return sum(1 for e in self.events if type(e).__name__ == event_type)
        return len(self.events)

    def get_listener_count(self, event_type: Optional[str] = None) -> int:
        if event_type:
            return len(self.listeners.get(event_type, []))
        return sum(len(listeners) for listeners in self.listeners.values())
