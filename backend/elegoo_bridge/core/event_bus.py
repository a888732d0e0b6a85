# core/event_bus.py — InMemoryEventBus implementation
#
# Synchronous in-process pub/sub. Each PrinterEngine owns its own bus instance;
# there is no process-wide bus.

import logging
import threading
from collections import defaultdict
from typing import Callable, Any

from elegoo_bridge.core.interfaces.event_bus import EventBus, Event

log = logging.getLogger(__name__)


class InMemoryEventBus(EventBus):
    """
    Synchronous in-process event bus.

    Handlers are called in registration order on the publishing thread.
    Exceptions in one handler do not prevent subsequent handlers from running.
    """

    def __init__(self):
        # event_type -> list of callables
        self._handlers: dict[str, list[Callable[[Event], Any]]] = defaultdict(list)
        # wildcard handlers subscribed to "*" receive every event
        self._wildcard_handlers: list[Callable[[Event], Any]] = []
        self._lock = threading.Lock()

    def publish(self, event: Event) -> None:
        """Dispatch an event to all registered handlers for its type, then wildcards."""
        with self._lock:
            handlers = list(self._handlers.get(event.event_type, []))
            wildcards = list(self._wildcard_handlers)

        for handler in handlers + wildcards:
            try:
                handler(event)
            except Exception as e:
                log.error(
                    f"Event handler {handler!r} raised for event "
                    f"'{event.event_type}': {e}",
                    exc_info=True,
                )

    def subscribe(self, event_type: str, handler: Callable[[Event], Any]) -> None:
        """
        Register a handler for an event type.

        Use event_type="*" to receive all events (wildcard).
        """
        with self._lock:
            if event_type == "*":
                if handler not in self._wildcard_handlers:
                    self._wildcard_handlers.append(handler)
            elif handler not in self._handlers[event_type]:
                self._handlers[event_type].append(handler)

    def unsubscribe(self, event_type: str, handler: Callable) -> None:
        """Remove a previously registered handler."""
        with self._lock:
            handlers = self._wildcard_handlers if event_type == "*" else self._handlers.get(event_type, [])
            try:
                handlers.remove(handler)
            except ValueError:
                pass
