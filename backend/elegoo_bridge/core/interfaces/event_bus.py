# core/interfaces/event_bus.py
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Any


@dataclass
class Event:
    event_type: str     # e.g. "printer.state_changed", "command.resolved"
    source_module: str  # e.g. "supervisor", "correlator"
    data: dict = field(default_factory=dict)


class EventBus(ABC):
    """Pub/sub between engine components."""

    @abstractmethod
    def publish(self, event: Event) -> None: ...

    @abstractmethod
    def subscribe(self, event_type: str, handler: Callable[[Event], Any]) -> None: ...

    @abstractmethod
    def unsubscribe(self, event_type: str, handler: Callable) -> None: ...
