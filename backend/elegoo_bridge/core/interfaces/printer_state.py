# core/interfaces/printer_state.py
from abc import ABC, abstractmethod
from typing import Any


class PrinterStateProvider(ABC):
    """What consumer-facing glue (HTTP routes, push channel) needs from the engine."""

    @abstractmethod
    def get_snapshot(self) -> Any:
        """Returns the current immutable canonical state."""
        ...

    @abstractmethod
    def subscribe(self) -> Any:
        """Returns a Subscription delivering canonical state snapshots."""
        ...

    @abstractmethod
    def is_connected(self) -> bool:
        """True while the device link is open."""
        ...
