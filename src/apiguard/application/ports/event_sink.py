"""Port interface for the structured event sink.

Components report breaker transitions, quota cooldowns and partial batch
failures here. Delivery is a side effect; correctness never depends on it.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any


class EventSinkPort(ABC):
    """Port interface for structured events (logs/metrics)."""

    @abstractmethod
    def emit(self, event: str, **fields: Any) -> None:
        """Record an event.

        Args:
            event: snake_case event name, e.g. "circuit_breaker_opened"
            **fields: Structured context
        """
        ...


class NullEventSink(EventSinkPort):
    """Event sink that drops everything."""

    def emit(self, event: str, **fields: Any) -> None:
        return None


__all__ = ["EventSinkPort", "NullEventSink"]
