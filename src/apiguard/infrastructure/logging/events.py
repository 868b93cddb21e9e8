"""Event sink backed by structlog.

Routes resilience events to the log stream: state changes that signal
degradation are logged as warnings, recoveries and routine events as info.
"""

from __future__ import annotations

from typing import Any

import structlog

from apiguard.application.ports import EventSinkPort
from apiguard.infrastructure.logging.setup import EVENTS_LOGGER

WARNING_EVENTS = frozenset(
    {
        "circuit_breaker_opened",
        "circuit_breaker_reopened",
        "quota_cooldown_entered",
        "quota_daily_limit_reached",
        "batch_partial_failure",
    }
)


class StructlogEventSink(EventSinkPort):
    """Default event sink: one structured log line per event."""

    def __init__(self, logger_name: str = EVENTS_LOGGER) -> None:
        self._logger = structlog.get_logger(logger_name)

    def emit(self, event: str, **fields: Any) -> None:
        if event in WARNING_EVENTS:
            self._logger.warning(event, **fields)
        else:
            self._logger.info(event, **fields)


__all__ = ["WARNING_EVENTS", "StructlogEventSink"]
