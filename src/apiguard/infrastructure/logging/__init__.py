"""Logging for apiguard."""

from apiguard.infrastructure.logging.events import StructlogEventSink
from apiguard.infrastructure.logging.setup import EVENTS_LOGGER, configure_logging, get_logger

__all__ = ["EVENTS_LOGGER", "StructlogEventSink", "configure_logging", "get_logger"]
