"""Application ports (interfaces) for apiguard.

Ports define contracts that adapters must implement.
Following hexagonal architecture (Ports & Adapters pattern).
"""

from apiguard.application.ports.event_sink import EventSinkPort, NullEventSink
from apiguard.application.ports.key_value_store import KeyValueStorePort

__all__ = [
    # Storage
    "KeyValueStorePort",
    # Observability
    "EventSinkPort",
    "NullEventSink",
]
