"""Key-value store adapters and the backend factory."""

from __future__ import annotations

from typing import TYPE_CHECKING

from apiguard.adapters.storage.memory_store import InMemoryKeyValueStore
from apiguard.adapters.storage.redis_store import RedisKeyValueStore
from apiguard.adapters.storage.sqlite_store import SQLiteKeyValueStore
from apiguard.domain.exceptions import ConfigurationError

if TYPE_CHECKING:
    from apiguard.application.ports import KeyValueStorePort
    from apiguard.infrastructure.config import Settings


def create_store(settings: Settings) -> KeyValueStorePort:
    """Build the store selected by ``settings.store_backend``."""
    if settings.store_backend == "memory":
        return InMemoryKeyValueStore()
    if settings.store_backend == "redis":
        return RedisKeyValueStore(
            settings.redis_url.get_secret_value(),
            namespace=settings.cache_namespace,
        )
    if settings.store_backend == "sqlite":
        return SQLiteKeyValueStore(settings.sqlite_path)
    msg = f"Unknown store backend: {settings.store_backend}"
    raise ConfigurationError(msg)


__all__ = [
    "InMemoryKeyValueStore",
    "RedisKeyValueStore",
    "SQLiteKeyValueStore",
    "create_store",
]
