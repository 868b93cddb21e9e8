"""In-memory key-value store.

Implements KeyValueStorePort for tests and single-process deployments.
Nothing survives a restart and nothing is shared between processes.
"""

from __future__ import annotations

import asyncio
import copy
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

import structlog

from apiguard.application.ports import KeyValueStorePort

if TYPE_CHECKING:
    from apiguard.domain.entities import LedgerDefaults, LedgerEntry

logger = structlog.get_logger(__name__)


class InMemoryKeyValueStore(KeyValueStorePort):
    """Dictionary-backed store with TTL expiry on read."""

    def __init__(self, *, clock: Callable[[], float] = time.time):
        """Initialize store.

        Args:
            clock: Epoch-seconds time source used for TTL expiry
        """
        self._clock = clock
        self._values: dict[str, tuple[Any, float | None]] = {}
        self._ledgers: dict[str, LedgerEntry] = {}
        self._lock = asyncio.Lock()

    async def get(self, key: str) -> Any | None:
        item = self._values.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and self._clock() >= expires_at:
            self._values.pop(key, None)
            return None
        return copy.deepcopy(value)

    async def set(self, key: str, value: Any, *, ttl: int | None = None) -> None:
        expires_at = self._clock() + ttl if ttl is not None else None
        self._values[key] = (copy.deepcopy(value), expires_at)

    async def delete(self, key: str) -> bool:
        return self._values.pop(key, None) is not None

    async def clear_prefix(self, prefix: str) -> int:
        keys = [key for key in self._values if key.startswith(prefix)]
        for key in keys:
            del self._values[key]
        return len(keys)

    async def load_ledger(self, owner: str) -> LedgerEntry | None:
        return self._ledgers.get(owner)

    async def save_ledger(self, entry: LedgerEntry) -> None:
        self._ledgers[entry.owner] = entry

    async def delete_ledger(self, owner: str) -> bool:
        return self._ledgers.pop(owner, None) is not None

    async def consume_ledger(
        self,
        owner: str,
        tokens: int,
        now: float,
        defaults: LedgerDefaults,
    ) -> tuple[bool, LedgerEntry]:
        async with self._lock:
            entry = self._ledgers.get(owner)
            if entry is None:
                entry = defaults.new_entry(owner, now)
                logger.debug("ledger_entry_created", owner=owner, backend="memory")
            entry = entry.refilled(now)

            consumed = entry.available_tokens >= tokens
            if consumed:
                entry = entry.model_copy(
                    update={"available_tokens": entry.available_tokens - tokens}
                )
            self._ledgers[owner] = entry
            return consumed, entry

    async def set_ledger_max(
        self,
        owner: str,
        max_tokens: int,
        now: float,
        defaults: LedgerDefaults,
    ) -> LedgerEntry:
        async with self._lock:
            entry = self._ledgers.get(owner) or defaults.new_entry(owner, now)
            entry = entry.refilled(now)
            entry = entry.model_copy(
                update={
                    "max_tokens": max_tokens,
                    "available_tokens": min(entry.available_tokens, float(max_tokens)),
                }
            )
            self._ledgers[owner] = entry
            return entry

    def __len__(self) -> int:
        return len(self._values)


__all__ = ["InMemoryKeyValueStore"]
