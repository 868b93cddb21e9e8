"""Port interface for the durable key-value store.

The same store backs the result cache and the persistent token ledger.
Implementations live in adapters/storage/.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from apiguard.domain.entities import LedgerDefaults, LedgerEntry


class KeyValueStorePort(ABC):
    """Port interface for durable key-value storage.

    Implementations must handle:
    - TTL expiry for cached values
    - An atomic refill-and-conditional-decrement for ledger entries, safe
      against concurrent writers (including other processes where the
      backend is shared)
    - Translating backend connectivity failures into StorageUnavailableError
    """

    # === Cache operations ===

    @abstractmethod
    async def get(self, key: str) -> Any | None:
        """Fetch a value.

        Args:
            key: Cache key

        Returns:
            Stored value, or None if missing or expired

        Raises:
            StorageUnavailableError: If the backend cannot be reached
        """
        ...

    @abstractmethod
    async def set(self, key: str, value: Any, *, ttl: int | None = None) -> None:
        """Store a JSON-serializable value.

        Args:
            key: Cache key
            value: Value to store
            ttl: Time-to-live in seconds, None for no expiry
        """
        ...

    @abstractmethod
    async def delete(self, key: str) -> bool:
        """Remove a value.

        Returns:
            True if a value was removed
        """
        ...

    @abstractmethod
    async def clear_prefix(self, prefix: str) -> int:
        """Remove every value whose key starts with ``prefix``.

        Returns:
            Number of removed values
        """
        ...

    # === Ledger operations ===

    @abstractmethod
    async def load_ledger(self, owner: str) -> LedgerEntry | None:
        """Read an owner's ledger entry as stored (without refill).

        Returns:
            LedgerEntry, or None if the owner has no entry yet
        """
        ...

    @abstractmethod
    async def save_ledger(self, entry: LedgerEntry) -> None:
        """Unconditionally write an entry, e.g. to seed or restore a balance."""
        ...

    @abstractmethod
    async def delete_ledger(self, owner: str) -> bool:
        """Remove an owner's entry so that it is recreated with defaults.

        Returns:
            True if an entry existed
        """
        ...

    @abstractmethod
    async def consume_ledger(
        self,
        owner: str,
        tokens: int,
        now: float,
        defaults: LedgerDefaults,
    ) -> tuple[bool, LedgerEntry]:
        """Atomically refill and decrement an entry if it holds enough tokens.

        In a single atomic step: create the entry from ``defaults`` if it is
        missing, apply lazy refill up to ``now``, and subtract ``tokens`` only
        if the refilled balance is at least ``tokens``.

        Args:
            owner: Ledger owner
            tokens: Tokens to consume
            now: Epoch seconds supplied by the caller
            defaults: Values for lazily created entries

        Returns:
            (consumed, entry after the operation)
        """
        ...

    @abstractmethod
    async def set_ledger_max(
        self,
        owner: str,
        max_tokens: int,
        now: float,
        defaults: LedgerDefaults,
    ) -> LedgerEntry:
        """Atomically change an entry's capacity, clamping its balance.

        In a single atomic step: create the entry from ``defaults`` if it is
        missing, apply lazy refill up to ``now``, set ``max_tokens`` and cap
        the balance at the new capacity. Consumptions racing with this call
        are never lost.

        Returns:
            Entry after the operation
        """
        ...

    async def close(self) -> None:  # noqa: B027
        """Release backend resources."""


__all__ = ["KeyValueStorePort"]
