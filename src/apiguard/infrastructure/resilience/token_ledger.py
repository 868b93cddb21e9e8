"""Persistent token ledger.

A durable, replenishing token balance per owner (tenant or user), shared by
every process pointed at the same store. Consumption goes through the
store's atomic refill-and-decrement, so concurrent consumers never drive a
balance negative. Reads are served from a short-lived local view of the
stored entry with refill applied on top.
"""

from __future__ import annotations

import asyncio
import math
import time
from collections.abc import Callable

import structlog

from apiguard.application.ports import KeyValueStorePort
from apiguard.domain.entities import LedgerDefaults, LedgerEntry
from apiguard.domain.exceptions import LedgerCapacityError
from apiguard.domain.value_objects import LedgerStatus

logger = structlog.get_logger(__name__)

Clock = Callable[[], float]


class PersistentTokenLedger:
    """Durable token balances backed by a KeyValueStorePort.

    Usage:
        ledger = PersistentTokenLedger(store, defaults=LedgerDefaults())

        if await ledger.has_tokens("seller-42", 10):
            await ledger.consume_tokens("seller-42", 10, timeout=120)
    """

    def __init__(
        self,
        store: KeyValueStorePort,
        *,
        defaults: LedgerDefaults | None = None,
        cache_seconds: float = 30.0,
        poll_interval: float = 1.0,
        max_wait_slice: float = 60.0,
        clock: Clock = time.time,
        monotonic: Clock = time.monotonic,
    ):
        """Initialize ledger.

        Args:
            store: Durable store shared with other processes
            defaults: Values for entries created on first use
            cache_seconds: How long the local view of an entry is trusted
            poll_interval: Minimum sleep between consumption attempts
            max_wait_slice: Longest single sleep while waiting for refill
            clock: Wall clock in epoch seconds (written to the store)
            monotonic: Clock used for local view freshness
        """
        self._store = store
        self._defaults = defaults or LedgerDefaults()
        self._cache_seconds = cache_seconds
        self._poll_interval = poll_interval
        self._max_wait_slice = max_wait_slice
        self._clock = clock
        self._monotonic = monotonic
        self._local: dict[str, tuple[LedgerEntry, float]] = {}

    @property
    def defaults(self) -> LedgerDefaults:
        return self._defaults

    def _remember(self, entry: LedgerEntry) -> None:
        self._local[entry.owner] = (entry, self._monotonic())

    async def _load(self, owner: str, *, force: bool = False) -> LedgerEntry:
        """Current entry of ``owner`` with refill applied up to now.

        Owners without a stored entry report the defaults; the entry itself
        is only created by an atomic consumption.
        """
        cached = self._local.get(owner)
        if (
            cached is not None
            and not force
            and self._monotonic() - cached[1] < self._cache_seconds
        ):
            entry = cached[0]
        else:
            stored = await self._store.load_ledger(owner)
            if stored is None:
                entry = self._defaults.new_entry(owner, self._clock())
                logger.debug("ledger_entry_defaulted", owner=owner)
            else:
                entry = stored
                self._remember(entry)
        return entry.refilled(self._clock())

    async def get_available_tokens(self, owner: str) -> int:
        """Whole tokens ``owner`` can spend right now."""
        return (await self._load(owner)).whole_tokens

    async def has_tokens(self, owner: str, tokens: int) -> bool:
        """Non-binding check that ``owner`` currently holds ``tokens``."""
        return (await self._load(owner)).available_tokens >= tokens

    async def get_wait_time_for_tokens(self, owner: str, tokens: int) -> int:
        """Milliseconds of refill until ``owner`` holds ``tokens`` (0 if already)."""
        entry = await self._load(owner)
        return math.ceil(entry.wait_seconds_for(tokens) * 1000)

    async def consume_tokens(
        self,
        owner: str,
        tokens: int,
        *,
        timeout: float | None = None,
    ) -> LedgerEntry:
        """Consume ``tokens`` from ``owner``, waiting for refill if needed.

        Args:
            owner: Ledger owner
            tokens: Number of tokens to consume (at least 1)
            timeout: Maximum wait time in seconds

        Returns:
            The stored entry after consumption

        Raises:
            ValueError: If tokens is less than 1
            LedgerCapacityError: If tokens exceeds the owner's max_tokens
            TimeoutError: If timeout exceeded while waiting
            StorageUnavailableError: If the store cannot be reached
        """
        if tokens < 1:
            msg = f"tokens must be >= 1, got {tokens}"
            raise ValueError(msg)

        async def _consume() -> LedgerEntry:
            force = False
            while True:
                entry = await self._load(owner, force=force)
                if tokens > entry.max_tokens:
                    raise LedgerCapacityError(owner, tokens, entry.max_tokens)

                if entry.available_tokens >= tokens:
                    consumed, stored = await self._store.consume_ledger(
                        owner, tokens, self._clock(), self._defaults
                    )
                    self._remember(stored)
                    if consumed:
                        logger.debug(
                            "ledger_tokens_consumed",
                            owner=owner,
                            tokens=tokens,
                            remaining=stored.whole_tokens,
                        )
                        return stored
                    # Another consumer got there first
                    logger.debug("ledger_consume_contended", owner=owner, tokens=tokens)
                    entry = stored.refilled(self._clock())
                    if tokens > entry.max_tokens:
                        raise LedgerCapacityError(owner, tokens, entry.max_tokens)

                wait = max(self._poll_interval, entry.wait_seconds_for(tokens))
                wait = min(wait, self._max_wait_slice)
                logger.info(
                    "ledger_waiting_for_tokens",
                    owner=owner,
                    needed=tokens,
                    available=entry.whole_tokens,
                    wait_seconds=round(wait, 3),
                )
                await asyncio.sleep(wait)
                force = True

        if timeout is None:
            return await _consume()

        try:
            return await asyncio.wait_for(_consume(), timeout=timeout)
        except TimeoutError:
            logger.warning("ledger_consume_timeout", owner=owner, tokens=tokens, timeout=timeout)
            raise

    async def get_status(self, owner: str) -> LedgerStatus:
        """Operator view of ``owner``'s balance."""
        return (await self._load(owner)).to_status()

    async def update_max_tokens(self, owner: str, max_tokens: int) -> LedgerEntry:
        """Change an owner's capacity, clamping the balance to it.

        Operator action, applied atomically in the store so that concurrent
        consumptions are kept.
        """
        if max_tokens < 1:
            msg = f"max_tokens must be >= 1, got {max_tokens}"
            raise ValueError(msg)
        updated = await self._store.set_ledger_max(
            owner, max_tokens, self._clock(), self._defaults
        )
        self._remember(updated)
        logger.info(
            "ledger_max_tokens_updated",
            owner=owner,
            max_tokens=max_tokens,
            available=updated.whole_tokens,
        )
        return updated

    async def force_sync(self, owner: str) -> LedgerEntry:
        """Discard the local view and reload ``owner`` from the store."""
        return await self._load(owner, force=True)

    async def reset(self, owner: str) -> bool:
        """Delete ``owner``'s entry; the next use recreates it from defaults."""
        self._local.pop(owner, None)
        removed = await self._store.delete_ledger(owner)
        logger.info("ledger_entry_reset", owner=owner, existed=removed)
        return removed


__all__ = ["PersistentTokenLedger"]
