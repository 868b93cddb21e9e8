"""SQLite key-value store.

Implements KeyValueStorePort on aiosqlite for durable single-host
deployments; several processes may share one database file. Ledger
consumption is a conditional UPDATE inside an immediate transaction, so
the refill-and-decrement is atomic across processes.
"""

from __future__ import annotations

import asyncio
import json
import sqlite3
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from pathlib import Path
from typing import TYPE_CHECKING, Any

import aiosqlite
import structlog

from apiguard.application.ports import KeyValueStorePort
from apiguard.domain.entities import LedgerEntry
from apiguard.domain.exceptions import StorageError, StorageUnavailableError

if TYPE_CHECKING:
    from apiguard.domain.entities import LedgerDefaults

logger = structlog.get_logger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS cache_entries (
    key TEXT PRIMARY KEY,
    value TEXT NOT NULL,
    expires_at REAL
);
CREATE TABLE IF NOT EXISTS ledger_entries (
    owner TEXT PRIMARY KEY,
    available_tokens REAL NOT NULL,
    max_tokens INTEGER NOT NULL,
    tokens_per_minute REAL NOT NULL,
    last_refill_at REAL NOT NULL,
    updated_at REAL NOT NULL
);
"""

# Refilled balance as of :now, never above max_tokens
_REFILLED = (
    "MIN(max_tokens, available_tokens"
    " + MAX(0.0, :now - last_refill_at) / 60.0 * tokens_per_minute)"
)

CONSUME_LEDGER_SQL = f"""
UPDATE ledger_entries
SET available_tokens = {_REFILLED} - :tokens,
    last_refill_at = MAX(:now, last_refill_at),
    updated_at = :now
WHERE owner = :owner AND {_REFILLED} >= :tokens
"""

SET_LEDGER_MAX_SQL = f"""
UPDATE ledger_entries
SET available_tokens = MIN(:max_tokens, {_REFILLED}),
    max_tokens = :max_tokens,
    last_refill_at = MAX(:now, last_refill_at),
    updated_at = :now
WHERE owner = :owner
"""

INSERT_LEDGER_SQL = """
INSERT OR IGNORE INTO ledger_entries
    (owner, available_tokens, max_tokens, tokens_per_minute, last_refill_at, updated_at)
VALUES (:owner, :available, :max_tokens, :rate, :now, :now)
"""

SELECT_LEDGER_SQL = """
SELECT owner, available_tokens, max_tokens, tokens_per_minute, last_refill_at
FROM ledger_entries WHERE owner = ?
"""


def _row_to_entry(row: sqlite3.Row | tuple) -> LedgerEntry:
    owner, available, max_tokens, rate, last_refill = row
    return LedgerEntry(
        owner=owner,
        available_tokens=min(float(available), float(max_tokens)),
        max_tokens=int(max_tokens),
        tokens_per_minute=float(rate),
        last_refill_at=float(last_refill),
    )


class SQLiteKeyValueStore(KeyValueStorePort):
    """Durable store in a local SQLite database file."""

    def __init__(
        self,
        path: Path | str,
        *,
        busy_timeout: float = 5.0,
        clock: Callable[[], float] = time.time,
    ):
        """Initialize SQLite store.

        Args:
            path: Database file (":memory:" for a private in-memory database)
            busy_timeout: Seconds to wait for another process's write lock
            clock: Epoch-seconds time source used for TTL expiry
        """
        self._path = str(path)
        self._busy_timeout = busy_timeout
        self._clock = clock
        self._connection: aiosqlite.Connection | None = None
        # One connection per store; transactions on it must not interleave
        self._lock = asyncio.Lock()

    async def _get_connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            try:
                connection = await aiosqlite.connect(
                    self._path,
                    timeout=self._busy_timeout,
                    isolation_level=None,
                )
                if self._path != ":memory:":
                    await connection.execute("PRAGMA journal_mode=WAL")
                await connection.executescript(SCHEMA)
            except sqlite3.Error as e:
                logger.error("sqlite_store_unavailable", path=self._path, error=str(e))
                raise StorageUnavailableError(
                    f"Cannot open SQLite database at {self._path}",
                    details={"error": str(e)},
                ) from e
            self._connection = connection
            logger.info("sqlite_store_opened", path=self._path)
        return self._connection

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None

    @asynccontextmanager
    async def _transaction(self, action: str) -> AsyncIterator[aiosqlite.Connection]:
        """Run statements in one immediate (write-locked) transaction."""
        async with self._lock:
            connection = await self._get_connection()
            try:
                await connection.execute("BEGIN IMMEDIATE")
                try:
                    yield connection
                except BaseException:
                    await connection.execute("ROLLBACK")
                    raise
                await connection.execute("COMMIT")
            except sqlite3.OperationalError as e:
                logger.error("sqlite_store_unavailable", action=action, error=str(e))
                raise StorageUnavailableError(
                    f"SQLite unavailable during {action}",
                    details={"error": str(e)},
                ) from e
            except sqlite3.Error as e:
                logger.error("sqlite_store_error", action=action, error=str(e))
                raise StorageError(f"SQLite error during {action}: {e}") from e

    # === Cache operations ===

    async def get(self, key: str) -> Any | None:
        async with self._transaction("get") as db:
            async with db.execute(
                "SELECT value, expires_at FROM cache_entries WHERE key = ?", (key,)
            ) as cursor:
                row = await cursor.fetchone()
            if row is None:
                return None
            value, expires_at = row
            if expires_at is not None and self._clock() >= expires_at:
                await db.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
                return None
        return json.loads(value)

    async def set(self, key: str, value: Any, *, ttl: int | None = None) -> None:
        payload = json.dumps(value)
        expires_at = self._clock() + ttl if ttl is not None else None
        async with self._transaction("set") as db:
            await db.execute(
                "INSERT OR REPLACE INTO cache_entries (key, value, expires_at) VALUES (?, ?, ?)",
                (key, payload, expires_at),
            )

    async def delete(self, key: str) -> bool:
        async with self._transaction("delete") as db:
            cursor = await db.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
            removed = cursor.rowcount
        return removed > 0

    async def clear_prefix(self, prefix: str) -> int:
        async with self._transaction("clear_prefix") as db:
            cursor = await db.execute(
                "DELETE FROM cache_entries WHERE substr(key, 1, length(?)) = ?",
                (prefix, prefix),
            )
            removed = cursor.rowcount
        logger.debug("sqlite_store_prefix_cleared", prefix=prefix, removed=removed)
        return removed

    # === Ledger operations ===

    async def _insert_default(
        self,
        db: aiosqlite.Connection,
        owner: str,
        now: float,
        defaults: LedgerDefaults,
    ) -> None:
        cursor = await db.execute(
            INSERT_LEDGER_SQL,
            {
                "owner": owner,
                "available": float(defaults.initial_tokens),
                "max_tokens": defaults.max_tokens,
                "rate": defaults.tokens_per_minute,
                "now": now,
            },
        )
        if cursor.rowcount:
            logger.debug("ledger_entry_created", owner=owner, backend="sqlite")

    async def load_ledger(self, owner: str) -> LedgerEntry | None:
        async with self._transaction("load_ledger") as db:
            async with db.execute(SELECT_LEDGER_SQL, (owner,)) as cursor:
                row = await cursor.fetchone()
        return _row_to_entry(row) if row is not None else None

    async def save_ledger(self, entry: LedgerEntry) -> None:
        async with self._transaction("save_ledger") as db:
            await db.execute(
                "INSERT OR REPLACE INTO ledger_entries "
                "(owner, available_tokens, max_tokens, tokens_per_minute, last_refill_at, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (
                    entry.owner,
                    entry.available_tokens,
                    entry.max_tokens,
                    entry.tokens_per_minute,
                    entry.last_refill_at,
                    self._clock(),
                ),
            )

    async def delete_ledger(self, owner: str) -> bool:
        async with self._transaction("delete_ledger") as db:
            cursor = await db.execute("DELETE FROM ledger_entries WHERE owner = ?", (owner,))
            removed = cursor.rowcount
        return removed > 0

    async def consume_ledger(
        self,
        owner: str,
        tokens: int,
        now: float,
        defaults: LedgerDefaults,
    ) -> tuple[bool, LedgerEntry]:
        async with self._transaction("consume_ledger") as db:
            await self._insert_default(db, owner, now, defaults)
            cursor = await db.execute(
                CONSUME_LEDGER_SQL,
                {"owner": owner, "tokens": tokens, "now": now},
            )
            consumed = cursor.rowcount == 1
            async with db.execute(SELECT_LEDGER_SQL, (owner,)) as select:
                row = await select.fetchone()
        return consumed, _row_to_entry(row)

    async def set_ledger_max(
        self,
        owner: str,
        max_tokens: int,
        now: float,
        defaults: LedgerDefaults,
    ) -> LedgerEntry:
        async with self._transaction("set_ledger_max") as db:
            await self._insert_default(db, owner, now, defaults)
            await db.execute(
                SET_LEDGER_MAX_SQL,
                {"owner": owner, "max_tokens": max_tokens, "now": now},
            )
            async with db.execute(SELECT_LEDGER_SQL, (owner,)) as select:
                row = await select.fetchone()
        return _row_to_entry(row)


__all__ = ["SQLiteKeyValueStore"]
