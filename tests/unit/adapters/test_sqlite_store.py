"""Tests for SQLiteKeyValueStore."""

import asyncio
from collections.abc import AsyncIterator
from pathlib import Path

import pytest
import pytest_asyncio

from apiguard.adapters.storage import SQLiteKeyValueStore
from apiguard.domain.entities import LedgerDefaults, LedgerEntry
from apiguard.domain.exceptions import StorageUnavailableError

NOW = 1_700_000_000.0


@pytest_asyncio.fixture
async def store(tmp_path: Path) -> AsyncIterator[SQLiteKeyValueStore]:
    store = SQLiteKeyValueStore(tmp_path / "apiguard.db", clock=lambda: NOW)
    yield store
    await store.close()


class TestCache:
    """Tests for cache operations."""

    @pytest.mark.asyncio
    async def test_set_and_get_json(self, store: SQLiteKeyValueStore) -> None:
        await store.set("pricing:B00TEST", {"price": 12.5, "offers": 3})
        assert await store.get("pricing:B00TEST") == {"price": 12.5, "offers": 3}

    @pytest.mark.asyncio
    async def test_missing_key(self, store: SQLiteKeyValueStore) -> None:
        assert await store.get("nope") is None

    @pytest.mark.asyncio
    async def test_expired_value_is_removed(self, tmp_path: Path) -> None:
        now = [NOW]
        store = SQLiteKeyValueStore(tmp_path / "ttl.db", clock=lambda: now[0])
        try:
            await store.set("k", "v", ttl=5)
            now[0] += 5
            assert await store.get("k") is None
            assert await store.delete("k") is False
        finally:
            await store.close()

    @pytest.mark.asyncio
    async def test_clear_prefix(self, store: SQLiteKeyValueStore) -> None:
        await store.set("pricing:a", 1)
        await store.set("pricing:b", 2)
        await store.set("catalog:a", 3)

        assert await store.clear_prefix("pricing:") == 2
        assert await store.get("catalog:a") == 3


class TestLedger:
    """Tests for ledger operations."""

    @pytest.mark.asyncio
    async def test_consume_creates_and_decrements(self, store: SQLiteKeyValueStore) -> None:
        consumed, entry = await store.consume_ledger("seller-1", 10, NOW, LedgerDefaults())

        assert consumed is True
        assert entry.available_tokens == 190
        assert entry.max_tokens == 500
        assert await store.load_ledger("seller-1") == entry

    @pytest.mark.asyncio
    async def test_consume_refuses_shortfall(self, store: SQLiteKeyValueStore) -> None:
        defaults = LedgerDefaults(initial_tokens=5, max_tokens=10)

        consumed, entry = await store.consume_ledger("seller-1", 6, NOW, defaults)

        assert consumed is False
        assert entry.available_tokens == 5

    @pytest.mark.asyncio
    async def test_consume_applies_refill_with_cap(self, store: SQLiteKeyValueStore) -> None:
        defaults = LedgerDefaults(initial_tokens=8, max_tokens=10, tokens_per_minute=60)
        await store.consume_ledger("seller-1", 8, NOW, defaults)

        consumed, entry = await store.consume_ledger("seller-1", 4, NOW + 600, defaults)

        assert consumed is True
        assert entry.available_tokens == pytest.approx(6.0)
        assert entry.last_refill_at == NOW + 600

    @pytest.mark.asyncio
    async def test_concurrent_consumers_never_overdraw(self, store: SQLiteKeyValueStore) -> None:
        defaults = LedgerDefaults(initial_tokens=10, max_tokens=10)

        results = await asyncio.gather(
            *(store.consume_ledger("shared", 3, NOW, defaults) for _ in range(6))
        )

        assert sum(1 for consumed, _ in results if consumed) == 3
        entry = await store.load_ledger("shared")
        assert entry is not None
        assert entry.available_tokens == pytest.approx(1.0)

    @pytest.mark.asyncio
    async def test_two_stores_share_one_file(self, tmp_path: Path) -> None:
        """Test that separate connections see the same balance."""
        path = tmp_path / "shared.db"
        first = SQLiteKeyValueStore(path)
        second = SQLiteKeyValueStore(path)
        defaults = LedgerDefaults(initial_tokens=10, max_tokens=10)
        try:
            await first.consume_ledger("shared", 7, NOW, defaults)
            consumed, entry = await second.consume_ledger("shared", 7, NOW, defaults)
        finally:
            await first.close()
            await second.close()

        assert consumed is False
        assert entry.available_tokens == pytest.approx(3.0)

    @pytest.mark.asyncio
    async def test_save_and_delete(self, store: SQLiteKeyValueStore) -> None:
        entry = LedgerEntry(
            owner="seller-2",
            available_tokens=42.5,
            max_tokens=100,
            tokens_per_minute=10,
            last_refill_at=NOW,
        )

        await store.save_ledger(entry)
        assert await store.load_ledger("seller-2") == entry
        assert await store.delete_ledger("seller-2") is True
        assert await store.load_ledger("seller-2") is None

    @pytest.mark.asyncio
    async def test_set_ledger_max_refills_then_clamps(self, store: SQLiteKeyValueStore) -> None:
        defaults = LedgerDefaults(initial_tokens=200, max_tokens=500, tokens_per_minute=22)
        await store.consume_ledger("seller-1", 150, NOW, defaults)

        entry = await store.set_ledger_max("seller-1", 60, NOW + 60, defaults)

        assert entry.max_tokens == 60
        assert entry.available_tokens == pytest.approx(60.0)
        assert entry.last_refill_at == NOW + 60

    @pytest.mark.asyncio
    async def test_set_ledger_max_keeps_other_connection_consumption(
        self, tmp_path: Path
    ) -> None:
        """Test a capacity change and a consumption from two connections both apply."""
        path = tmp_path / "shared.db"
        operator = SQLiteKeyValueStore(path)
        worker = SQLiteKeyValueStore(path)
        defaults = LedgerDefaults(initial_tokens=199, max_tokens=500, tokens_per_minute=22)
        try:
            await asyncio.gather(
                operator.set_ledger_max("seller-1", 400, NOW, defaults),
                worker.consume_ledger("seller-1", 150, NOW, defaults),
            )
            entry = await operator.load_ledger("seller-1")
        finally:
            await operator.close()
            await worker.close()

        assert entry is not None
        assert entry.max_tokens == 400
        assert entry.available_tokens == pytest.approx(49.0)


class TestUnavailable:
    """Tests for backend failures."""

    @pytest.mark.asyncio
    async def test_unopenable_database(self, tmp_path: Path) -> None:
        store = SQLiteKeyValueStore(tmp_path / "missing" / "dir" / "apiguard.db")

        with pytest.raises(StorageUnavailableError):
            await store.get("k")
