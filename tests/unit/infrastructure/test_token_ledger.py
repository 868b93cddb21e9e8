"""Tests for PersistentTokenLedger."""

import asyncio

import pytest

from apiguard.adapters.storage import InMemoryKeyValueStore
from apiguard.domain.entities import LedgerDefaults, LedgerEntry
from apiguard.domain.exceptions import LedgerCapacityError
from apiguard.infrastructure.resilience import PersistentTokenLedger


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class CountingStore(InMemoryKeyValueStore):
    """In-memory store that counts ledger loads."""

    def __init__(self) -> None:
        super().__init__()
        self.loads = 0

    async def load_ledger(self, owner: str) -> LedgerEntry | None:
        self.loads += 1
        return await super().load_ledger(owner)


class YieldingStore(InMemoryKeyValueStore):
    """In-memory store that gives other tasks a turn before every ledger access."""

    async def load_ledger(self, owner: str) -> LedgerEntry | None:
        await asyncio.sleep(0)
        return await super().load_ledger(owner)

    async def set_ledger_max(self, *args, **kwargs) -> LedgerEntry:
        await asyncio.sleep(0)
        return await super().set_ledger_max(*args, **kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store() -> CountingStore:
    return CountingStore()


@pytest.fixture
def ledger(store: CountingStore, clock: FakeClock) -> PersistentTokenLedger:
    return PersistentTokenLedger(
        store,
        defaults=LedgerDefaults(initial_tokens=200, max_tokens=500, tokens_per_minute=22),
        poll_interval=0.01,
        max_wait_slice=0.02,
        clock=clock,
        monotonic=clock,
    )


class TestReads:
    """Tests for balance reads."""

    @pytest.mark.asyncio
    async def test_new_owner_reports_defaults_without_writing(
        self, ledger: PersistentTokenLedger, store: CountingStore
    ) -> None:
        assert await ledger.get_available_tokens("seller-1") == 200
        assert await store.load_ledger("seller-1") is None

    @pytest.mark.asyncio
    async def test_has_tokens(self, ledger: PersistentTokenLedger) -> None:
        assert await ledger.has_tokens("seller-1", 200)
        assert not await ledger.has_tokens("seller-1", 201)

    @pytest.mark.asyncio
    async def test_lazy_refill(self, ledger: PersistentTokenLedger, clock: FakeClock) -> None:
        await ledger.consume_tokens("seller-1", 100)
        clock.advance(60)
        assert await ledger.get_available_tokens("seller-1") == 122

    @pytest.mark.asyncio
    async def test_refill_caps_at_max(self, ledger: PersistentTokenLedger, clock: FakeClock) -> None:
        await ledger.consume_tokens("seller-1", 1)
        clock.advance(3_600)
        assert await ledger.get_available_tokens("seller-1") == 500

    @pytest.mark.asyncio
    async def test_wait_time_for_tokens(self, ledger: PersistentTokenLedger) -> None:
        await ledger.consume_tokens("seller-1", 200)
        assert await ledger.get_wait_time_for_tokens("seller-1", 11) == 30_000
        assert await ledger.get_wait_time_for_tokens("seller-1", 0) == 0

    @pytest.mark.asyncio
    async def test_local_view_is_cached(
        self, ledger: PersistentTokenLedger, store: CountingStore, clock: FakeClock
    ) -> None:
        await ledger.consume_tokens("seller-1", 5)
        loads = store.loads

        await ledger.get_available_tokens("seller-1")
        await ledger.get_available_tokens("seller-1")
        assert store.loads == loads

        clock.advance(31)
        await ledger.get_available_tokens("seller-1")
        assert store.loads == loads + 1

    @pytest.mark.asyncio
    async def test_force_sync_sees_other_writers(
        self, ledger: PersistentTokenLedger, store: CountingStore, clock: FakeClock
    ) -> None:
        await ledger.consume_tokens("seller-1", 10)
        # Another process spends tokens directly in the store
        await store.consume_ledger("seller-1", 50, clock(), ledger.defaults)

        assert await ledger.get_available_tokens("seller-1") == 190
        entry = await ledger.force_sync("seller-1")
        assert entry.whole_tokens == 140

    @pytest.mark.asyncio
    async def test_get_status(self, ledger: PersistentTokenLedger) -> None:
        status = await ledger.get_status("seller-1")
        assert status.owner == "seller-1"
        assert status.available_tokens == 200
        assert status.max_tokens == 500
        assert status.tokens_per_minute == 22


class TestConsume:
    """Tests for consume_tokens."""

    @pytest.mark.asyncio
    async def test_consume_persists(self, ledger: PersistentTokenLedger, store: CountingStore) -> None:
        entry = await ledger.consume_tokens("seller-1", 30)

        assert entry.whole_tokens == 170
        stored = await store.load_ledger("seller-1")
        assert stored is not None
        assert stored.available_tokens == 170

    @pytest.mark.asyncio
    async def test_more_than_capacity_raises(self, ledger: PersistentTokenLedger) -> None:
        with pytest.raises(LedgerCapacityError) as exc_info:
            await ledger.consume_tokens("seller-1", 501)
        assert exc_info.value.max_tokens == 500

    @pytest.mark.asyncio
    async def test_rejects_non_positive_tokens(self, ledger: PersistentTokenLedger) -> None:
        with pytest.raises(ValueError):
            await ledger.consume_tokens("seller-1", 0)

    @pytest.mark.asyncio
    async def test_shortfall_times_out(self, ledger: PersistentTokenLedger) -> None:
        await ledger.consume_tokens("seller-1", 200)
        with pytest.raises(TimeoutError):
            await ledger.consume_tokens("seller-1", 1, timeout=0.1)

    @pytest.mark.asyncio
    async def test_lost_race_does_not_overdraw(
        self, ledger: PersistentTokenLedger, store: CountingStore, clock: FakeClock
    ) -> None:
        """Test that a stale local view cannot drive the stored balance negative."""
        await ledger.consume_tokens("seller-1", 1)
        await store.consume_ledger("seller-1", 194, clock(), ledger.defaults)

        with pytest.raises(TimeoutError):
            await ledger.consume_tokens("seller-1", 10, timeout=0.1)

        stored = await store.load_ledger("seller-1")
        assert stored is not None
        assert stored.available_tokens == 5

    @pytest.mark.asyncio
    async def test_waits_for_refill(self) -> None:
        """Test that a consumer waiting for refill is eventually served."""
        store = InMemoryKeyValueStore()
        ledger = PersistentTokenLedger(
            store,
            defaults=LedgerDefaults(initial_tokens=5, max_tokens=10, tokens_per_minute=600),
            poll_interval=0.01,
            max_wait_slice=0.05,
        )
        await ledger.consume_tokens("seller-1", 5)

        entry = await ledger.consume_tokens("seller-1", 2, timeout=2)

        assert entry.available_tokens >= 0

    @pytest.mark.asyncio
    async def test_concurrent_consumers_never_negative(self) -> None:
        """Test two ledgers sharing a store never overdraw it."""
        store = InMemoryKeyValueStore()
        defaults = LedgerDefaults(initial_tokens=10, max_tokens=10, tokens_per_minute=600)
        first = PersistentTokenLedger(store, defaults=defaults, poll_interval=0.01, max_wait_slice=0.05)
        second = PersistentTokenLedger(store, defaults=defaults, poll_interval=0.01, max_wait_slice=0.05)

        results = await asyncio.gather(
            first.consume_tokens("shared", 8, timeout=3),
            second.consume_tokens("shared", 8, timeout=3),
        )

        assert len(results) == 2
        stored = await store.load_ledger("shared")
        assert stored is not None
        assert 0 <= stored.available_tokens <= 10
        # One of them had to wait for at least 6 tokens of refill
        assert min(r.available_tokens for r in results) >= 0


class TestOperatorActions:
    """Tests for operator actions."""

    @pytest.mark.asyncio
    async def test_update_max_tokens_clamps(
        self, ledger: PersistentTokenLedger, store: CountingStore
    ) -> None:
        await ledger.consume_tokens("seller-1", 1)

        entry = await ledger.update_max_tokens("seller-1", 100)

        assert entry.max_tokens == 100
        assert entry.available_tokens == 100
        stored = await store.load_ledger("seller-1")
        assert stored is not None
        assert stored.max_tokens == 100

    @pytest.mark.asyncio
    async def test_update_max_tokens_keeps_concurrent_consumption(
        self, clock: FakeClock
    ) -> None:
        """Test a capacity change racing with another process's consumption loses nothing."""
        store = YieldingStore()
        defaults = LedgerDefaults(initial_tokens=200, max_tokens=500, tokens_per_minute=22)
        operator = PersistentTokenLedger(store, defaults=defaults, clock=clock, monotonic=clock)
        worker = PersistentTokenLedger(store, defaults=defaults, clock=clock, monotonic=clock)
        await worker.consume_tokens("seller-1", 1)

        await asyncio.gather(
            operator.update_max_tokens("seller-1", 400),
            worker.consume_tokens("seller-1", 150),
        )

        stored = await store.load_ledger("seller-1")
        assert stored is not None
        assert stored.max_tokens == 400
        assert stored.available_tokens == pytest.approx(49.0)

    @pytest.mark.asyncio
    async def test_update_max_tokens_creates_missing_entry(
        self, ledger: PersistentTokenLedger, store: CountingStore
    ) -> None:
        entry = await ledger.update_max_tokens("seller-2", 50)

        assert entry.max_tokens == 50
        assert entry.available_tokens == 50
        assert await store.load_ledger("seller-2") is not None

    @pytest.mark.asyncio
    async def test_update_max_tokens_rejects_zero(self, ledger: PersistentTokenLedger) -> None:
        with pytest.raises(ValueError):
            await ledger.update_max_tokens("seller-1", 0)

    @pytest.mark.asyncio
    async def test_reset_recreates_with_defaults(self, ledger: PersistentTokenLedger) -> None:
        await ledger.consume_tokens("seller-1", 150)

        assert await ledger.reset("seller-1") is True
        assert await ledger.get_available_tokens("seller-1") == 200
        assert await ledger.reset("seller-1") is False
