"""Tests for domain entities."""

import pytest
from pydantic import ValidationError

from apiguard.domain.entities import LedgerDefaults, LedgerEntry


def create_entry(
    available: float = 100.0,
    max_tokens: int = 500,
    rate: float = 22.0,
    last_refill_at: float = 1_000.0,
) -> LedgerEntry:
    """Helper to create ledger entries."""
    return LedgerEntry(
        owner="seller-1",
        available_tokens=available,
        max_tokens=max_tokens,
        tokens_per_minute=rate,
        last_refill_at=last_refill_at,
    )


class TestLedgerEntry:
    """Tests for LedgerEntry entity."""

    def test_refill_accrues_per_minute(self) -> None:
        """Test lazy refill adds elapsed_minutes * rate."""
        entry = create_entry(available=100.0, rate=22.0, last_refill_at=1_000.0)

        refilled = entry.refilled(1_000.0 + 120)

        assert refilled.available_tokens == pytest.approx(144.0)
        assert refilled.last_refill_at == 1_120.0

    def test_refill_caps_at_max(self) -> None:
        """Test refill never exceeds max_tokens."""
        entry = create_entry(available=490.0, max_tokens=500)

        refilled = entry.refilled(1_000.0 + 3_600)

        assert refilled.available_tokens == 500.0

    def test_refill_ignores_backwards_clock(self) -> None:
        """Test a clock that went backwards accrues nothing."""
        entry = create_entry(available=50.0, last_refill_at=1_000.0)

        refilled = entry.refilled(900.0)

        assert refilled.available_tokens == 50.0
        assert refilled.last_refill_at == 1_000.0

    def test_whole_tokens_floors(self) -> None:
        """Test fractional balances report whole spendable tokens."""
        assert create_entry(available=9.99).whole_tokens == 9

    def test_wait_seconds_for_shortfall(self) -> None:
        """Test wait time derives from shortfall and rate."""
        entry = create_entry(available=0.0, rate=22.0)
        assert entry.wait_seconds_for(11) == pytest.approx(30.0)
        assert entry.wait_seconds_for(0) == 0.0

    def test_available_cannot_exceed_max(self) -> None:
        """Test the 0 <= available <= max invariant."""
        with pytest.raises(ValidationError):
            create_entry(available=501.0, max_tokens=500)

    def test_available_cannot_be_negative(self) -> None:
        with pytest.raises(ValidationError):
            create_entry(available=-1.0)

    def test_to_status(self) -> None:
        """Test operator summary and next refill estimate."""
        status = create_entry(available=10.5, rate=30.0).to_status()

        assert status.available_tokens == 10
        assert status.max_tokens == 500
        # Half a token at 30/min
        assert status.next_refill_in_ms == 1000

    def test_to_status_full_bucket(self) -> None:
        status = create_entry(available=500.0, max_tokens=500).to_status()
        assert status.next_refill_in_ms == 0


class TestLedgerDefaults:
    """Tests for LedgerDefaults."""

    def test_defaults(self) -> None:
        defaults = LedgerDefaults()
        assert defaults.initial_tokens == 200
        assert defaults.max_tokens == 500
        assert defaults.tokens_per_minute == 22.0

    def test_new_entry(self) -> None:
        entry = LedgerDefaults().new_entry("seller-9", now=5_000.0)
        assert entry.owner == "seller-9"
        assert entry.available_tokens == 200.0
        assert entry.last_refill_at == 5_000.0

    def test_initial_above_max_rejected(self) -> None:
        with pytest.raises(ValidationError):
            LedgerDefaults(initial_tokens=600, max_tokens=500)
