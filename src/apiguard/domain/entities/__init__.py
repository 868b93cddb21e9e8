"""Domain entities for apiguard."""

from __future__ import annotations

import math
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, model_validator

from apiguard.domain.value_objects import LedgerStatus


class LedgerEntry(BaseModel):
    """Durable, replenishing token balance of one owner.

    Refill is lazy: nothing is written while time passes, the balance is
    recomputed from ``last_refill_at`` whenever the entry is read. Timestamps
    are epoch seconds so that entries written by different processes agree.
    """

    model_config = ConfigDict(frozen=True)

    owner: str = Field(..., min_length=1, description="Tenant or user owning the balance")
    available_tokens: Annotated[float, Field(ge=0.0)]
    max_tokens: Annotated[int, Field(ge=1)]
    tokens_per_minute: Annotated[float, Field(gt=0.0)]
    last_refill_at: float = Field(..., description="Epoch seconds of the last refill")

    @model_validator(mode="after")
    def check_balance_within_capacity(self) -> LedgerEntry:
        """Enforce 0 <= available_tokens <= max_tokens."""
        if self.available_tokens > self.max_tokens:
            msg = f"available_tokens ({self.available_tokens}) exceeds max_tokens ({self.max_tokens})"
            raise ValueError(msg)
        return self

    def refilled(self, now: float) -> LedgerEntry:
        """Return the entry with tokens accrued up to ``now``.

        ``min(max_tokens, available + elapsed_minutes * tokens_per_minute)``
        A clock that went backwards accrues nothing.
        """
        elapsed_minutes = max(0.0, now - self.last_refill_at) / 60
        available = min(
            float(self.max_tokens),
            self.available_tokens + elapsed_minutes * self.tokens_per_minute,
        )
        return self.model_copy(
            update={"available_tokens": available, "last_refill_at": max(now, self.last_refill_at)}
        )

    @property
    def whole_tokens(self) -> int:
        """Tokens that can be spent right now."""
        return math.floor(self.available_tokens)

    def wait_seconds_for(self, tokens: int) -> float:
        """Seconds of refill needed before ``tokens`` are available (0 if already)."""
        shortfall = tokens - self.available_tokens
        if shortfall <= 0:
            return 0.0
        return shortfall / self.tokens_per_minute * 60

    def to_status(self) -> LedgerStatus:
        """Summarize for operators; the next refill is the next whole token."""
        if self.available_tokens >= self.max_tokens:
            next_refill_ms = 0
        else:
            fraction = self.available_tokens - math.floor(self.available_tokens)
            next_refill_ms = math.ceil((1 - fraction) / self.tokens_per_minute * 60_000)
        return LedgerStatus(
            owner=self.owner,
            available_tokens=self.whole_tokens,
            max_tokens=self.max_tokens,
            tokens_per_minute=self.tokens_per_minute,
            next_refill_in_ms=next_refill_ms,
        )


class LedgerDefaults(BaseModel):
    """Values used when an owner's ledger entry is created lazily."""

    model_config = ConfigDict(frozen=True)

    initial_tokens: Annotated[int, Field(ge=0)] = 200
    max_tokens: Annotated[int, Field(ge=1)] = 500
    tokens_per_minute: Annotated[float, Field(gt=0.0)] = 22.0

    @model_validator(mode="after")
    def check_initial_within_capacity(self) -> LedgerDefaults:
        if self.initial_tokens > self.max_tokens:
            msg = f"initial_tokens ({self.initial_tokens}) exceeds max_tokens ({self.max_tokens})"
            raise ValueError(msg)
        return self

    def new_entry(self, owner: str, now: float) -> LedgerEntry:
        return LedgerEntry(
            owner=owner,
            available_tokens=float(self.initial_tokens),
            max_tokens=self.max_tokens,
            tokens_per_minute=self.tokens_per_minute,
            last_refill_at=now,
        )


__all__ = ["LedgerDefaults", "LedgerEntry"]
