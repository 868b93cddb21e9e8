"""Domain value objects for apiguard."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class BreakerSnapshot(BaseModel):
    """Point-in-time view of a circuit breaker.

    Timestamps are readings of the breaker's clock (monotonic seconds by
    default), so only differences between them are meaningful.
    """

    model_config = ConfigDict(frozen=True)

    name: str
    state: CircuitState
    failure_count: Annotated[int, Field(ge=0)] = 0
    success_count: Annotated[int, Field(ge=0)] = 0
    last_failure_at: float | None = None
    next_attempt_at: float | None = None
    half_open_attempts: Annotated[int, Field(ge=0)] = 0
    window_requests: Annotated[int, Field(ge=0)] = 0
    window_failures: Annotated[int, Field(ge=0)] = 0
    time_until_retry: float | None = Field(
        default=None, description="Seconds until an OPEN breaker admits a trial call"
    )


class QuotaStatus(BaseModel):
    """Availability of an operation as reported by the quota manager."""

    model_config = ConfigDict(frozen=True)

    available: bool
    reset_time: datetime | None = None
    wait_time_ms: Annotated[int, Field(ge=0)] = 0
    remaining_quota: int | None = None

    @property
    def wait_time(self) -> float:
        """Wait time in seconds."""
        return self.wait_time_ms / 1000

    def __str__(self) -> str:
        if self.available:
            return "available"
        return f"unavailable for {self.wait_time:.1f}s"


class LedgerStatus(BaseModel):
    """Operator-facing summary of a ledger entry."""

    model_config = ConfigDict(frozen=True)

    owner: str
    available_tokens: Annotated[int, Field(ge=0)]
    max_tokens: Annotated[int, Field(ge=1)]
    tokens_per_minute: float
    next_refill_in_ms: Annotated[int, Field(ge=0)]


from apiguard.domain.value_objects.policy import OperationPolicy, PolicySet

__all__ = [
    # Status snapshots
    "BreakerSnapshot",
    "CircuitState",
    "LedgerStatus",
    "QuotaStatus",
    # Configuration
    "OperationPolicy",
    "PolicySet",
]
