"""Per-operation resilience policy.

One OperationPolicy configures the token bucket, quota manager, circuit
breaker and retry/batching behaviour for a single provider operation.
"""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from typing import Annotated

from pydantic import BaseModel, ConfigDict, Field, model_validator


class OperationPolicy(BaseModel):
    """Value object holding the full configuration surface of one operation.

    Durations keep the unit in their name (``_ms`` / ``_seconds``); the
    properties without a suffix return seconds as float for use with asyncio.
    """

    model_config = ConfigDict(frozen=True)

    # === Token bucket ===
    requests_per_second: Annotated[float, Field(gt=0, description="Steady refill rate")] = 1.0
    burst_capacity: Annotated[int, Field(ge=1, description="Maximum stored permits")] = 1

    # === Retry ===
    max_retries: Annotated[int, Field(ge=0)] = 3
    initial_retry_delay_ms: Annotated[int, Field(ge=0)] = 1_000
    max_retry_delay_ms: Annotated[int, Field(ge=0)] = 60_000
    backoff_multiplier: Annotated[float, Field(ge=1.0)] = 2.0

    # === Quota ===
    daily_quota: Annotated[int, Field(ge=1)] | None = None
    default_retry_after_seconds: Annotated[float, Field(gt=0)] = 3_600.0

    # === Circuit breaker ===
    failure_threshold: Annotated[int, Field(ge=1)] = 5
    reset_timeout_ms: Annotated[int, Field(ge=0)] = 60_000
    half_open_max_attempts: Annotated[int, Field(ge=1)] = 1
    monitoring_period_ms: Annotated[int, Field(gt=0)] = 60_000
    volume_threshold: Annotated[int, Field(ge=1)] = 1

    # === Batching / caching ===
    batch_size: Annotated[int, Field(ge=1)] = 10
    inter_batch_delay_ms: Annotated[int, Field(ge=0)] = 0
    cache_ttl_seconds: Annotated[int, Field(ge=0, description="0 disables caching")] = 3_600

    @model_validator(mode="after")
    def check_retry_bounds(self) -> OperationPolicy:
        """Reject a max retry delay below the initial delay."""
        if self.max_retry_delay_ms < self.initial_retry_delay_ms:
            msg = (
                f"max_retry_delay_ms ({self.max_retry_delay_ms}) must be >= "
                f"initial_retry_delay_ms ({self.initial_retry_delay_ms})"
            )
            raise ValueError(msg)
        return self

    @property
    def initial_retry_delay(self) -> float:
        return self.initial_retry_delay_ms / 1000

    @property
    def max_retry_delay(self) -> float:
        return self.max_retry_delay_ms / 1000

    @property
    def reset_timeout(self) -> float:
        return self.reset_timeout_ms / 1000

    @property
    def monitoring_period(self) -> float:
        return self.monitoring_period_ms / 1000

    @property
    def inter_batch_delay(self) -> float:
        return self.inter_batch_delay_ms / 1000

    def backoff_delay(self, attempt: int) -> float:
        """Delay in seconds before retry number ``attempt`` (0-based).

        ``min(max_delay, initial_delay * backoff_multiplier ** attempt)``
        """
        delay = self.initial_retry_delay * (self.backoff_multiplier**attempt)
        return min(self.max_retry_delay, delay)


class PolicySet:
    """Named operation policies with a fallback for unknown operations.

    Usage:
        policies = PolicySet({"getCatalogItem": OperationPolicy(requests_per_second=2)})
        policies.get("getCatalogItem").burst_capacity
    """

    def __init__(
        self,
        policies: Mapping[str, OperationPolicy] | None = None,
        *,
        default: OperationPolicy | None = None,
    ) -> None:
        self._policies: dict[str, OperationPolicy] = dict(policies or {})
        self.default = default or OperationPolicy()

    def get(self, operation: str) -> OperationPolicy:
        """Return the policy for ``operation``, or the default policy."""
        return self._policies.get(operation, self.default)

    def register(self, operation: str, policy: OperationPolicy) -> None:
        self._policies[operation] = policy

    def operations(self) -> list[str]:
        return sorted(self._policies)

    def __contains__(self, operation: object) -> bool:
        return operation in self._policies

    def __iter__(self) -> Iterator[str]:
        return iter(self.operations())

    def __len__(self) -> int:
        return len(self._policies)


__all__ = ["OperationPolicy", "PolicySet"]
