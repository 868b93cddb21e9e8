"""Domain exceptions for apiguard.

All library exceptions inherit from ApiGuardError. Rate-limit waits are not
errors and have no exception type; they are reported as bounded delays.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from apiguard.domain.value_objects import BreakerSnapshot


class ApiGuardError(Exception):
    """Base exception for all apiguard errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# === Configuration Errors ===


class ConfigurationError(ApiGuardError):
    """Invalid or impossible configuration."""


class LedgerCapacityError(ConfigurationError):
    """Requested more tokens than a ledger entry can ever hold."""

    def __init__(self, owner: str, requested: int, max_tokens: int) -> None:
        self.owner = owner
        self.requested = requested
        self.max_tokens = max_tokens
        super().__init__(
            message=f"Cannot consume {requested} tokens for {owner}: capacity is {max_tokens}",
            details={"owner": owner, "requested": requested, "max_tokens": max_tokens},
        )


# === Provider Errors ===


class ProviderError(ApiGuardError):
    """Base error for failures of the protected external operation."""

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.operation = operation
        self.status_code = status_code
        super().__init__(message, details)


class QuotaExceededError(ProviderError):
    """Provider signalled quota exhaustion. Triggers a cooldown, not a plain retry."""

    def __init__(
        self,
        operation: str | None = None,
        retry_after: float | None = None,
        status_code: int | None = 429,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.retry_after = retry_after
        msg = f"Quota exceeded for {operation or 'operation'}"
        if retry_after is not None:
            msg += f" (retry after {retry_after:.0f}s)"
        super().__init__(
            message=msg,
            operation=operation,
            status_code=status_code,
            details=details,
        )


class TransientProviderError(ProviderError):
    """Retryable provider failure (throttling, timeouts, 5xx)."""

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.retry_after = retry_after
        super().__init__(message, operation, status_code, details)


class PermanentProviderError(ProviderError):
    """Non-retryable provider failure, surfaced per item."""


# === Circuit Breaker Errors ===


class CircuitOpenError(ApiGuardError):
    """Raised when a circuit breaker is open and the call is rejected without running."""

    def __init__(self, service_name: str, snapshot: BreakerSnapshot) -> None:
        self.service_name = service_name
        self.snapshot = snapshot
        self.time_until_retry = snapshot.time_until_retry
        msg = f"Circuit breaker open for {service_name}"
        if self.time_until_retry:
            msg += f" (retry in {self.time_until_retry:.0f}s)"
        super().__init__(msg)


# === Storage Errors ===


class StorageError(ApiGuardError):
    """Durable key-value store operation failed."""


class StorageUnavailableError(StorageError):
    """Store could not be reached. Transient; callers may retry later."""
