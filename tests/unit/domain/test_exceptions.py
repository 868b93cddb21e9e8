"""Unit tests for domain exceptions."""

from apiguard.domain.exceptions import (
    ApiGuardError,
    CircuitOpenError,
    ConfigurationError,
    LedgerCapacityError,
    PermanentProviderError,
    ProviderError,
    QuotaExceededError,
    StorageError,
    StorageUnavailableError,
    TransientProviderError,
)
from apiguard.domain.value_objects import BreakerSnapshot, CircuitState

# === Base Exception Tests ===


def test_apiguard_error_message_only():
    """Test ApiGuardError with message only."""
    # Arrange & Act
    error = ApiGuardError("Test error")

    # Assert
    assert error.message == "Test error"
    assert error.details == {}
    assert str(error) == "Test error"


def test_apiguard_error_with_details():
    """Test ApiGuardError renders details."""
    # Arrange
    details = {"operation": "getCatalogItem", "attempt": 3}

    # Act
    error = ApiGuardError("Call failed", details=details)

    # Assert
    assert error.details == details
    assert "Details: " in str(error)
    assert "getCatalogItem" in str(error)


# === Configuration Errors ===


def test_ledger_capacity_error_fields():
    """Test LedgerCapacityError carries owner, request and capacity."""
    # Arrange & Act
    error = LedgerCapacityError("seller-1", requested=600, max_tokens=500)

    # Assert
    assert isinstance(error, ConfigurationError)
    assert isinstance(error, ApiGuardError)
    assert error.owner == "seller-1"
    assert error.requested == 600
    assert error.max_tokens == 500
    assert "capacity is 500" in str(error)


# === Provider Errors ===


def test_quota_exceeded_error_message_with_retry_after():
    """Test QuotaExceededError mentions the retry delay."""
    # Arrange & Act
    error = QuotaExceededError(operation="getItemOffers", retry_after=60)

    # Assert
    assert isinstance(error, ProviderError)
    assert error.retry_after == 60
    assert error.status_code == 429
    assert error.operation == "getItemOffers"
    assert "retry after 60s" in str(error)


def test_quota_exceeded_error_without_retry_after():
    """Test QuotaExceededError without retry delay."""
    # Arrange & Act
    error = QuotaExceededError()

    # Assert
    assert error.retry_after is None
    assert str(error) == "Quota exceeded for operation"


def test_transient_and_permanent_are_distinct():
    """Test transient and permanent provider errors do not overlap."""
    # Arrange & Act
    transient = TransientProviderError("HTTP 503", operation="op", status_code=503, retry_after=2)
    permanent = PermanentProviderError("HTTP 400", operation="op", status_code=400)

    # Assert
    assert isinstance(transient, ProviderError)
    assert isinstance(permanent, ProviderError)
    assert not isinstance(transient, PermanentProviderError)
    assert not isinstance(permanent, TransientProviderError)
    assert transient.retry_after == 2
    assert permanent.status_code == 400


# === Circuit Breaker Errors ===


def test_circuit_open_error_carries_snapshot():
    """Test CircuitOpenError exposes the breaker snapshot."""
    # Arrange
    snapshot = BreakerSnapshot(
        name="pricing",
        state=CircuitState.OPEN,
        failure_count=3,
        time_until_retry=42.0,
    )

    # Act
    error = CircuitOpenError("pricing", snapshot)

    # Assert
    assert error.service_name == "pricing"
    assert error.snapshot is snapshot
    assert error.time_until_retry == 42.0
    assert "circuit breaker open" in str(error).lower()
    assert "retry in 42s" in str(error)


# === Storage Errors ===


def test_storage_unavailable_is_storage_error():
    """Test StorageUnavailableError inherits from StorageError."""
    # Arrange & Act
    error = StorageUnavailableError("Redis down", details={"error": "refused"})

    # Assert
    assert isinstance(error, StorageError)
    assert isinstance(error, ApiGuardError)
    assert "refused" in str(error)
