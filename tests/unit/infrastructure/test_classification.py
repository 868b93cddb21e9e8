"""Tests for provider error classification."""

from datetime import UTC, datetime

import httpx
import pytest

from apiguard.domain.exceptions import (
    PermanentProviderError,
    QuotaExceededError,
    TransientProviderError,
)
from apiguard.infrastructure.resilience import classify_provider_error, parse_retry_after


def make_status_error(
    status_code: int,
    *,
    text: str = "",
    headers: dict[str, str] | None = None,
) -> httpx.HTTPStatusError:
    """Helper to build an httpx status error."""
    request = httpx.Request("GET", "https://api.example.com/items")
    response = httpx.Response(status_code, headers=headers, text=text, request=request)
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


class TestParseRetryAfter:
    """Tests for parse_retry_after."""

    def test_delta_seconds(self) -> None:
        assert parse_retry_after("120") == 120.0

    def test_http_date(self) -> None:
        now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)
        assert parse_retry_after("Thu, 01 Jan 2026 12:01:30 GMT", now=now) == 90.0

    def test_past_http_date_is_zero(self) -> None:
        now = datetime(2026, 1, 1, 12, 0, 0, tzinfo=UTC)
        assert parse_retry_after("Thu, 01 Jan 2026 11:00:00 GMT", now=now) == 0.0

    @pytest.mark.parametrize("value", [None, "", "soon"])
    def test_missing_or_invalid(self, value: str | None) -> None:
        assert parse_retry_after(value) is None


class TestClassifyProviderError:
    """Tests for classify_provider_error."""

    def test_quota_marker_in_body(self) -> None:
        error = make_status_error(
            429,
            text='{"errors": [{"code": "QuotaExceeded"}]}',
            headers={"Retry-After": "60"},
        )

        classified = classify_provider_error(error, "getItemOffers")

        assert isinstance(classified, QuotaExceededError)
        assert classified.retry_after == 60.0
        assert classified.operation == "getItemOffers"

    def test_quota_marker_in_plain_exception(self) -> None:
        classified = classify_provider_error(
            RuntimeError("You exceeded your quota for the requested resource"), "op"
        )
        assert isinstance(classified, QuotaExceededError)
        assert classified.retry_after is None

    def test_throttling_is_transient(self) -> None:
        error = make_status_error(429, headers={"Retry-After": "2"})

        classified = classify_provider_error(error, "op")

        assert isinstance(classified, TransientProviderError)
        assert classified.status_code == 429
        assert classified.retry_after == 2.0

    @pytest.mark.parametrize("status_code", [500, 502, 503, 504])
    def test_server_errors_are_transient(self, status_code: int) -> None:
        classified = classify_provider_error(make_status_error(status_code), "op")
        assert isinstance(classified, TransientProviderError)

    @pytest.mark.parametrize("status_code", [400, 401, 403, 404])
    def test_client_errors_are_permanent(self, status_code: int) -> None:
        classified = classify_provider_error(make_status_error(status_code), "op")
        assert isinstance(classified, PermanentProviderError)
        assert classified.status_code == status_code

    def test_timeouts_are_transient(self) -> None:
        classified = classify_provider_error(httpx.ReadTimeout("read timed out"), "op")
        assert isinstance(classified, TransientProviderError)

    def test_connection_errors_are_transient(self) -> None:
        classified = classify_provider_error(ConnectionResetError("reset by peer"), "op")
        assert isinstance(classified, TransientProviderError)

    def test_unknown_errors_are_permanent(self) -> None:
        classified = classify_provider_error(KeyError("asin"), "op")
        assert isinstance(classified, PermanentProviderError)
        assert "KeyError" in str(classified)

    def test_taxonomy_errors_pass_through(self) -> None:
        original = TransientProviderError("flaky", operation="op")
        assert classify_provider_error(original, "op") is original
