"""Provider error classification.

Maps whatever a protected call raised onto the apiguard taxonomy:
- QuotaExceededError: provider quota markers in the message
- TransientProviderError: timeouts, connection failures, 408/429/5xx
- PermanentProviderError: other 4xx responses and unrecognised errors

``Retry-After`` is honoured in both its delta-seconds and HTTP-date forms.
"""

from __future__ import annotations

from datetime import UTC, datetime
from email.utils import parsedate_to_datetime

import httpx
import structlog

from apiguard.domain.exceptions import (
    PermanentProviderError,
    ProviderError,
    QuotaExceededError,
    TransientProviderError,
)

logger = structlog.get_logger(__name__)

QUOTA_MARKERS = ("QuotaExceeded", "You exceeded your quota")
TRANSIENT_STATUS_CODES = frozenset({408, 425, 429, 500, 502, 503, 504})


def parse_retry_after(value: str | None, *, now: datetime | None = None) -> float | None:
    """Parse a ``Retry-After`` header value into seconds.

    Args:
        value: Header value, either delta-seconds ("120") or an HTTP date
        now: Reference time for HTTP dates (defaults to current UTC time)

    Returns:
        Non-negative seconds, or None if the value is missing or unparseable
    """
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None

    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        moment = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.debug("retry_after_unparseable", value=value)
        return None
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=UTC)
    now = now or datetime.now(UTC)
    return max(0.0, (moment - now).total_seconds())


def _has_quota_marker(text: str) -> bool:
    return any(marker in text for marker in QUOTA_MARKERS)


def _response_text(response: httpx.Response) -> str:
    try:
        return response.text
    except (httpx.ResponseNotRead, UnicodeDecodeError):
        return ""


def classify_provider_error(error: BaseException, operation: str | None = None) -> ProviderError:
    """Translate ``error`` into a ProviderError subclass.

    Errors that already belong to the taxonomy are returned unchanged.

    Args:
        error: Exception raised by the protected call
        operation: Operation key, attached to the classified error

    Returns:
        QuotaExceededError, TransientProviderError or PermanentProviderError
    """
    if isinstance(error, ProviderError):
        return error

    if isinstance(error, httpx.HTTPStatusError):
        response = error.response
        status_code = response.status_code
        retry_after = parse_retry_after(response.headers.get("retry-after"))
        body = _response_text(response)

        if _has_quota_marker(str(error)) or _has_quota_marker(body):
            return QuotaExceededError(
                operation=operation,
                retry_after=retry_after,
                status_code=status_code,
                details={"url": str(error.request.url)},
            )
        if status_code in TRANSIENT_STATUS_CODES:
            return TransientProviderError(
                f"HTTP {status_code} from provider",
                operation=operation,
                status_code=status_code,
                retry_after=retry_after,
            )
        return PermanentProviderError(
            f"HTTP {status_code} from provider",
            operation=operation,
            status_code=status_code,
        )

    message = str(error)
    if _has_quota_marker(message):
        return QuotaExceededError(operation=operation, status_code=None)

    if isinstance(error, httpx.TimeoutException | httpx.TransportError | TimeoutError | ConnectionError):
        return TransientProviderError(
            f"{type(error).__name__}: {message}" if message else type(error).__name__,
            operation=operation,
        )

    logger.debug(
        "provider_error_unrecognised",
        operation=operation,
        error_type=type(error).__name__,
    )
    return PermanentProviderError(
        f"{type(error).__name__}: {message}" if message else type(error).__name__,
        operation=operation,
    )


__all__ = ["QUOTA_MARKERS", "classify_provider_error", "parse_retry_after"]
