"""Resilience components for external API calls.

Rate limiting, quota tracking, circuit breaking and durable token balances.
"""

from apiguard.infrastructure.resilience.circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerRegistry,
)
from apiguard.infrastructure.resilience.classification import (
    classify_provider_error,
    parse_retry_after,
)
from apiguard.infrastructure.resilience.quota_manager import QuotaManager
from apiguard.infrastructure.resilience.rate_limiter import TokenBucket, TokenBucketLimiter
from apiguard.infrastructure.resilience.token_ledger import PersistentTokenLedger

__all__ = [
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "PersistentTokenLedger",
    "QuotaManager",
    "TokenBucket",
    "TokenBucketLimiter",
    "classify_provider_error",
    "parse_retry_after",
]
