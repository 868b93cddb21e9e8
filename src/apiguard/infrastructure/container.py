"""Composition root.

Builds the resilience components once from Settings and wires them
together. Components are plain objects held by the container and passed
explicitly to whoever needs them; nothing here is a module-level singleton.
"""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from apiguard.adapters.storage import create_store
from apiguard.application.ports import EventSinkPort, KeyValueStorePort
from apiguard.application.use_cases import ResilientOrchestrator, create_resilient_orchestrator
from apiguard.domain.exceptions import PermanentProviderError, QuotaExceededError
from apiguard.domain.value_objects import PolicySet
from apiguard.infrastructure.config import Settings, get_settings
from apiguard.infrastructure.logging import StructlogEventSink
from apiguard.infrastructure.resilience import (
    CircuitBreakerRegistry,
    PersistentTokenLedger,
    QuotaManager,
    TokenBucketLimiter,
    classify_provider_error,
)

logger = structlog.get_logger(__name__)

# Neither says anything about the provider's health
BREAKER_IGNORED_EXCEPTIONS = (QuotaExceededError, PermanentProviderError)


@dataclass
class ResilienceContainer:
    """Wired resilience components sharing one store and one event sink."""

    settings: Settings
    policies: PolicySet
    store: KeyValueStorePort
    events: EventSinkPort
    limiter: TokenBucketLimiter
    quota: QuotaManager
    breakers: CircuitBreakerRegistry
    ledger: PersistentTokenLedger
    orchestrator: ResilientOrchestrator

    async def close(self) -> None:
        """Release the store's connections."""
        await self.store.close()


def build_container(
    settings: Settings | None = None,
    *,
    store: KeyValueStorePort | None = None,
    event_sink: EventSinkPort | None = None,
) -> ResilienceContainer:
    """Build every component from settings.

    Args:
        settings: Application settings (defaults to get_settings())
        store: Override the configured store (for testing)
        event_sink: Override the structlog event sink

    Returns:
        ResilienceContainer
    """
    settings = settings or get_settings()
    policies = settings.policy_set()
    store = store or create_store(settings)
    events = event_sink or StructlogEventSink()

    limiter = TokenBucketLimiter(policies, max_wait_slice=settings.max_wait_slice_seconds)
    quota = QuotaManager(
        policies,
        event_sink=events,
        max_wait_slice=settings.max_wait_slice_seconds,
    )
    breakers = CircuitBreakerRegistry(
        policies,
        ignored_exceptions=BREAKER_IGNORED_EXCEPTIONS,
        event_sink=events,
    )
    ledger = PersistentTokenLedger(
        store,
        defaults=settings.ledger_defaults,
        cache_seconds=settings.ledger_cache_seconds,
        poll_interval=settings.ledger_poll_interval_seconds,
    )
    orchestrator = create_resilient_orchestrator(
        policies=policies,
        limiter=limiter,
        quota=quota,
        breakers=breakers,
        cache=store,
        classify=classify_provider_error,
        ledger=ledger,
        event_sink=events,
        max_quota_wait=settings.max_quota_wait_seconds,
    )

    logger.debug(
        "resilience_container_built",
        store_backend=settings.store_backend,
        operations=policies.operations(),
    )

    return ResilienceContainer(
        settings=settings,
        policies=policies,
        store=store,
        events=events,
        limiter=limiter,
        quota=quota,
        breakers=breakers,
        ledger=ledger,
        orchestrator=orchestrator,
    )


__all__ = ["BREAKER_IGNORED_EXCEPTIONS", "ResilienceContainer", "build_container"]
