"""Resilient batch execution use case.

Runs a provider operation over a list of identifiers behind the full
resilience stack:
1. Per-identifier cache lookup
2. Chunking into sub-batches of the operation's batch_size
3. Per sub-batch: ledger tokens, rate-limit permit, quota gate, circuit breaker
4. Failure handling: quota errors wait out the cooldown and retry the same
   sub-batch, transient errors back off exponentially, permanent errors fail
   the items, an open circuit degrades immediately
5. Optional inter-batch delay
6. Caching of provider results
7. Fallback estimates for sub-batches that cannot be served
"""

from __future__ import annotations

import asyncio
import time
from collections.abc import Awaitable, Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, Literal, TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)
from tenacity.wait import wait_base

from apiguard.application.ports import EventSinkPort, NullEventSink
from apiguard.domain.exceptions import (
    ApiGuardError,
    CircuitOpenError,
    PermanentProviderError,
    ProviderError,
    QuotaExceededError,
    TransientProviderError,
)
from apiguard.domain.services import chunk_identifiers, deduplicate_identifiers

if TYPE_CHECKING:
    from apiguard.application.ports import KeyValueStorePort
    from apiguard.domain.value_objects import OperationPolicy, PolicySet
    from apiguard.infrastructure.resilience import (
        CircuitBreakerRegistry,
        PersistentTokenLedger,
        QuotaManager,
        TokenBucketLimiter,
    )

logger = structlog.get_logger(__name__)

T = TypeVar("T")

ItemSource = Literal["cache", "provider", "estimate"]
BatchCall = Callable[[list[str]], Awaitable[Mapping[str, Any]]]
Classifier = Callable[[BaseException, str], ProviderError]


@dataclass(frozen=True)
class BatchItem(Generic[T]):
    """Successful item of a batch, tagged with where its value came from."""

    identifier: str
    value: T
    source: ItemSource

    @property
    def is_estimated(self) -> bool:
        return self.source == "estimate"


@dataclass(frozen=True)
class BatchFailure:
    """Item that could not be served, with the classified error."""

    identifier: str
    error: ApiGuardError


@dataclass(frozen=True)
class BatchStats:
    """Statistics from a batch execution."""

    total: int
    from_cache: int
    from_provider: int
    estimated: int
    failed: int
    sub_batches: int
    retries: int
    quota_waits: int


@dataclass(frozen=True)
class BatchResult(Generic[T]):
    """Outcome of execute_batch: successful items in input order plus failures."""

    operation: str
    successful: list[BatchItem[T]]
    failed: list[BatchFailure]
    stats: BatchStats

    @property
    def is_partial(self) -> bool:
        """True when some items failed or were only estimated."""
        return bool(self.failed) or any(item.is_estimated for item in self.successful)

    @property
    def values(self) -> dict[str, T]:
        return {item.identifier: item.value for item in self.successful}


@dataclass
class _Counters:
    sub_batches: int = 0
    retries: int = 0
    quota_waits: int = 0


@dataclass
class _SubBatchOutcome:
    items: list[BatchItem[Any]] = field(default_factory=list)
    failures: list[BatchFailure] = field(default_factory=list)


class RetryAfterWait(wait_base):
    """Backoff that honours a transient error's ``retry_after`` hint.

    Waits ``max(backoff, retry_after)``; the hint is capped at ``max_delay``.
    """

    def __init__(self, backoff: wait_base, *, max_delay: float) -> None:
        self.backoff = backoff
        self.max_delay = max_delay

    def __call__(self, retry_state: RetryCallState) -> float:
        delay = self.backoff(retry_state)
        outcome = retry_state.outcome
        if outcome is None or not outcome.failed:
            return delay
        error = outcome.exception()
        if isinstance(error, TransientProviderError) and error.retry_after:
            delay = max(delay, min(float(error.retry_after), self.max_delay))
        return delay


def _as_batch_call(func: Callable[[str], Awaitable[Any]]) -> BatchCall:
    """Adapt a single-item call to the batch executor signature."""

    async def batch_call(identifiers: list[str]) -> Mapping[str, Any]:
        return {identifiers[0]: await func(identifiers[0])}

    return batch_call


class ResilientOrchestrator:
    """Executes provider calls in batches under rate limits, quotas and breakers.

    Never raises for per-item failures; those are reported in the result.
    Storage and configuration errors propagate.

    Usage:
        orchestrator = create_resilient_orchestrator(
            policies=policies, limiter=limiter, quota=quota, breakers=breakers,
            cache=store, classify=classify_provider_error,
        )

        result = await orchestrator.execute_batch(
            "getCompetitivePricing", asins, fetch_pricing, fallback=estimate_pricing
        )
        for item in result.successful:
            ...
    """

    def __init__(
        self,
        *,
        policies: PolicySet,
        limiter: TokenBucketLimiter,
        quota: QuotaManager,
        breakers: CircuitBreakerRegistry,
        cache: KeyValueStorePort,
        classify: Classifier,
        ledger: PersistentTokenLedger | None = None,
        event_sink: EventSinkPort | None = None,
        max_quota_wait: float = 300.0,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        """Initialize orchestrator.

        Args:
            policies: Operation policies (batching, retries, caching)
            limiter: Per-operation token bucket limiter
            quota: Daily quota and cooldown tracking
            breakers: Circuit breakers, one per operation
            cache: Store for provider results
            classify: Maps raw call errors onto the provider error taxonomy
            ledger: Durable token balances, used when a ledger owner is given
            event_sink: Receives batch_partial_failure events
            max_quota_wait: Longest total quota wait per sub-batch before degrading
            monotonic: Clock used for the quota wait budget
        """
        self._policies = policies
        self._limiter = limiter
        self._quota = quota
        self._breakers = breakers
        self._cache = cache
        self._classify = classify
        self._ledger = ledger
        self._events = event_sink or NullEventSink()
        self._max_quota_wait = max_quota_wait
        self._monotonic = monotonic

    @staticmethod
    def cache_key(operation: str, identifier: str) -> str:
        return f"{operation}:{identifier}"

    async def execute_batch(
        self,
        operation: str,
        identifiers: Sequence[str],
        call: BatchCall,
        *,
        fallback: BatchCall | None = None,
        ledger_owner: str | None = None,
        tokens_per_item: int = 1,
        skip_cache: bool = False,
    ) -> BatchResult[Any]:
        """Run ``call`` for every identifier, in sub-batches.

        Args:
            operation: Operation key (selects policy, bucket, quota and breaker)
            identifiers: Items to fetch; duplicates are dropped
            call: Provider executor, ``async (identifiers) -> {identifier: value}``
            fallback: Estimator with the same signature, used when a sub-batch
                cannot be served by the provider
            ledger_owner: Consume ledger tokens for this owner before each call
            tokens_per_item: Ledger tokens charged per identifier in a call
            skip_cache: Bypass cache lookup (results are still cached)

        Returns:
            BatchResult with successful items in input order and failures

        Raises:
            StorageUnavailableError: If the cache or ledger store is unreachable
            ConfigurationError: If a sub-batch can never fit the ledger capacity
        """
        if ledger_owner is not None and self._ledger is None:
            msg = "ledger_owner given but orchestrator has no ledger"
            raise ValueError(msg)

        policy = self._policies.get(operation)
        unique = deduplicate_identifiers(identifiers)
        counters = _Counters()
        served: dict[str, BatchItem[Any]] = {}
        failures: dict[str, BatchFailure] = {}

        logger.info("batch_started", operation=operation, count=len(unique))

        caching = policy.cache_ttl_seconds > 0
        pending: list[str] = []
        for identifier in unique:
            cached = None
            if caching and not skip_cache:
                cached = await self._cache.get(self.cache_key(operation, identifier))
            if cached is not None:
                served[identifier] = BatchItem(identifier, cached, "cache")
            else:
                pending.append(identifier)

        if served:
            logger.debug("batch_cache_hits", operation=operation, hits=len(served))

        chunks = chunk_identifiers(pending, policy.batch_size)
        for index, chunk in enumerate(chunks):
            if index > 0 and policy.inter_batch_delay > 0:
                await asyncio.sleep(policy.inter_batch_delay)

            counters.sub_batches += 1
            outcome = await self._run_sub_batch(
                operation,
                policy,
                chunk,
                call,
                fallback=fallback,
                ledger_owner=ledger_owner,
                tokens=tokens_per_item * len(chunk),
                counters=counters,
            )
            for item in outcome.items:
                served[item.identifier] = item
                if caching and item.source == "provider":
                    await self._cache.set(
                        self.cache_key(operation, item.identifier),
                        item.value,
                        ttl=policy.cache_ttl_seconds,
                    )
            for failure in outcome.failures:
                failures[failure.identifier] = failure

        successful = [served[i] for i in unique if i in served]
        failed = [failures[i] for i in unique if i in failures]
        stats = BatchStats(
            total=len(unique),
            from_cache=sum(1 for item in successful if item.source == "cache"),
            from_provider=sum(1 for item in successful if item.source == "provider"),
            estimated=sum(1 for item in successful if item.is_estimated),
            failed=len(failed),
            sub_batches=counters.sub_batches,
            retries=counters.retries,
            quota_waits=counters.quota_waits,
        )
        result: BatchResult[Any] = BatchResult(operation, successful, failed, stats)

        if result.is_partial:
            self._events.emit(
                "batch_partial_failure",
                operation=operation,
                total=stats.total,
                failed=stats.failed,
                estimated=stats.estimated,
            )

        logger.info(
            "batch_complete",
            operation=operation,
            total=stats.total,
            from_cache=stats.from_cache,
            from_provider=stats.from_provider,
            estimated=stats.estimated,
            failed=stats.failed,
        )
        return result

    async def _run_sub_batch(
        self,
        operation: str,
        policy: OperationPolicy,
        chunk: list[str],
        call: BatchCall,
        *,
        fallback: BatchCall | None,
        ledger_owner: str | None,
        tokens: int,
        counters: _Counters,
    ) -> _SubBatchOutcome:
        """Serve one sub-batch, waiting out quota cooldowns within the budget."""
        deadline = self._monotonic() + self._max_quota_wait

        while True:
            status = self._quota.check_quota(operation)
            if not status.available:
                remaining = deadline - self._monotonic()
                if status.wait_time > remaining:
                    logger.warning(
                        "batch_quota_wait_exceeds_budget",
                        operation=operation,
                        wait_seconds=status.wait_time,
                        budget_seconds=max(0.0, remaining),
                    )
                    error = QuotaExceededError(operation=operation, retry_after=status.wait_time)
                    return await self._degrade(operation, chunk, error, fallback)
                counters.quota_waits += 1
                try:
                    await self._quota.wait_for_quota(operation, timeout=max(0.0, remaining))
                except TimeoutError:
                    error = QuotaExceededError(operation=operation, retry_after=status.wait_time)
                    return await self._degrade(operation, chunk, error, fallback)

            try:
                values = await self._call_with_retries(
                    operation, policy, chunk, call, ledger_owner, tokens, counters
                )
            except QuotaExceededError as e:
                self._quota.record_quota_exceeded(operation, e.retry_after)
                continue
            except (CircuitOpenError, TransientProviderError) as e:
                return await self._degrade(operation, chunk, e, fallback)
            except PermanentProviderError as e:
                logger.warning("batch_permanent_failure", operation=operation, error=str(e))
                return _SubBatchOutcome(failures=[BatchFailure(i, e) for i in chunk])

            return self._collect(operation, chunk, values)

    async def _call_with_retries(
        self,
        operation: str,
        policy: OperationPolicy,
        chunk: list[str],
        call: BatchCall,
        ledger_owner: str | None,
        tokens: int,
        counters: _Counters,
    ) -> Mapping[str, Any]:
        """Call the provider, retrying transient errors with exponential backoff."""

        def _before_sleep(retry_state: RetryCallState) -> None:
            counters.retries += 1
            logger.warning(
                "batch_retry_scheduled",
                operation=operation,
                attempt=retry_state.attempt_number,
                max_retries=policy.max_retries,
                wait_seconds=retry_state.next_action.sleep if retry_state.next_action else None,
                error=str(retry_state.outcome.exception()) if retry_state.outcome else None,
            )

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(policy.max_retries + 1),
            wait=RetryAfterWait(
                wait_exponential(
                    multiplier=policy.initial_retry_delay,
                    exp_base=policy.backoff_multiplier,
                    max=policy.max_retry_delay,
                ),
                max_delay=policy.max_retry_delay,
            ),
            retry=retry_if_exception_type(TransientProviderError),
            before_sleep=_before_sleep,
            reraise=True,
        ):
            with attempt:
                return await self._guarded_call(operation, chunk, call, ledger_owner, tokens)

        msg = "retry loop exited without a result"
        raise RuntimeError(msg)  # pragma: no cover

    async def _guarded_call(
        self,
        operation: str,
        chunk: list[str],
        call: BatchCall,
        ledger_owner: str | None,
        tokens: int,
    ) -> Mapping[str, Any]:
        """One provider call behind ledger, limiter, quota accounting and breaker.

        An open breaker rejects before any ledger tokens or permits are spent.
        """
        breaker = self._breakers.get_or_create(operation)
        breaker.raise_if_open()

        if ledger_owner is not None and self._ledger is not None:
            await self._ledger.consume_tokens(ledger_owner, tokens)
        await self._limiter.acquire(operation)

        async def _invoke(identifiers: list[str]) -> Mapping[str, Any]:
            self._quota.record_request(operation)
            try:
                return await call(identifiers)
            except Exception as e:
                classified = self._classify(e, operation)
                if classified is e:
                    raise
                raise classified from e

        logger.debug("batch_provider_call", operation=operation, size=len(chunk))
        return await breaker.execute(_invoke, list(chunk))

    def _collect(
        self,
        operation: str,
        chunk: list[str],
        values: Mapping[str, Any],
    ) -> _SubBatchOutcome:
        outcome = _SubBatchOutcome()
        for identifier in chunk:
            if identifier in values and values[identifier] is not None:
                outcome.items.append(BatchItem(identifier, values[identifier], "provider"))
            else:
                outcome.failures.append(
                    BatchFailure(
                        identifier,
                        PermanentProviderError(
                            f"No result returned for {identifier}", operation=operation
                        ),
                    )
                )
        return outcome

    async def _degrade(
        self,
        operation: str,
        chunk: list[str],
        error: ApiGuardError,
        fallback: BatchCall | None,
    ) -> _SubBatchOutcome:
        """Serve a sub-batch from the fallback estimator, or fail its items."""
        logger.warning(
            "batch_degraded",
            operation=operation,
            size=len(chunk),
            reason=type(error).__name__,
            fallback=fallback is not None,
        )
        if fallback is None:
            return _SubBatchOutcome(failures=[BatchFailure(i, error) for i in chunk])

        try:
            estimates = await fallback(list(chunk))
        except Exception as e:
            logger.error("batch_fallback_failed", operation=operation, error=str(e))
            return _SubBatchOutcome(failures=[BatchFailure(i, error) for i in chunk])

        outcome = _SubBatchOutcome()
        for identifier in chunk:
            if identifier in estimates and estimates[identifier] is not None:
                outcome.items.append(BatchItem(identifier, estimates[identifier], "estimate"))
            else:
                outcome.failures.append(BatchFailure(identifier, error))
        return outcome

    async def execute_one(
        self,
        operation: str,
        identifier: str,
        call: Callable[[str], Awaitable[Any]],
        *,
        fallback: Callable[[str], Awaitable[Any]] | None = None,
        ledger_owner: str | None = None,
        skip_cache: bool = False,
    ) -> Any:
        """Fetch a single item through execute_batch.

        Returns:
            The provider, cached or estimated value

        Raises:
            ApiGuardError: The classified error when no value is available
        """

        result = await self.execute_batch(
            operation,
            [identifier],
            _as_batch_call(call),
            fallback=_as_batch_call(fallback) if fallback is not None else None,
            ledger_owner=ledger_owner,
            skip_cache=skip_cache,
        )
        if result.failed:
            raise result.failed[0].error
        return result.successful[0].value

    def get_status(self) -> dict[str, Any]:
        """Aggregate snapshot of limiter, quota and breaker state."""
        return {
            "rate_limiter": self._limiter.get_stats(),
            "quota": self._quota.get_quota_status(),
            "circuit_breakers": {
                name: snapshot.model_dump(mode="json")
                for name, snapshot in self._breakers.get_states().items()
            },
        }


def create_resilient_orchestrator(
    *,
    policies: PolicySet,
    limiter: TokenBucketLimiter,
    quota: QuotaManager,
    breakers: CircuitBreakerRegistry,
    cache: KeyValueStorePort,
    classify: Classifier,
    ledger: PersistentTokenLedger | None = None,
    event_sink: EventSinkPort | None = None,
    max_quota_wait: float = 300.0,
) -> ResilientOrchestrator:
    """Factory function to create ResilientOrchestrator.

    Args:
        policies: Operation policies
        limiter: Token bucket limiter
        quota: Quota manager
        breakers: Circuit breaker registry
        cache: Result cache store
        classify: Provider error classifier
        ledger: Optional persistent token ledger
        event_sink: Optional event sink
        max_quota_wait: Quota wait budget per sub-batch in seconds

    Returns:
        Configured ResilientOrchestrator
    """
    return ResilientOrchestrator(
        policies=policies,
        limiter=limiter,
        quota=quota,
        breakers=breakers,
        cache=cache,
        classify=classify,
        ledger=ledger,
        event_sink=event_sink,
        max_quota_wait=max_quota_wait,
    )


__all__ = [
    "BatchFailure",
    "BatchItem",
    "BatchResult",
    "BatchStats",
    "ResilientOrchestrator",
    "RetryAfterWait",
    "create_resilient_orchestrator",
]
