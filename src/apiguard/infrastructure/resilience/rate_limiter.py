"""Rate limiter implementation using Token Bucket algorithm.

One bucket per operation key, refilled lazily from elapsed time:
- Requests consume one permit each; bursts up to the bucket capacity
- When the bucket is empty, callers queue FIFO per operation key
- A per-key processor releases queued callers as permits accrue, sleeping
  in bounded slices and re-checking instead of one long wait
"""

from __future__ import annotations

import asyncio
import math
import time
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from functools import wraps
from typing import ParamSpec, TypeVar

import structlog

from apiguard.domain.value_objects import PolicySet

logger = structlog.get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

Clock = Callable[[], float]


@dataclass
class TokenBucket:
    """Token bucket for rate limiting.

    Tokens are added at a fixed rate up to a maximum capacity.
    Each request consumes one token.
    """

    capacity: float
    refill_rate: float  # tokens per second
    clock: Clock = field(default=time.monotonic, repr=False)
    tokens: float = field(init=False)
    last_refill: float = field(init=False)

    def __post_init__(self) -> None:
        """Initialize with full bucket."""
        if self.capacity < 1 or self.refill_rate <= 0:
            msg = f"Invalid bucket: capacity={self.capacity}, refill_rate={self.refill_rate}"
            raise ValueError(msg)
        self.tokens = self.capacity
        self.last_refill = self.clock()

    def _refill(self) -> None:
        """Refill tokens based on elapsed time."""
        now = self.clock()
        elapsed = max(0.0, now - self.last_refill)
        self.tokens = min(self.capacity, self.tokens + elapsed * self.refill_rate)
        self.last_refill = now

    @property
    def available(self) -> float:
        """Current token count after refill."""
        self._refill()
        return self.tokens

    def consume(self, tokens: float = 1.0) -> bool:
        """Try to consume tokens.

        Args:
            tokens: Number of tokens to consume

        Returns:
            True if tokens consumed, False if insufficient
        """
        self._refill()
        if self.tokens >= tokens:
            self.tokens -= tokens
            return True
        return False

    def wait_time(self, tokens: float = 1.0) -> float:
        """Calculate wait time until tokens are available.

        Rounded up to whole milliseconds: ceil((tokens - current) / rate * 1000).

        Args:
            tokens: Number of tokens needed

        Returns:
            Seconds to wait (0 if tokens available now)
        """
        self._refill()
        if self.tokens >= tokens:
            return 0.0
        needed = tokens - self.tokens
        return math.ceil(needed / self.refill_rate * 1000) / 1000


@dataclass
class _OperationState:
    """Bucket plus FIFO wait queue of a single operation key."""

    bucket: TokenBucket
    waiters: deque[asyncio.Future[None]] = field(default_factory=deque)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    processor: asyncio.Task[None] | None = None


class TokenBucketLimiter:
    """Per-operation rate limiter for external API calls.

    Never fails on its own, it only delays. Buckets are created on first use
    from the operation's policy (requests_per_second, burst_capacity).

    Usage:
        limiter = TokenBucketLimiter(PolicySet({"getCatalogItem": policy}))

        await limiter.acquire("getCatalogItem")

        @limiter.limit("getCatalogItem")
        async def call_api():
            ...
    """

    def __init__(
        self,
        policies: PolicySet | None = None,
        *,
        max_wait_slice: float = 5.0,
        clock: Clock = time.monotonic,
    ):
        """Initialize rate limiter.

        Args:
            policies: Operation policies (unknown keys use the default policy)
            max_wait_slice: Longest single sleep before re-checking the bucket
            clock: Monotonic time source in seconds
        """
        self._policies = policies or PolicySet()
        self._max_wait_slice = max_wait_slice
        self._clock = clock
        self._states: dict[str, _OperationState] = {}

    def _state(self, operation: str) -> _OperationState:
        state = self._states.get(operation)
        if state is None:
            policy = self._policies.get(operation)
            state = _OperationState(
                bucket=TokenBucket(
                    capacity=float(policy.burst_capacity),
                    refill_rate=policy.requests_per_second,
                    clock=self._clock,
                )
            )
            self._states[operation] = state
            logger.debug(
                "rate_limiter_bucket_created",
                operation=operation,
                rate=policy.requests_per_second,
                capacity=policy.burst_capacity,
            )
        return state

    async def acquire(self, operation: str, *, timeout: float | None = None) -> None:
        """Wait for one permit for ``operation``.

        Args:
            operation: Operation key
            timeout: Maximum wait time in seconds

        Raises:
            TimeoutError: If timeout exceeded while waiting. The abandoned
                slot is skipped without consuming a permit.
        """
        state = self._state(operation)

        async with state.lock:
            if not state.waiters and state.bucket.consume():
                logger.debug("rate_limit_token_consumed", operation=operation)
                return

            waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
            state.waiters.append(waiter)
            self._ensure_processor_running(operation, state)

        if timeout is None:
            await waiter
            return

        try:
            await asyncio.wait_for(waiter, timeout=timeout)
        except TimeoutError:
            logger.warning(
                "rate_limit_timeout",
                operation=operation,
                timeout=timeout,
                queue_size=len(state.waiters),
            )
            raise

    def _ensure_processor_running(self, operation: str, state: _OperationState) -> None:
        """Ensure the queue processor task of ``operation`` is running."""
        if state.processor is None or state.processor.done():
            state.processor = asyncio.create_task(self._process_queue(operation, state))

    async def _process_queue(self, operation: str, state: _OperationState) -> None:
        """Release queued callers in arrival order as tokens become available."""
        while state.waiters:
            async with state.lock:
                while state.waiters and state.waiters[0].done():
                    # Caller timed out or was cancelled
                    state.waiters.popleft()
                if not state.waiters:
                    break

                if state.bucket.consume():
                    state.waiters.popleft().set_result(None)
                    logger.debug(
                        "rate_limit_queued_request_released",
                        operation=operation,
                        remaining_queue=len(state.waiters),
                    )
                    continue

                wait_time = state.bucket.wait_time()

            await asyncio.sleep(min(wait_time, self._max_wait_slice))

    def get_available_tokens(self, operation: str) -> int:
        """Current whole permits for ``operation`` (non-blocking)."""
        return math.floor(self._state(operation).bucket.available)

    def get_wait_time(self, operation: str) -> float:
        """Estimated seconds until a new caller of ``operation`` is served."""
        state = self._state(operation)
        queued = sum(1 for w in state.waiters if not w.done())
        return state.bucket.wait_time(1.0 + queued)

    def limit(self, operation: str) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
        """Decorator to wrap async function with rate limiting.

        Usage:
            @limiter.limit("getItemOffers")
            async def call_api():
                ...
        """

        def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
            @wraps(func)
            async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
                await self.acquire(operation)
                return await func(*args, **kwargs)

            return wrapper

        return decorator

    def get_stats(self, operation: str | None = None) -> dict:
        """Get rate limiter statistics for one operation, or all known operations."""
        if operation is not None:
            return self._operation_stats(operation)
        return {name: self._operation_stats(name) for name in sorted(self._states)}

    def _operation_stats(self, operation: str) -> dict:
        state = self._state(operation)
        available = state.bucket.available
        queue_length = sum(1 for w in state.waiters if not w.done())
        if queue_length:
            status = "queued"
        elif available >= 1:
            status = "ready"
        else:
            status = "waiting"
        return {
            "operation": operation,
            "available_tokens": available,
            "capacity": state.bucket.capacity,
            "refill_rate": state.bucket.refill_rate,
            "queue_length": queue_length,
            "estimated_wait_ms": math.ceil(self.get_wait_time(operation) * 1000),
            "status": status,
        }


__all__ = ["TokenBucket", "TokenBucketLimiter"]
