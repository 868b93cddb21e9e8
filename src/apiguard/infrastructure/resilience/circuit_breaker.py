"""Circuit Breaker pattern implementation.

Provides fault tolerance for external API calls following the pattern:
- CLOSED: Normal operation, requests flow to the API
- OPEN: After enough failures within the monitoring window (and enough
  traffic to be representative), calls fail fast with CircuitOpenError
- HALF-OPEN: First call after the reset timeout is a trial; a success
  closes the circuit, a failure reopens it

Failures are counted over a true sliding window of request outcomes.
"""

from __future__ import annotations

import asyncio
import contextvars
import time
from collections import deque
from collections.abc import Awaitable, Callable
from functools import wraps
from typing import ParamSpec, TypeVar

import structlog

from apiguard.application.ports import EventSinkPort, NullEventSink
from apiguard.domain.exceptions import CircuitOpenError
from apiguard.domain.value_objects import (
    BreakerSnapshot,
    CircuitState,
    OperationPolicy,
    PolicySet,
)

logger = structlog.get_logger(__name__)

P = ParamSpec("P")
T = TypeVar("T")

Clock = Callable[[], float]


class CircuitBreaker:
    """Circuit breaker for external service calls.

    Usage:
        breaker = CircuitBreaker("catalog_api", OperationPolicy(failure_threshold=5))

        result = await breaker.execute(call_catalog_api, asin)

        @breaker
        async def call_catalog_api():
            ...

        # Or manually:
        async with breaker:
            result = await call_catalog_api()
    """

    def __init__(
        self,
        name: str,
        policy: OperationPolicy | None = None,
        *,
        ignored_exceptions: tuple[type[BaseException], ...] = (),
        event_sink: EventSinkPort | None = None,
        clock: Clock = time.monotonic,
    ):
        """Initialize circuit breaker.

        Args:
            name: Dependency name for logging and error messages
            policy: Thresholds and timeouts (failure_threshold, volume_threshold,
                reset_timeout_ms, half_open_max_attempts, monitoring_period_ms)
            ignored_exceptions: Errors that propagate unchanged but are not
                counted as failures
            event_sink: Receives state transition events
            clock: Monotonic time source in seconds
        """
        policy = policy or OperationPolicy()
        self.name = name
        self.failure_threshold = policy.failure_threshold
        self.volume_threshold = policy.volume_threshold
        self.reset_timeout = policy.reset_timeout
        self.half_open_max_attempts = policy.half_open_max_attempts
        self.monitoring_period = policy.monitoring_period
        self.ignored_exceptions = ignored_exceptions

        self._events = event_sink or NullEventSink()
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_at: float | None = None
        self._next_attempt_at: float | None = None
        self._half_open_attempts = 0
        self._half_open_in_flight = 0
        # (timestamp, failed) of requests inside the monitoring window
        self._outcomes: deque[tuple[float, bool]] = deque()
        self._lock = asyncio.Lock()
        self._trial: contextvars.ContextVar[bool] = contextvars.ContextVar(
            f"circuit_breaker_trial_{name}", default=False
        )

    @property
    def state(self) -> CircuitState:
        """Current circuit state. OPEN only turns HALF_OPEN when a call is attempted."""
        return self._state

    @property
    def is_closed(self) -> bool:
        """Check if circuit is closed (normal operation)."""
        return self._state == CircuitState.CLOSED

    @property
    def is_open(self) -> bool:
        """Check if circuit is open (rejecting requests)."""
        return self._state == CircuitState.OPEN

    def _prune(self, now: float) -> None:
        cutoff = now - self.monitoring_period
        while self._outcomes and self._outcomes[0][0] <= cutoff:
            self._outcomes.popleft()

    def _window_failures(self) -> int:
        return sum(1 for _, failed in self._outcomes if failed)

    def _time_until_retry(self, now: float) -> float | None:
        """Seconds remaining until an OPEN circuit admits a trial call."""
        if self._state != CircuitState.OPEN or self._next_attempt_at is None:
            return None
        return max(0.0, self._next_attempt_at - now)

    def snapshot(self) -> BreakerSnapshot:
        """Point-in-time view of the breaker."""
        now = self._clock()
        self._prune(now)
        return BreakerSnapshot(
            name=self.name,
            state=self._state,
            failure_count=self._failure_count,
            success_count=self._success_count,
            last_failure_at=self._last_failure_at,
            next_attempt_at=self._next_attempt_at,
            half_open_attempts=self._half_open_attempts,
            window_requests=len(self._outcomes),
            window_failures=self._window_failures(),
            time_until_retry=self._time_until_retry(now),
        )

    # === Transitions (call with lock held) ===

    def _transition_to_open(self, now: float, *, reason: str) -> None:
        previous = self._state
        self._state = CircuitState.OPEN
        self._next_attempt_at = now + self.reset_timeout
        self._half_open_in_flight = 0
        event = (
            "circuit_breaker_reopened"
            if previous == CircuitState.HALF_OPEN
            else "circuit_breaker_opened"
        )
        logger.warning(
            event,
            service=self.name,
            reason=reason,
            failure_count=self._failure_count,
            window_failures=self._window_failures(),
            retry_in=self.reset_timeout,
        )
        self._events.emit(
            event,
            service=self.name,
            reason=reason,
            failure_count=self._failure_count,
            retry_in=self.reset_timeout,
        )

    def _transition_to_half_open(self) -> None:
        self._state = CircuitState.HALF_OPEN
        self._half_open_attempts = 0
        self._half_open_in_flight = 0
        logger.info("circuit_breaker_half_open", service=self.name)
        self._events.emit("circuit_breaker_half_open", service=self.name)

    def _transition_to_closed(self) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        # Failures from before the trip must not count against the recovered circuit
        self._outcomes.clear()
        self._half_open_attempts = 0
        self._half_open_in_flight = 0
        self._next_attempt_at = None
        logger.info("circuit_breaker_closed", service=self.name, reason="successful_test_call")
        self._events.emit("circuit_breaker_closed", service=self.name)

    # === Call bookkeeping ===

    async def _before_call(self) -> bool:
        """Admit or reject a call. Returns True when the call is a half-open trial."""
        async with self._lock:
            now = self._clock()
            self._prune(now)

            if self._state == CircuitState.OPEN:
                if self._next_attempt_at is not None and now >= self._next_attempt_at:
                    self._transition_to_half_open()
                else:
                    raise CircuitOpenError(self.name, self.snapshot())

            if self._state == CircuitState.HALF_OPEN:
                if self._half_open_attempts >= self.half_open_max_attempts:
                    if self._half_open_in_flight == 0:
                        self._transition_to_open(now, reason="half_open_attempts_exhausted")
                    raise CircuitOpenError(self.name, self.snapshot())
                self._half_open_attempts += 1
                self._half_open_in_flight += 1
                return True

            return False

    async def _record_success(self, trial: bool) -> None:
        """Record successful call, closing a half-open circuit."""
        async with self._lock:
            now = self._clock()
            self._outcomes.append((now, False))
            self._success_count += 1
            if trial:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
            if self._state == CircuitState.HALF_OPEN:
                self._transition_to_closed()

    async def _record_failure(self, error: BaseException, trial: bool) -> None:
        """Record failed call, potentially opening circuit."""
        async with self._lock:
            now = self._clock()
            self._prune(now)
            self._outcomes.append((now, True))
            self._failure_count += 1
            self._last_failure_at = now
            if trial:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)

            if self._state == CircuitState.HALF_OPEN:
                self._transition_to_open(now, reason=f"trial_failed: {error!s}"[:200])
            elif self._state == CircuitState.CLOSED and self._should_open():
                self._transition_to_open(now, reason=f"failure_threshold: {error!s}"[:200])

    async def _record_neutral(self, trial: bool) -> None:
        """Record a call that ended without success or counted failure."""
        async with self._lock:
            now = self._clock()
            self._outcomes.append((now, False))
            if trial:
                self._half_open_in_flight = max(0, self._half_open_in_flight - 1)
            if (
                self._state == CircuitState.HALF_OPEN
                and self._half_open_attempts >= self.half_open_max_attempts
                and self._half_open_in_flight == 0
            ):
                self._transition_to_open(now, reason="half_open_attempts_exhausted")

    def _should_open(self) -> bool:
        if len(self._outcomes) < self.volume_threshold:
            return False
        return self._window_failures() >= self.failure_threshold

    # === Public API ===

    def raise_if_open(self) -> None:
        """Fail fast without counting a call when the next call would be rejected.

        Lets callers skip work they would otherwise spend before ``execute``.

        Raises:
            CircuitOpenError: If the circuit is open and the reset timeout has
                not passed, or half-open with every trial already in use
        """
        now = self._clock()
        if self._state == CircuitState.OPEN:
            if self._next_attempt_at is None or now < self._next_attempt_at:
                raise CircuitOpenError(self.name, self.snapshot())
        elif (
            self._state == CircuitState.HALF_OPEN
            and self._half_open_attempts >= self.half_open_max_attempts
        ):
            raise CircuitOpenError(self.name, self.snapshot())

    async def execute(
        self,
        func: Callable[P, Awaitable[T]],
        *args: P.args,
        **kwargs: P.kwargs,
    ) -> T:
        """Run ``func`` under protection.

        Returns:
            Whatever ``func`` returns

        Raises:
            CircuitOpenError: If the circuit is open (``func`` is not called)
            Exception: Any error raised by ``func``, unchanged
        """
        trial = await self._before_call()
        try:
            result = await func(*args, **kwargs)
        except self.ignored_exceptions:
            await self._record_neutral(trial)
            raise
        except Exception as e:
            await self._record_failure(e, trial)
            raise
        except BaseException:
            await self._record_neutral(trial)
            raise
        await self._record_success(trial)
        return result

    async def __aenter__(self) -> CircuitBreaker:
        """Async context manager entry - check circuit state."""
        self._trial.set(await self._before_call())
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> bool:
        """Async context manager exit - record success or failure."""
        trial = self._trial.get()
        self._trial.set(False)
        if exc_val is None:
            await self._record_success(trial)
        elif isinstance(exc_val, self.ignored_exceptions) or not isinstance(exc_val, Exception):
            await self._record_neutral(trial)
        else:
            await self._record_failure(exc_val, trial)
        return False  # Don't suppress exceptions

    def __call__(self, func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        """Decorator to wrap async function with circuit breaker.

        Usage:
            @circuit_breaker
            async def call_api():
                ...
        """

        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            return await self.execute(func, *args, **kwargs)

        return wrapper

    def reset(self) -> None:
        """Manually reset circuit breaker to closed state."""
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._last_failure_at = None
        self._next_attempt_at = None
        self._half_open_attempts = 0
        self._half_open_in_flight = 0
        self._outcomes.clear()
        logger.info("circuit_breaker_reset", service=self.name)
        self._events.emit("circuit_breaker_reset", service=self.name)

    def get_stats(self) -> dict:
        """Get circuit breaker statistics."""
        snap = self.snapshot()
        return {
            "service": self.name,
            "state": snap.state.value,
            "failure_count": snap.failure_count,
            "success_count": snap.success_count,
            "failure_threshold": self.failure_threshold,
            "volume_threshold": self.volume_threshold,
            "window_requests": snap.window_requests,
            "window_failures": snap.window_failures,
            "half_open_attempts": snap.half_open_attempts,
            "time_until_retry": snap.time_until_retry,
        }


class CircuitBreakerRegistry:
    """Named circuit breakers shared across call sites.

    Built once at the composition root and passed to whoever needs a
    breaker; breakers live as long as the registry.
    """

    def __init__(
        self,
        policies: PolicySet | None = None,
        *,
        ignored_exceptions: tuple[type[BaseException], ...] = (),
        event_sink: EventSinkPort | None = None,
        clock: Clock = time.monotonic,
    ):
        self._policies = policies or PolicySet()
        self._ignored_exceptions = ignored_exceptions
        self._events = event_sink
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get_or_create(self, name: str, policy: OperationPolicy | None = None) -> CircuitBreaker:
        """Return the breaker called ``name``, creating it on first reference.

        An explicit ``policy`` only applies when the breaker is created.
        """
        breaker = self._breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name,
                policy or self._policies.get(name),
                ignored_exceptions=self._ignored_exceptions,
                event_sink=self._events,
                clock=self._clock,
            )
            self._breakers[name] = breaker
        return breaker

    def get(self, name: str) -> CircuitBreaker | None:
        return self._breakers.get(name)

    def reset(self, name: str) -> bool:
        """Reset one breaker. Returns False if no breaker has that name."""
        breaker = self._breakers.get(name)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def reset_all(self) -> None:
        for breaker in self._breakers.values():
            breaker.reset()

    def get_states(self) -> dict[str, BreakerSnapshot]:
        return {name: breaker.snapshot() for name, breaker in sorted(self._breakers.items())}

    def __contains__(self, name: object) -> bool:
        return name in self._breakers

    def __len__(self) -> int:
        return len(self._breakers)


__all__ = ["CircuitBreaker", "CircuitBreakerRegistry", "CircuitOpenError", "CircuitState"]
