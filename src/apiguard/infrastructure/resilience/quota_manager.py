"""Quota manager for longer-window usage caps.

Tracks per-operation daily request counts and the cooldown a provider
imposes after signalling quota exhaustion:
- Daily windows roll over at the UTC calendar-day boundary, measured from
  the window's own start so counters never drift
- A cooldown only ever moves forward until it expires
- A reached daily quota blocks until the next window boundary

Checks never raise; they report availability and a wait time so that the
caller decides whether to wait or degrade.
"""

from __future__ import annotations

import asyncio
import math
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

import structlog

from apiguard.application.ports import EventSinkPort, NullEventSink
from apiguard.domain.value_objects import PolicySet, QuotaStatus

logger = structlog.get_logger(__name__)

WINDOW_LENGTH = timedelta(days=1)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _start_of_day(moment: datetime) -> datetime:
    return moment.replace(hour=0, minute=0, second=0, microsecond=0)


def _ms_until(target: datetime, now: datetime) -> int:
    return max(0, math.ceil((target - now).total_seconds() * 1000))


@dataclass
class QuotaWindow:
    """Usage of one operation within the current daily window."""

    window_started_at: datetime
    daily_count: int = 0
    cooldown_until: datetime | None = None
    last_request_at: datetime | None = None


class QuotaManager:
    """Daily quota and cooldown tracking per operation.

    Usage:
        quota = QuotaManager(PolicySet({"getCompetitivePricing": policy}))

        status = quota.check_quota("getCompetitivePricing")
        if not status.available:
            await quota.wait_for_quota("getCompetitivePricing", timeout=600)
        quota.record_request("getCompetitivePricing")
    """

    def __init__(
        self,
        policies: PolicySet | None = None,
        *,
        event_sink: EventSinkPort | None = None,
        max_wait_slice: float = 5.0,
        now: Callable[[], datetime] = _utcnow,
    ):
        """Initialize quota manager.

        Args:
            policies: Operation policies (daily_quota, default_retry_after_seconds)
            event_sink: Receives cooldown and daily-limit events
            max_wait_slice: Longest single sleep in wait_for_quota
            now: Timezone-aware wall clock
        """
        self._policies = policies or PolicySet()
        self._events = event_sink or NullEventSink()
        self._max_wait_slice = max_wait_slice
        self._now = now
        # Methods that mutate windows never await, so they are atomic on the loop
        self._windows: dict[str, QuotaWindow] = {}

    def _window(self, operation: str, now: datetime) -> QuotaWindow:
        window = self._windows.get(operation)
        if window is None:
            window = QuotaWindow(window_started_at=_start_of_day(now))
            self._windows[operation] = window
        elif now >= window.window_started_at + WINDOW_LENGTH:
            logger.debug(
                "quota_window_rolled",
                operation=operation,
                previous_count=window.daily_count,
            )
            window.daily_count = 0
            window.window_started_at = _start_of_day(now)
        return window

    def check_quota(self, operation: str) -> QuotaStatus:
        """Report whether ``operation`` may be called now.

        Returns:
            QuotaStatus; when unavailable, ``reset_time`` and ``wait_time_ms``
            reflect the latest of the cooldown end and the daily boundary
        """
        now = self._now()
        window = self._window(operation, now)
        policy = self._policies.get(operation)
        blocked_until: datetime | None = None

        if window.cooldown_until is not None:
            if now < window.cooldown_until:
                blocked_until = window.cooldown_until
            else:
                logger.info("quota_cooldown_exited", operation=operation)
                self._events.emit(
                    "quota_cooldown_exited",
                    operation=operation,
                    cooldown_until=window.cooldown_until.isoformat(),
                )
                window.cooldown_until = None

        remaining: int | None = None
        if policy.daily_quota is not None:
            remaining = max(0, policy.daily_quota - window.daily_count)
            if remaining == 0:
                boundary = window.window_started_at + WINDOW_LENGTH
                blocked_until = boundary if blocked_until is None else max(blocked_until, boundary)

        if blocked_until is not None:
            return QuotaStatus(
                available=False,
                reset_time=blocked_until,
                wait_time_ms=_ms_until(blocked_until, now),
                remaining_quota=remaining,
            )

        return QuotaStatus(available=True, remaining_quota=remaining)

    def record_request(self, operation: str) -> None:
        """Count one request against the daily window of ``operation``."""
        now = self._now()
        window = self._window(operation, now)
        window.daily_count += 1
        window.last_request_at = now

        daily_quota = self._policies.get(operation).daily_quota
        if daily_quota is not None and window.daily_count == daily_quota:
            reset_time = window.window_started_at + WINDOW_LENGTH
            logger.warning(
                "quota_daily_limit_reached",
                operation=operation,
                daily_quota=daily_quota,
                reset_time=reset_time.isoformat(),
            )
            self._events.emit(
                "quota_daily_limit_reached",
                operation=operation,
                daily_quota=daily_quota,
                reset_time=reset_time.isoformat(),
            )

    def record_quota_exceeded(
        self,
        operation: str,
        retry_after_seconds: float | None = None,
    ) -> datetime:
        """Enter (or extend) the cooldown of ``operation``.

        Args:
            operation: Operation key
            retry_after_seconds: Provider-supplied delay; falls back to the
                policy's default_retry_after_seconds when missing or not positive

        Returns:
            The effective cooldown end, which is never earlier than a
            cooldown already in force
        """
        now = self._now()
        window = self._window(operation, now)
        if retry_after_seconds is None or retry_after_seconds <= 0:
            retry_after_seconds = self._policies.get(operation).default_retry_after_seconds

        cooldown_until = now + timedelta(seconds=retry_after_seconds)
        if window.cooldown_until is not None and window.cooldown_until > cooldown_until:
            cooldown_until = window.cooldown_until
        window.cooldown_until = cooldown_until

        logger.warning(
            "quota_cooldown_entered",
            operation=operation,
            retry_after=retry_after_seconds,
            cooldown_until=cooldown_until.isoformat(),
        )
        self._events.emit(
            "quota_cooldown_entered",
            operation=operation,
            retry_after=retry_after_seconds,
            cooldown_until=cooldown_until.isoformat(),
        )
        return cooldown_until

    async def wait_for_quota(self, operation: str, *, timeout: float | None = None) -> None:
        """Suspend until ``check_quota`` reports ``operation`` available.

        Sleeps in bounded slices and re-checks, so an extended cooldown or an
        operator reset is picked up.

        Raises:
            TimeoutError: If timeout exceeded while waiting
        """

        async def _wait() -> None:
            while True:
                status = self.check_quota(operation)
                if status.available:
                    return
                logger.info(
                    "quota_waiting",
                    operation=operation,
                    wait_seconds=status.wait_time,
                    reset_time=status.reset_time.isoformat() if status.reset_time else None,
                )
                await asyncio.sleep(min(status.wait_time, self._max_wait_slice))

        if timeout is None:
            await _wait()
            return

        try:
            await asyncio.wait_for(_wait(), timeout=timeout)
        except TimeoutError:
            logger.warning("quota_wait_timeout", operation=operation, timeout=timeout)
            raise

    def clear_cooldown(self, operation: str) -> None:
        """Operator override: end the cooldown of ``operation`` immediately."""
        window = self._windows.get(operation)
        if window is not None and window.cooldown_until is not None:
            window.cooldown_until = None
            logger.info("quota_cooldown_cleared", operation=operation)
            self._events.emit("quota_cooldown_exited", operation=operation, reason="cleared")

    def get_quota_status(self) -> dict[str, dict]:
        """Snapshot of usage and availability for every operation seen so far."""
        result: dict[str, dict] = {}
        for operation in sorted(set(self._windows) | set(self._policies)):
            status = self.check_quota(operation)
            window = self._windows[operation]
            result[operation] = {
                "daily_count": window.daily_count,
                "daily_quota": self._policies.get(operation).daily_quota,
                "window_started_at": window.window_started_at.isoformat(),
                "cooldown_until": window.cooldown_until.isoformat()
                if window.cooldown_until
                else None,
                "available": status.available,
                "wait_time_ms": status.wait_time_ms,
            }
        return result


__all__ = ["QuotaManager", "QuotaWindow"]
