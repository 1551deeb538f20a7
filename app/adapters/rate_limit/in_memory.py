"""In-memory rate limiters (sliding log and fixed window).

Notes:
- Per-process only: running multiple workers multiplies the effective limit.
  Use the Redis backend when the quota must be shared.
- Check-and-consume runs under a lock with no await inside the critical
  section, so concurrent requests for the same key cannot both take the last
  slot.
"""

from __future__ import annotations

import math
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Callable

from app.adapters.rate_limit.base import (
    AbstractRateLimiter,
    RateLimitResult,
    validate_consume_args,
    validate_limiter_args,
)


@dataclass
class _WindowState:
    window_start: int
    count: int


class InMemoryFixedWindowRateLimiter(AbstractRateLimiter):
    """Rate limiter using a fixed, clock-aligned time window per key.

    A burst straddling a window boundary can be admitted up to twice the
    limit; prefer the sliding limiter when that matters.
    """

    algorithm = "fixed"
    backend = "memory"

    def __init__(
        self,
        *,
        limit: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the in-memory rate limiter.

        Args:
            limit: Maximum number of allowed units per window.
            window_seconds: Size of the fixed window in seconds.
            clock: Time source function returning UNIX time in seconds.

        Raises:
            ValueError: If limit or window_seconds are invalid.
        """
        validate_limiter_args(limit, window_seconds)

        self._limit = limit
        self._window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.RLock()
        self._state_by_key: dict[str, _WindowState] = {}
        self._last_sweep = clock()

    def _get_window_bounds(self, now: float) -> tuple[int, int]:
        window_start = int(now // self._window_seconds) * self._window_seconds
        return window_start, window_start + self._window_seconds

    def _sweep_stale_windows_locked(self, now: float, window_start: int) -> None:
        """Drop keys whose state belongs to an earlier window."""
        if now - self._last_sweep < self._window_seconds:
            return
        stale = [k for k, state in self._state_by_key.items() if state.window_start < window_start]
        for key in stale:
            del self._state_by_key[key]
        self._last_sweep = now

    def _get_or_reset_state(self, key: str, window_start: int) -> _WindowState:
        state = self._state_by_key.get(key)
        if state is None or state.window_start != window_start:
            state = _WindowState(window_start=window_start, count=0)
            self._state_by_key[key] = state
        return state

    async def consume(self, key: str, *, cost: int = 1) -> RateLimitResult:
        """Consume budget for ``key`` in the current fixed window.

        Raises:
            ValueError: If key is empty or cost is invalid.
        """
        validate_consume_args(key, cost)

        now = self._clock()
        window_start, reset_at = self._get_window_bounds(now)

        with self._lock:
            self._sweep_stale_windows_locked(now, window_start)
            state = self._get_or_reset_state(key, window_start)

            if state.count + cost <= self._limit:
                state.count += cost
                return RateLimitResult(
                    allowed=True,
                    limit=self._limit,
                    remaining=max(0, self._limit - state.count),
                    reset_at=reset_at,
                    retry_after_seconds=None,
                )

            return RateLimitResult(
                allowed=False,
                limit=self._limit,
                remaining=max(0, self._limit - state.count),
                reset_at=reset_at,
                retry_after_seconds=max(0, int(math.ceil(reset_at - now))),
            )


class InMemorySlidingWindowRateLimiter(AbstractRateLimiter):
    """Exact sliding-log rate limiter.

    A request at ``now`` counts every admitted request with a timestamp in
    ``(now - window_seconds, now]``. Rejected requests are not recorded, so a
    client that keeps hammering while blocked does not extend its own ban.
    """

    algorithm = "sliding"
    backend = "memory"

    def __init__(
        self,
        *,
        limit: int,
        window_seconds: int,
        clock: Callable[[], float] = time.time,
    ) -> None:
        validate_limiter_args(limit, window_seconds)

        self._limit = limit
        self._window_seconds = window_seconds
        self._clock = clock
        self._lock = threading.RLock()
        self._log_by_key: dict[str, deque[float]] = {}
        self._last_sweep = clock()

    def _prune(self, log: deque[float], cutoff: float) -> None:
        while log and log[0] <= cutoff:
            log.popleft()

    def _sweep_idle_keys_locked(self, now: float) -> None:
        """Drop keys whose whole log has left the window."""
        if now - self._last_sweep < self._window_seconds:
            return
        cutoff = now - self._window_seconds
        idle = [k for k, log in self._log_by_key.items() if not log or log[-1] <= cutoff]
        for key in idle:
            del self._log_by_key[key]
        self._last_sweep = now

    async def consume(self, key: str, *, cost: int = 1) -> RateLimitResult:
        """Consume budget for ``key`` in the window ending now.

        Raises:
            ValueError: If key is empty or cost is invalid.
        """
        validate_consume_args(key, cost)

        now = self._clock()
        cutoff = now - self._window_seconds

        with self._lock:
            self._sweep_idle_keys_locked(now)
            log = self._log_by_key.setdefault(key, deque())
            self._prune(log, cutoff)

            if len(log) + cost <= self._limit:
                log.extend([now] * cost)
                return RateLimitResult(
                    allowed=True,
                    limit=self._limit,
                    remaining=self._limit - len(log),
                    reset_at=int(math.ceil(log[0] + self._window_seconds)),
                    retry_after_seconds=None,
                )

            # Blocked: capacity frees up when the oldest counted entry expires
            frees_at = (log[0] if log else now) + self._window_seconds
            return RateLimitResult(
                allowed=False,
                limit=self._limit,
                remaining=max(0, self._limit - len(log)),
                reset_at=int(math.ceil(frees_at)),
                retry_after_seconds=max(1, int(math.ceil(frees_at - now))),
            )
