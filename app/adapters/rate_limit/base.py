"""Rate limiter interfaces.

The HTTP layer depends on this abstraction only, so the counter store
(process memory, Redis/Upstash) can be swapped through configuration and
replaced by deterministic fakes in tests.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass


@dataclass(frozen=True)
class RateLimitResult:
    """Result of a consume operation.

    Attributes:
        allowed: Whether the request is allowed to proceed.
        limit: Max requests per window.
        remaining: Remaining requests in the current window (0 when blocked).
        reset_at: UNIX epoch seconds when capacity is next freed.
        retry_after_seconds: Suggested wait time in seconds when blocked.
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    retry_after_seconds: int | None


class AbstractRateLimiter(ABC):
    """Interface for rate limiters (the shared counter service)."""

    algorithm: str = "sliding"
    backend: str = "memory"

    @abstractmethod
    async def consume(self, key: str, *, cost: int = 1) -> RateLimitResult:
        """Atomically check and consume rate limit budget for a key.

        Args:
            key: Unique identifier (e.g., client IP address).
            cost: Units to consume (default 1).

        Returns:
            RateLimitResult describing whether it was allowed.

        Raises:
            ValueError: If key is empty or cost is invalid.
            RateLimitBackendError: If the backing store cannot be reached.
        """
        raise NotImplementedError

    async def ping(self) -> None:
        """Check that the backing store is reachable."""
        return None

    async def aclose(self) -> None:
        """Release backend resources (connections, pools)."""
        return None


def validate_limiter_args(limit: int, window_seconds: int) -> None:
    if limit < 1:
        raise ValueError("limit must be >= 1")
    if window_seconds < 1:
        raise ValueError("window_seconds must be >= 1")


def validate_consume_args(key: str, cost: int) -> None:
    if cost < 1:
        raise ValueError("cost must be >= 1")
    if not key:
        raise ValueError("key must be a non-empty string")
