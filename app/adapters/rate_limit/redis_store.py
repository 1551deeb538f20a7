"""Redis-backed rate limiter shared across processes.

Works with any Redis-protocol server, including Upstash databases. Each
consume is a single Lua script so the check and the increment happen
atomically on the server, which serializes concurrent requests for the
same key regardless of how many API workers are running.
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from typing import Callable, Literal

from redis.asyncio import Redis
from redis.exceptions import RedisError

from app.adapters.rate_limit.base import (
    AbstractRateLimiter,
    RateLimitResult,
    validate_consume_args,
    validate_limiter_args,
)
from app.core.errors import RateLimitBackendError

logger = logging.getLogger(__name__)


# KEYS[1] = log key; ARGV = now_ms, window_ms, limit, cost, member
# Returns {allowed, count_in_window, oldest_score_ms}
SLIDING_WINDOW_SCRIPT = """
local key = KEYS[1]
local now = tonumber(ARGV[1])
local window = tonumber(ARGV[2])
local limit = tonumber(ARGV[3])
local cost = tonumber(ARGV[4])
local member = ARGV[5]

redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
local count = redis.call('ZCARD', key)
local allowed = 0
if count + cost <= limit then
  for i = 1, cost do
    redis.call('ZADD', key, now, member .. ':' .. i)
  end
  redis.call('PEXPIRE', key, window)
  count = count + cost
  allowed = 1
end

local oldest = now
local first = redis.call('ZRANGE', key, 0, 0, 'WITHSCORES')
if first[2] then
  oldest = tonumber(first[2])
end
return {allowed, count, oldest}
"""

# KEYS[1] = bucket key; ARGV = window_ms, limit, cost
# Returns {allowed, count_in_bucket}
FIXED_WINDOW_SCRIPT = """
local key = KEYS[1]
local window = tonumber(ARGV[1])
local limit = tonumber(ARGV[2])
local cost = tonumber(ARGV[3])

local count = tonumber(redis.call('GET', key) or '0')
if count + cost <= limit then
  count = redis.call('INCRBY', key, cost)
  if count == cost then
    redis.call('PEXPIRE', key, window)
  end
  return {1, count}
end
return {0, count}
"""


class RedisRateLimiter(AbstractRateLimiter):
    """Shared counter service on top of Redis.

    The client clock provides ``now`` so every worker must run with a
    reasonably synchronized clock (NTP); drift skews the window edges by the
    same amount.
    """

    backend = "redis"

    def __init__(
        self,
        client: Redis,
        *,
        limit: int,
        window_seconds: int,
        algorithm: Literal["sliding", "fixed"] = "sliding",
        key_prefix: str = "ratelimit",
        clock: Callable[[], float] = time.time,
    ) -> None:
        """Initialize the Redis rate limiter.

        Args:
            client: Async Redis client (owned by this limiter from now on).
            limit: Maximum number of allowed units per window.
            window_seconds: Window length in seconds.
            algorithm: "sliding" (sorted-set log) or "fixed" (counter buckets).
            key_prefix: Namespace prepended to every key.
            clock: Time source returning UNIX time in seconds.

        Raises:
            ValueError: If limit, window_seconds or algorithm are invalid.
        """
        validate_limiter_args(limit, window_seconds)
        if algorithm not in ("sliding", "fixed"):
            raise ValueError(f"unsupported algorithm: {algorithm!r}")

        self._client = client
        self._limit = limit
        self._window_seconds = window_seconds
        self._window_ms = window_seconds * 1000
        self._key_prefix = key_prefix
        self._clock = clock
        self.algorithm = algorithm

        script_source = SLIDING_WINDOW_SCRIPT if algorithm == "sliding" else FIXED_WINDOW_SCRIPT
        self._script = client.register_script(script_source)

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        socket_timeout_seconds: float = 5.0,
        **kwargs,
    ) -> "RedisRateLimiter":
        """Build a limiter with its own connection pool from a Redis URL."""
        client = Redis.from_url(
            url,
            socket_timeout=socket_timeout_seconds,
            socket_connect_timeout=socket_timeout_seconds,
            decode_responses=True,
        )
        return cls(client, **kwargs)

    def _backend_error(self, exc: Exception, operation: str) -> RateLimitBackendError:
        return RateLimitBackendError(
            code="rate_limit_backend_unavailable",
            message=f"Rate limit backend failed during {operation}",
            details={
                "backend": self.backend,
                "algorithm": self.algorithm,
                "error_type": type(exc).__name__,
            },
        )

    async def consume(self, key: str, *, cost: int = 1) -> RateLimitResult:
        """Atomically check and consume budget for ``key`` on the server.

        Raises:
            ValueError: If key is empty or cost is invalid.
            RateLimitBackendError: If Redis rejects or drops the call.
        """
        validate_consume_args(key, cost)

        now_ms = int(self._clock() * 1000)
        try:
            if self.algorithm == "sliding":
                return await self._consume_sliding(key, cost, now_ms)
            return await self._consume_fixed(key, cost, now_ms)
        except RedisError as exc:
            raise self._backend_error(exc, "consume") from exc

    async def _consume_sliding(self, key: str, cost: int, now_ms: int) -> RateLimitResult:
        redis_key = f"{self._key_prefix}:sliding:{key}"
        allowed, count, oldest_ms = await self._script(
            keys=[redis_key],
            args=[now_ms, self._window_ms, self._limit, cost, uuid.uuid4().hex],
        )
        count = int(count)
        frees_at_ms = int(oldest_ms) + self._window_ms
        reset_at = int(math.ceil(frees_at_ms / 1000))

        if int(allowed) == 1:
            return RateLimitResult(
                allowed=True,
                limit=self._limit,
                remaining=max(0, self._limit - count),
                reset_at=reset_at,
                retry_after_seconds=None,
            )

        return RateLimitResult(
            allowed=False,
            limit=self._limit,
            remaining=max(0, self._limit - count),
            reset_at=reset_at,
            retry_after_seconds=max(1, int(math.ceil((frees_at_ms - now_ms) / 1000))),
        )

    async def _consume_fixed(self, key: str, cost: int, now_ms: int) -> RateLimitResult:
        window_start_ms = (now_ms // self._window_ms) * self._window_ms
        reset_at_ms = window_start_ms + self._window_ms
        redis_key = f"{self._key_prefix}:fixed:{key}:{window_start_ms // 1000}"

        allowed, count = await self._script(
            keys=[redis_key],
            args=[self._window_ms, self._limit, cost],
        )
        count = int(count)

        return RateLimitResult(
            allowed=int(allowed) == 1,
            limit=self._limit,
            remaining=max(0, self._limit - count),
            reset_at=reset_at_ms // 1000,
            retry_after_seconds=None
            if int(allowed) == 1
            else max(1, int(math.ceil((reset_at_ms - now_ms) / 1000))),
        )

    async def ping(self) -> None:
        """Round-trip to Redis.

        Raises:
            RateLimitBackendError: If Redis cannot be reached.
        """
        try:
            await self._client.ping()
        except RedisError as exc:
            raise self._backend_error(exc, "ping") from exc

    async def aclose(self) -> None:
        try:
            await self._client.aclose()
        except RedisError as exc:
            logger.warning(
                "rate_limit.backend_close_failed",
                extra={"backend": self.backend, "error_type": type(exc).__name__},
            )
