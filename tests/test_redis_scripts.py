"""Server-side behaviour of the Redis rate limiter scripts.

Runs the Lua scripts on an in-process Redis (fakeredis with Lua support), so
the window boundaries and the atomic check-and-consume are exercised for
real instead of through a mocked script.
"""

import asyncio
from unittest.mock import Mock

import pytest
import pytest_asyncio
from fakeredis import FakeAsyncRedis, FakeServer

from app.adapters.rate_limit.redis_store import RedisRateLimiter


@pytest_asyncio.fixture
async def redis_client():
    client = FakeAsyncRedis(server=FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


def _limiter(client, clock: Mock, **kwargs) -> RedisRateLimiter:
    kwargs.setdefault("window_seconds", 60)
    return RedisRateLimiter(client, clock=clock, **kwargs)


@pytest.mark.asyncio
async def test_sliding_boundary_at_default_quota(redis_client) -> None:
    clock = Mock(return_value=1000.0)
    limiter = _limiter(redis_client, clock, limit=1000)

    results = [await limiter.consume("1.2.3.4") for _ in range(1000)]
    assert all(r.allowed for r in results)
    assert results[-1].remaining == 0

    blocked = await limiter.consume("1.2.3.4")
    assert blocked.allowed is False
    assert await redis_client.zcard("ratelimit:sliding:1.2.3.4") == 1000


@pytest.mark.asyncio
async def test_sliding_example_scenario(redis_client) -> None:
    clock = Mock(return_value=1000.0)
    limiter = _limiter(redis_client, clock, limit=2)

    assert (await limiter.consume("1.2.3.4")).allowed is True
    assert (await limiter.consume("1.2.3.4")).allowed is True

    clock.return_value = 1010.0
    blocked = await limiter.consume("1.2.3.4")
    assert blocked.allowed is False
    assert blocked.retry_after_seconds == 50

    clock.return_value = 1065.0
    assert (await limiter.consume("1.2.3.4")).allowed is True


@pytest.mark.asyncio
async def test_sliding_entry_leaves_window_exactly_at_its_end(redis_client) -> None:
    clock = Mock(return_value=1000.0)
    limiter = _limiter(redis_client, clock, limit=1)

    assert (await limiter.consume("k")).allowed is True

    clock.return_value = 1059.5
    assert (await limiter.consume("k")).allowed is False

    clock.return_value = 1060.0
    assert (await limiter.consume("k")).allowed is True


@pytest.mark.asyncio
async def test_sliding_key_expires_with_the_window(redis_client) -> None:
    clock = Mock(return_value=1000.0)
    limiter = _limiter(redis_client, clock, limit=5)

    await limiter.consume("k")

    ttl_ms = await redis_client.pttl("ratelimit:sliding:k")
    assert 0 < ttl_ms <= 60_000


@pytest.mark.asyncio
async def test_sliding_concurrent_requests_take_last_slot_once(redis_client) -> None:
    clock = Mock(return_value=1000.0)
    limiter = _limiter(redis_client, clock, limit=3)
    await limiter.consume("k")
    await limiter.consume("k")

    results = await asyncio.gather(limiter.consume("k"), limiter.consume("k"))

    assert sorted(r.allowed for r in results) == [False, True]
    assert await redis_client.zcard("ratelimit:sliding:k") == 3


@pytest.mark.asyncio
async def test_fixed_window_counts_and_resets(redis_client) -> None:
    clock = Mock(return_value=1000.0)
    limiter = _limiter(redis_client, clock, limit=2, algorithm="fixed")

    assert (await limiter.consume("k")).allowed is True
    assert (await limiter.consume("k")).allowed is True
    blocked = await limiter.consume("k")
    assert blocked.allowed is False
    assert blocked.retry_after_seconds == 20
    assert await redis_client.get("ratelimit:fixed:k:960") == "2"
    assert await redis_client.pttl("ratelimit:fixed:k:960") > 0

    clock.return_value = 1020.0
    assert (await limiter.consume("k")).allowed is True
