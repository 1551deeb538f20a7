"""Factory pattern for creating rate limiter instances."""

from app.adapters.rate_limit.base import AbstractRateLimiter
from app.adapters.rate_limit.in_memory import (
    InMemoryFixedWindowRateLimiter,
    InMemorySlidingWindowRateLimiter,
)
from app.adapters.rate_limit.redis_store import RedisRateLimiter
from app.core.config import settings
from app.core.errors import ValidationAppError


def create_rate_limiter() -> AbstractRateLimiter:
    """Instantiate the configured rate limiter.

    Reads the backend, algorithm, quota and window from
    app.core.config.settings and validates backend-specific requirements.

    Returns:
        AbstractRateLimiter: Configured limiter instance.

    Raises:
        ValidationAppError: If the backend is unknown or misconfigured.
    """
    backend = settings.app.rate_limit_backend.lower()
    algorithm = settings.app.rate_limit_algorithm
    limit = settings.app.rate_limit_requests
    window_seconds = settings.app.rate_limit_window_seconds

    if backend == "memory":
        if algorithm == "fixed":
            return InMemoryFixedWindowRateLimiter(limit=limit, window_seconds=window_seconds)
        return InMemorySlidingWindowRateLimiter(limit=limit, window_seconds=window_seconds)

    if backend == "redis":
        if not settings.redis.url:
            raise ValidationAppError(
                code="rate_limit_missing_redis_url",
                message="Redis rate limit backend requires REDIS_URL environment variable",
                details={"hint": "Set REDIS_URL or use APP_RATE_LIMIT_BACKEND=memory"},
            )
        return RedisRateLimiter.from_url(
            settings.redis.url,
            socket_timeout_seconds=settings.redis.socket_timeout_seconds,
            limit=limit,
            window_seconds=window_seconds,
            algorithm=algorithm,
            key_prefix=settings.redis.key_prefix,
        )

    raise ValidationAppError(
        code="rate_limit_unknown_backend",
        message=(
            f"Unknown rate limit backend: '{backend}'. Supported backends: memory, redis"
        ),
    )
