"""Rate limiting gate and HTTP middleware.

Every inbound request is gated through the shared counter before it reaches
any route:

1. Derive a client identifier: declared address (X-Forwarded-For, only when
   proxy headers are trusted), then the connection address, then a fixed
   fallback identifier.
2. Consume one slot from the configured limiter, bounded by a timeout.
3. Turn the outcome into an explicit decision (``Allow``, ``Deny`` or
   ``Failure``) which the middleware interprets.

Backend failures are never read as a quota decision. They are logged and
re-raised so the application's generic error path answers the request.

Note: every request without a usable address shares the fallback bucket.
"""

from __future__ import annotations

import asyncio
import hashlib
import ipaddress
import logging
from dataclasses import dataclass

from fastapi import Request, Response, status
from fastapi.responses import JSONResponse

from app.adapters.rate_limit.base import AbstractRateLimiter, RateLimitResult
from app.adapters.rate_limit.factory import create_rate_limiter
from app.core.config import settings
from app.core.errors import RateLimitBackendError

logger = logging.getLogger(__name__)

RATE_LIMIT_EXCEEDED_MESSAGE = "Too many requests, please try again later."


@dataclass(frozen=True)
class Allow:
    """The request may proceed to the next handler."""

    result: RateLimitResult


@dataclass(frozen=True)
class Deny:
    """The quota is exhausted; ``response`` is the 429 to send back."""

    response: JSONResponse
    result: RateLimitResult


@dataclass(frozen=True)
class Failure:
    """The limiter could not decide; ``error`` must be propagated."""

    error: RateLimitBackendError


RateLimitDecision = Allow | Deny | Failure


_limiter: AbstractRateLimiter | None = None
_limiter_config: tuple | None = None
_closing_tasks: set[asyncio.Task] = set()


def _current_limiter_config() -> tuple:
    return (
        settings.app.rate_limit_backend,
        settings.app.rate_limit_algorithm,
        settings.app.rate_limit_requests,
        settings.app.rate_limit_window_seconds,
        settings.redis.url,
        settings.redis.key_prefix,
    )


def _close_replaced_limiter(limiter: AbstractRateLimiter) -> None:
    """Release a limiter dropped from the cache (its pool, for Redis)."""

    try:
        loop = asyncio.get_running_loop()
    except RuntimeError:
        asyncio.run(limiter.aclose())
        return

    task = loop.create_task(limiter.aclose())
    _closing_tasks.add(task)
    task.add_done_callback(_closing_tasks.discard)


def get_rate_limiter() -> AbstractRateLimiter:
    """Return a process-wide rate limiter instance.

    The instance is cached in-module to preserve state across requests.
    If configuration changes (primarily in tests), the limiter is rebuilt and
    the replaced instance is closed.

    Raises:
        ValidationAppError: If the configured backend is invalid.
    """

    global _limiter, _limiter_config

    config = _current_limiter_config()
    if _limiter is None or _limiter_config != config:
        replaced = _limiter
        _limiter = create_rate_limiter()
        _limiter_config = config
        if replaced is not None:
            _close_replaced_limiter(replaced)

    return _limiter


async def close_rate_limiter() -> None:
    """Close and forget the cached limiter (application shutdown)."""

    global _limiter, _limiter_config

    limiter, _limiter, _limiter_config = _limiter, None, None
    if limiter is not None:
        await limiter.aclose()


def _first_forwarded_address(header_value: str) -> str | None:
    """Return the client entry of an X-Forwarded-For header if it is an IP."""

    candidate = header_value.split(",", 1)[0].strip()
    if not candidate:
        return None
    try:
        return str(ipaddress.ip_address(candidate))
    except ValueError:
        return None


def _connection_address(request: Request) -> str | None:
    try:
        client = request.client
    except (TypeError, ValueError):
        # Malformed ASGI "client" entry
        return None
    if client is None or not client.host:
        return None
    host = str(client.host).strip()
    return host or None


def resolve_client_identifier(
    request: Request,
    *,
    fallback: str = "anonymous",
    trust_proxy_headers: bool = False,
) -> str:
    """Derive the key under which the request's quota is tracked.

    The chain is total: it never raises and always returns a non-empty
    string.

    Args:
        request: Incoming request.
        fallback: Identifier used when no address is available.
        trust_proxy_headers: Whether X-Forwarded-For may be used.

    Returns:
        str: Client address or the fallback identifier.
    """

    if trust_proxy_headers:
        forwarded = request.headers.get("x-forwarded-for")
        if forwarded:
            declared = _first_forwarded_address(forwarded)
            if declared:
                return declared

    connection = _connection_address(request)
    if connection:
        return connection

    logger.warning(
        "rate_limit.fallback_identifier",
        extra={
            "identifier": fallback,
            "request_path": request.url.path,
        },
    )
    return fallback


def _hash_limiter_key(key: str) -> str:
    """Hash the rate limit key for logging without exposing client addresses."""
    return hashlib.sha256(key.encode()).hexdigest()[:16]


def build_rate_limited_response(
    result: RateLimitResult | None = None,
    *,
    include_headers: bool = False,
) -> JSONResponse:
    """Build the 429 response sent when the quota is exhausted.

    The body is always exactly ``{"message": RATE_LIMIT_EXCEEDED_MESSAGE}``;
    only headers vary.
    """

    headers: dict[str, str] = {}
    if include_headers and result is not None:
        headers["Retry-After"] = str(result.retry_after_seconds or 0)
        headers["X-RateLimit-Limit"] = str(result.limit)
        headers["X-RateLimit-Remaining"] = str(result.remaining)
        headers["X-RateLimit-Reset"] = str(result.reset_at)

    return JSONResponse(
        status_code=status.HTTP_429_TOO_MANY_REQUESTS,
        content={"message": RATE_LIMIT_EXCEEDED_MESSAGE},
        headers=headers or None,
    )


class RateLimitGate:
    """Stateless gate in front of a shared limiter.

    The gate owns no counters: all quota state lives in the limiter, so the
    same gate can serve any number of concurrent requests.
    """

    def __init__(
        self,
        limiter: AbstractRateLimiter,
        *,
        timeout_seconds: float,
        fallback_identifier: str = "anonymous",
        trust_proxy_headers: bool = False,
        include_headers: bool = True,
    ) -> None:
        if timeout_seconds <= 0:
            raise ValueError("timeout_seconds must be > 0")
        if not fallback_identifier:
            raise ValueError("fallback_identifier must be a non-empty string")

        self.limiter = limiter
        self.timeout_seconds = timeout_seconds
        self.fallback_identifier = fallback_identifier
        self.trust_proxy_headers = trust_proxy_headers
        self.include_headers = include_headers

    def identify(self, request: Request) -> str:
        return resolve_client_identifier(
            request,
            fallback=self.fallback_identifier,
            trust_proxy_headers=self.trust_proxy_headers,
        )

    def _failure(self, error: RateLimitBackendError, key_hash: str) -> Failure:
        logger.error(
            "rate_limit.backend_failure",
            extra={
                "key_hash": key_hash,
                "error_code": error.code,
                "error_msg": error.message,
                "backend": self.limiter.backend,
                "timeout_s": self.timeout_seconds,
            },
        )
        return Failure(error=error)

    async def check(self, request: Request) -> RateLimitDecision:
        """Consume one slot for the requester and decide.

        Args:
            request: Incoming request.

        Returns:
            Allow, Deny (with the 429 response) or Failure (with the error).
        """

        identifier = self.identify(request)
        key_hash = _hash_limiter_key(identifier)

        try:
            result = await asyncio.wait_for(
                self.limiter.consume(identifier),
                timeout=self.timeout_seconds,
            )
        except asyncio.TimeoutError as exc:
            error = RateLimitBackendError(
                code="rate_limit_backend_timeout",
                message="Rate limit backend did not answer in time",
                details={
                    "backend": self.limiter.backend,
                    "timeout_seconds": self.timeout_seconds,
                },
            )
            error.__cause__ = exc
            return self._failure(error, key_hash)
        except RateLimitBackendError as exc:
            return self._failure(exc, key_hash)
        except Exception as exc:
            error = RateLimitBackendError(
                code="rate_limit_backend_error",
                message="Rate limit backend raised an unexpected error",
                details={
                    "backend": self.limiter.backend,
                    "error_type": type(exc).__name__,
                },
            )
            error.__cause__ = exc
            return self._failure(error, key_hash)

        if result.allowed:
            logger.debug(
                "rate_limit.allowed",
                extra={
                    "key_hash": key_hash,
                    "limit": result.limit,
                    "remaining": result.remaining,
                },
            )
            return Allow(result=result)

        logger.info(
            "rate_limit.exceeded",
            extra={
                "key_hash": key_hash,
                "limit": result.limit,
                "remaining": result.remaining,
                "retry_after_s": result.retry_after_seconds,
                "algorithm": self.limiter.algorithm,
            },
        )
        return Deny(
            response=build_rate_limited_response(result, include_headers=self.include_headers),
            result=result,
        )


def get_rate_limit_gate() -> RateLimitGate:
    """Build a gate over the process-wide limiter using current settings."""

    return RateLimitGate(
        get_rate_limiter(),
        timeout_seconds=settings.app.rate_limit_timeout_seconds,
        fallback_identifier=settings.app.rate_limit_fallback_identifier,
        trust_proxy_headers=settings.app.rate_limit_trust_proxy_headers,
        include_headers=settings.app.rate_limit_include_headers,
    )


async def rate_limit_middleware(request: Request, call_next) -> Response:
    """HTTP middleware enforcing the rate limit on every request.

    - Allow: the request continues to the next handler unchanged.
    - Deny: the 429 response is returned and the next handler never runs.
    - Failure: the backend error is raised to the application's error
      handling, which answers with a generic 500.

    Usage:
        app.middleware("http")(rate_limit_middleware)
    """

    if not settings.app.rate_limit_enabled:
        return await call_next(request)

    decision = await get_rate_limit_gate().check(request)

    if isinstance(decision, Deny):
        return decision.response
    if isinstance(decision, Failure):
        raise decision.error

    return await call_next(request)
