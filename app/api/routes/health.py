from __future__ import annotations

from fastapi import APIRouter

from app.core.errors import RateLimitBackendError, ValidationAppError
from app.core.rate_limit import get_rate_limiter
from app.schemas.health import HealthResponse, ReadinessResponse

router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthResponse)
def health_check() -> HealthResponse:
    """Liveness endpoint, also pinged by the keep-alive cron job.

    Returns:
        HealthResponse: ``{"status": "ok"}``.
    """

    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_check() -> ReadinessResponse:
    """Readiness endpoint: verifies the rate limit backend answers.

    Raises:
        RateLimitBackendError: Rendered as 503 when the backend is unreachable
            or cannot be built from the current configuration.
    """

    try:
        limiter = get_rate_limiter()
    except ValidationAppError as exc:
        raise RateLimitBackendError(
            code="rate_limit_backend_misconfigured",
            message="Rate limit backend is not configured correctly",
            details={"reason": exc.code},
        ) from exc

    await limiter.ping()
    return ReadinessResponse(
        status="ok",
        rate_limit_backend=limiter.backend,
        rate_limit_algorithm=limiter.algorithm,
    )
