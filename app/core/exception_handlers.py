"""Global exception handlers for consistent error responses.

- ValidationAppError -> 400
- RateLimitBackendError -> 503 when raised inside a route (readiness probe)
- Any other exception -> generic 500. This is also where a rate limiter
  backend failure raised by the middleware ends up, since middleware errors
  bypass route-level handlers.

Error responses carry the request_id for correlation and never include
exception text.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app.core.config import settings
from app.core.errors import AppError, RateLimitBackendError, ValidationAppError
from app.core.logging import get_request_id

logger = logging.getLogger(__name__)


def _status_for(exc: AppError) -> int:
    if isinstance(exc, RateLimitBackendError):
        return 503
    if isinstance(exc, ValidationAppError):
        return 400
    return 500


def _request_id_for(request: Request) -> str | None:
    # Middleware errors reach the handler after the request context is cleared
    return get_request_id() or getattr(request.state, "request_id", None)


def _request_id_headers(request_id: str | None) -> dict[str, str] | None:
    if not request_id:
        return None
    return {settings.log.request_id_header: request_id}
async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    """Handle domain application errors with a consistent JSON format.

    Args:
        request: FastAPI request object.
        exc: AppError instance (or subclass).

    Returns:
        JSONResponse with ``{"error": {code, message, request_id[, details]}}``.
    """
    status_code = _status_for(exc)

    logger.warning(
        "app_error_handled",
        extra={
            "error_code": exc.code,
            "error_message": exc.message,
            "status_code": status_code,
            "has_details": bool(exc.details),
            "request_path": request.url.path,
        },
    )

    error_content = {
        "code": exc.code,
        "message": exc.message,
        "request_id": _request_id_for(request),
    }
    if exc.details:
        error_content["details"] = exc.details

    return JSONResponse(
        status_code=status_code,
        content={"error": error_content},
    )


async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Fallback handler for unexpected errors (safety net).

    Logs the failure for debugging while returning a generic message, so no
    implementation details reach the client.

    Errors raised by middleware arrive here outside the request context, so
    the request id is also echoed as a header.
    """
    request_id = _request_id_for(request)
    logger.error(
        "unhandled_exception",
        extra={
            "request_id": request_id,
            "error_type": type(exc).__name__,
            "error_msg": str(exc),
            "error_code": getattr(exc, "code", None),
            "request_path": request.url.path,
            "request_method": request.method,
        },
    )

    return JSONResponse(
        status_code=500,
        content={
            "error": {
                "code": "internal_server_error",
                "message": "An unexpected error occurred. Please try again later.",
                "request_id": request_id,
            }
        },
        headers=_request_id_headers(request_id),
    )


def setup_exception_handlers(app: FastAPI) -> None:
    """Register all exception handlers with the FastAPI app."""
    app.exception_handler(AppError)(app_error_handler)
    app.exception_handler(Exception)(general_exception_handler)
