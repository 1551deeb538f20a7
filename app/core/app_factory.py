from __future__ import annotations

"""Application factory for the FastAPI app.

Centralizes app construction (metadata, middleware, handlers, routers) so
tests can build isolated instances.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI

from app.api.routes import health_router
from app.core.config import settings
from app.core.exception_handlers import setup_exception_handlers
from app.core.logging import configure_logging
from app.core.middleware import request_id_middleware
from app.core.openapi import apply_openapi_customizations
from app.core.rate_limit import close_rate_limiter, rate_limit_middleware

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    logger.info(
        "app.startup",
        extra={
            "app_env": settings.app_env,
            "rate_limit_enabled": settings.app.rate_limit_enabled,
            "rate_limit_backend": settings.app.rate_limit_backend,
            "rate_limit_algorithm": settings.app.rate_limit_algorithm,
            "rate_limit_requests": settings.app.rate_limit_requests,
            "rate_limit_window_s": settings.app.rate_limit_window_seconds,
        },
    )
    yield
    await close_rate_limiter()
    logger.info("app.shutdown")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application instance.

    Returns:
        Configured FastAPI app with middleware, handlers, routers and docs.
    """
    # Logging first so subsequent init logs are formatted as desired
    configure_logging(settings.log)

    app = FastAPI(
        title="Transactions API",
        description=(
            "Backend for recording and summarizing financial transactions per "
            "user. Every request is rate limited per client address with a "
            "shared sliding-window counter."
        ),
        version="0.1.0",
        lifespan=lifespan,
    )

    # Middleware: the last registered runs first, so request ids wrap the gate
    app.middleware("http")(rate_limit_middleware)
    app.middleware("http")(request_id_middleware)

    setup_exception_handlers(app)

    app.include_router(health_router)

    apply_openapi_customizations(app)

    return app
