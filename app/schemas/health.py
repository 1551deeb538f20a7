from __future__ import annotations

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    status: str = Field("ok", description="Liveness status")


class ReadinessResponse(BaseModel):
    """Readiness of the API and its rate limit backend."""

    status: str = Field("ok", description="Readiness status")
    rate_limit_backend: str = Field(..., description="Configured counter backend")
    rate_limit_algorithm: str = Field(..., description="Window semantics in use")
