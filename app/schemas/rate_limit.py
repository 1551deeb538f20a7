from __future__ import annotations

from pydantic import BaseModel, Field


class RateLimitExceededResponse(BaseModel):
    """Body returned with HTTP 429 when a client exhausts its quota."""

    message: str = Field(
        ...,
        description="Fixed throttling message",
        examples=["Too many requests, please try again later."],
    )
