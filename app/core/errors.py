"""Application-level exception types.

Domain errors shared by adapters and the HTTP layer so failures are logged
and rendered consistently. Exhausting a quota is not an error: it is a
regular decision of the rate limit gate.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients."""

    hint: str
    backend: str
    algorithm: str
    timeout_seconds: float
    error_type: str
    context: NotRequired[dict[str, Any]]


@dataclass
class AppError(Exception):
    """Base error for application/domain failures.

    Attributes:
        code: Stable, machine-readable error code.
        message: Human-readable error message.
        details: Optional structured details for debugging/observability.
    """

    code: str
    message: str
    details: ErrorDetails | None = None

    def __post_init__(self) -> None:
        # Populate Exception args so str(error) is useful in logs/tracebacks.
        super().__init__(self.message)


class ValidationAppError(AppError):
    """Raised when input/config validation fails."""


class RateLimitBackendError(AppError):
    """Raised when the counter backend cannot answer a quota check.

    Covers transport errors, misconfiguration and timeouts. It must never be
    read as either an allow or a deny.
    """
