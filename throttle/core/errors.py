"""Application-level exception types.

This module defines domain errors used across services/adapters, enabling
consistent error handling, logging, and API responses.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, NotRequired, TypedDict


class ErrorDetails(TypedDict, total=False):
    """Structured error context for observability and clients.

    Fields are optional to keep backward compatibility while encouraging
    consistent shapes across the codebase.
    """

    code: str
    message: str
    hint: str
    expression: str
    field: str
    backend: str
    http_status: int
    retry_after: float
    timeout_seconds: float
    request_id: str
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


class InvalidRateSpecError(AppError):
    """Raised when a rate expression cannot be turned into a RateSpec.

    Construction-time only: an engine is never built from an invalid rate.
    """


class KeyResolutionError(AppError):
    """Raised when a bucket key cannot be derived from an inbound unit."""


class StoreUnavailableError(AppError):
    """Raised when the counter store cannot be reached or times out."""
