from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered into the response envelope:
    - validation_error (400)
    - unauthorized (401)
    - not_found (404)
    - conflict (409)
    - invalid_transition (409)
    - step_up_required (428)
    - rate_limited (429)
    - service_unavailable (503)
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Credential or session missing, invalid, expired or revoked (401).

    Every guard failure surfaces as this one error with a generic message;
    the precise reason only reaches the logs.
    """
    status_code = 401
    error_code = "unauthorized"


class StepUpRequiredError(ServiceError):
    """A destructive admin action was attempted without a step-up proof (428)."""
    status_code = 428
    error_code = "step_up_required"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """A unique value could not be minted, e.g. a token or code collided (409)."""
    status_code = 409
    error_code = "conflict"


class InvalidTransitionError(ServiceError):
    """A share link is no longer active and cannot be mutated (409)."""
    status_code = 409
    error_code = "invalid_transition"

    def __init__(self, state: str, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"share link is {state} and can no longer be changed",
            detail={"state": state},
        )
        self.state = state


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServiceUnavailableError(ServiceError):
    """A dependency the request needs is unavailable (503)."""
    status_code = 503
    error_code = "service_unavailable"


class ConfigMissingError(ServiceUnavailableError):
    """A required secret is unset or too weak to be used (503)."""

    def __init__(self, name: str, reason: str = "not configured") -> None:
        super().__init__(f"{name} is {reason}", detail={"setting": name})
        self.name = name


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "StepUpRequiredError",
    "NotFoundError",
    "ConflictError",
    "InvalidTransitionError",
    "RateLimitedError",
    "ServiceUnavailableError",
    "ConfigMissingError",
]
