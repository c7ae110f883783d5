from __future__ import annotations

from typing import Iterable, Optional, Union


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code rendered in the error envelope:
    - validation_error (400)
    - invalid_code (400)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - server_error (500)
    - notification_failed (502)
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


class InvalidOrExpiredCodeError(ValidationError):
    """Verification code is wrong, already used, or past expiry (400).

    The three causes are deliberately indistinguishable to the caller.
    """
    error_code = "invalid_code"

    def __init__(self, message: str = "invalid or expired verification code", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; both cases share one message."""

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient role or permission (403).

    Carries the requirement that failed and the caller's role so clients can
    explain the denial; neither leaks a secret.
    """
    status_code = 403
    error_code = "forbidden"

    def __init__(
        self,
        message: str = "insufficient permissions",
        *,
        required: Union[str, Iterable[str], None] = None,
        role: Optional[str] = None,
        **kwargs,
    ) -> None:
        if required is not None and not isinstance(required, str):
            required = sorted(required)
        self.required = required
        self.role = role
        detail = kwargs.pop("detail", None) or {}
        if required is not None:
            detail.setdefault("required", required)
        if role is not None:
            detail.setdefault("role", role)
        super().__init__(message, detail=detail, **kwargs)


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class DuplicateAccountError(ConflictError):
    """An account with the given email already exists (409)."""

    def __init__(self, message: str = "user already exists", **kwargs) -> None:
        kwargs.setdefault("detail", {"field": "email"})
        super().__init__(message, **kwargs)


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class NotificationError(ServiceError):
    """The verification message could not be delivered (502)."""
    status_code = 502
    error_code = "notification_failed"

    def __init__(self, message: str = "failed to send verification", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AdvisorUnavailableError(ServiceError):
    """The AI advisory backend is not configured or failed (503)."""
    status_code = 503
    error_code = "service_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidOrExpiredCodeError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "DuplicateAccountError",
    "RateLimitedError",
    "ServerError",
    "NotificationError",
    "AdvisorUnavailableError",
]
