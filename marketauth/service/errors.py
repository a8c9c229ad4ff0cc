from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and a stable
    error_code:
    - invalid_credentials (401)
    - account_locked (423)
    - account_disabled (403)
    - invalid_token (401)
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - validation_error (400)
    - server_error (500)
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
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown identifier or wrong password; never says which."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid identifier or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ServiceError):
    """Too many failed logins; carries no unlock time (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(
        self,
        message: str = "account is temporarily locked due to repeated failed logins",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)


class AccountDisabledError(ServiceError):
    """Principal has been deactivated (403)."""
    status_code = 403
    error_code = "account_disabled"

    def __init__(self, message: str = "account has been deactivated", **kwargs) -> None:
        super().__init__(message, **kwargs)


class InvalidTokenError(AuthenticationError):
    """Malformed, expired or revoked token.

    The client always sees the same message; ``reason`` is kept for logs only.
    """
    error_code = "invalid_token"

    MALFORMED = "malformed"
    EXPIRED = "expired"
    REVOKED = "revoked"

    def __init__(
        self,
        reason: str = MALFORMED,
        message: str = "invalid or expired token",
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.reason = reason


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "AccountDisabledError",
    "InvalidTokenError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "ServerError",
]
