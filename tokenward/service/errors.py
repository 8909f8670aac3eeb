from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code`` and a stable ``error_code``
    that clients can switch on:
    - validation_error (400)
    - invalid_credentials, token_invalid, unauthorized (401)
    - account_not_verified, account_disabled, forbidden (403)
    - email_already_used (409)
    - account_locked (423)
    - rate_limited (429)
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
    """Bearer credentials missing or unusable (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    """Unknown email or wrong password; the two are never distinguished."""
    error_code = "invalid_credentials"

    def __init__(self, message: str = "invalid email or password", **kwargs) -> None:
        super().__init__(message, **kwargs)


class TokenInvalidError(AuthenticationError):
    """Malformed, expired, wrong-type, revoked, or unknown token (401).

    Deliberately carries no hint about which of those it was.
    """
    error_code = "token_invalid"

    def __init__(self, message: str = "invalid or expired token", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class AccountNotVerifiedError(ForbiddenError):
    error_code = "account_not_verified"

    def __init__(self, message: str = "account email not verified", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountDisabledError(ForbiddenError):
    error_code = "account_disabled"

    def __init__(self, message: str = "account disabled", **kwargs) -> None:
        super().__init__(message, **kwargs)


class ConflictError(ServiceError):
    """Resource conflict, e.g., duplicate creation (409)."""
    status_code = 409
    error_code = "conflict"


class EmailAlreadyUsedError(ConflictError):
    error_code = "email_already_used"

    def __init__(self, message: str = "email already in use", **kwargs) -> None:
        super().__init__(message, **kwargs)


class AccountLockedError(ServiceError):
    """Too many failed credential checks; retry after the lock expires (423)."""
    status_code = 423
    error_code = "account_locked"

    def __init__(self, minutes_remaining: int, message: Optional[str] = None) -> None:
        super().__init__(
            message or f"account locked, try again in {minutes_remaining} minute(s)",
            detail={"minutes_remaining": minutes_remaining},
        )
        self.minutes_remaining = minutes_remaining


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "TokenInvalidError",
    "ForbiddenError",
    "AccountNotVerifiedError",
    "AccountDisabledError",
    "ConflictError",
    "EmailAlreadyUsedError",
    "AccountLockedError",
    "RateLimitedError",
    "ServerError",
]
