from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every expected failure carries an HTTP ``status_code`` and a stable,
    machine-readable ``error_code`` (the error kind) that clients can switch
    on. Messages are for humans and may change; codes may not.
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


class NotFoundError(ServiceError):
    """No pending ledger row or no user (404)."""
    status_code = 404
    error_code = "not_found"


class ExpiredError(ServiceError):
    """OTP past its deadline (400)."""
    status_code = 400
    error_code = "expired"


class AttemptsExceededError(ServiceError):
    """Ledger attempt cap reached; a new code must be requested (429)."""
    status_code = 429
    error_code = "attempts_exceeded"


class InvalidCredentialsError(ServiceError):
    """Unknown email or wrong password; deliberately indistinguishable (401)."""
    status_code = 401
    error_code = "invalid_credentials"


class InvalidOTPError(ServiceError):
    """Submitted code did not match (400)."""
    status_code = 400
    error_code = "invalid_otp"


class InvalidCurrentPasswordError(ServiceError):
    status_code = 400
    error_code = "invalid_current_password"


class AccountDisabledError(ServiceError):
    status_code = 403
    error_code = "account_disabled"


class AlreadyExistsError(ServiceError):
    """Email already registered (409)."""
    status_code = 409
    error_code = "already_exists"


class NotVerifiedError(ServiceError):
    """Password reset attempted without a verified OTP (400)."""
    status_code = 400
    error_code = "not_verified"


class UnauthenticatedError(ServiceError):
    """Authentication missing or invalid (401)."""
    status_code = 401
    error_code = "unauthenticated"


class TokenExpiredError(UnauthenticatedError):
    """Token signature is valid but it has expired; clients should refresh (401)."""
    error_code = "token_expired"


class InvalidTokenError(UnauthenticatedError):
    """Token is malformed, forged, or of the wrong class (401)."""
    error_code = "invalid_token"


class InvalidOrExpiredError(UnauthenticatedError):
    """Refresh token is not (or no longer) in the store (401)."""
    error_code = "invalid_or_expired"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class TooManyRequestsError(ServiceError):
    """Per-user rate limit exceeded (429)."""
    status_code = 429
    error_code = "too_many_requests"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "NotFoundError",
    "ExpiredError",
    "AttemptsExceededError",
    "InvalidCredentialsError",
    "InvalidOTPError",
    "InvalidCurrentPasswordError",
    "AccountDisabledError",
    "AlreadyExistsError",
    "NotVerifiedError",
    "UnauthenticatedError",
    "TokenExpiredError",
    "InvalidTokenError",
    "InvalidOrExpiredError",
    "ForbiddenError",
    "TooManyRequestsError",
    "ServerError",
]
