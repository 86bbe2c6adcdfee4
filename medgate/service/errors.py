from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP ``status_code`` and a stable ``error_code``
    that callers can branch on. The HTTP status is a presentation detail; the
    error code is the contract.
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
    """Malformed input, rejected before the store is touched (400)."""
    status_code = 400
    error_code = "validation_error"


class InvalidOperationError(ServiceError):
    """Well-formed request that is not allowed in the current state (400)."""
    status_code = 400
    error_code = "invalid_operation"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"


class AccountLockedError(AuthenticationError):
    """Too many failed logins; ``detail['retry_after_minutes']`` says how long."""
    status_code = 423
    error_code = "account_locked"


class AccountInactiveError(AuthenticationError):
    error_code = "account_inactive"


class EmailNotVerifiedError(AuthenticationError):
    error_code = "email_not_verified"


class TenantInactiveError(AuthenticationError):
    error_code = "tenant_inactive"


class SessionTokenError(AuthenticationError):
    """Base for bearer token failures; all surface as ``unauthorized``."""


class MalformedTokenError(SessionTokenError):
    pass


class TokenExpiredError(SessionTokenError):
    pass


class SignatureInvalidError(SessionTokenError):
    pass


class TokenRevokedError(SessionTokenError):
    pass


class VerificationError(ServiceError):
    """Base for verification-code redemption failures."""
    status_code = 400


class InvalidVerificationCodeError(VerificationError):
    error_code = "invalid_token"


class VerificationExpiredError(VerificationError):
    error_code = "token_expired"


class VerificationUsedError(VerificationError):
    error_code = "token_already_used"


class AlreadyVerifiedError(VerificationError):
    error_code = "already_verified"


class TooManyAttemptsError(VerificationError):
    status_code = 429
    error_code = "too_many_attempts"


class InvalidCurrentPasswordError(ServiceError):
    status_code = 400
    error_code = "invalid_current_password"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ConflictError(ServiceError):
    """Uniqueness violation (409)."""
    status_code = 409
    error_code = "conflict"


class EmailDispatchFailedError(ServiceError):
    """Outbound email could not be delivered; the operation was rolled back (503)."""
    status_code = 503
    error_code = "email_dispatch_failed"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


__all__ = [
    "ServiceError",
    "ValidationError",
    "InvalidOperationError",
    "AuthenticationError",
    "InvalidCredentialsError",
    "AccountLockedError",
    "AccountInactiveError",
    "EmailNotVerifiedError",
    "TenantInactiveError",
    "SessionTokenError",
    "MalformedTokenError",
    "TokenExpiredError",
    "SignatureInvalidError",
    "TokenRevokedError",
    "VerificationError",
    "InvalidVerificationCodeError",
    "VerificationExpiredError",
    "VerificationUsedError",
    "AlreadyVerifiedError",
    "TooManyAttemptsError",
    "InvalidCurrentPasswordError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "EmailDispatchFailedError",
    "ServerError",
]
