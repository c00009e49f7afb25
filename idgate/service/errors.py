from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Every subclass pins an HTTP ``status_code`` and a stable ``error_code``
    that clients can switch on. Messages are human readable and never reveal
    whether a given account exists.
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


class InvalidLinkError(ValidationError):
    """Signed link failed signature, expiry or binding checks (400).

    ``reason`` records which check failed for logs and tests; it is never
    sent to the client.
    """

    error_code = "invalid_verification_link"

    def __init__(self, reason: str, message: str = "Invalid or expired verification link") -> None:
        super().__init__(message)
        self.reason = reason


class InvalidResetTokenError(ValidationError):
    """Reset token missing, mismatched, consumed or expired (400)."""
    error_code = "invalid_reset_token"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class UnauthenticatedError(AuthenticationError):
    error_code = "unauthenticated"


class InvalidTokenError(AuthenticationError):
    error_code = "invalid_token"


class InvalidCredentialsError(AuthenticationError):
    error_code = "invalid_credentials"


class EmailNotVerifiedError(ServiceError):
    """Login refused until the account's email is verified (403)."""
    status_code = 403
    error_code = "email_not_verified"


class ForbiddenError(ServiceError):
    """Access denied - role too low (403)."""
    status_code = 403
    error_code = "forbidden"


class InsufficientPrivilegesError(ForbiddenError):
    error_code = "insufficient_privileges"


class SelfOperationForbiddenError(ForbiddenError):
    error_code = "self_operation_forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class AccountNotFoundError(NotFoundError):
    error_code = "user_not_found"


class ConflictError(ServiceError):
    """Request conflicts with the current resource state (409)."""
    status_code = 409
    error_code = "conflict"


class StateConflictError(ConflictError):
    """Operation not valid for the account's current state (409)."""


class AlreadySuspendedError(StateConflictError):
    error_code = "already_suspended"


class NotSuspendedError(StateConflictError):
    error_code = "not_suspended"


class CurrentPasswordIncorrectError(StateConflictError):
    status_code = 400
    error_code = "current_password_incorrect"


class SamePasswordError(StateConflictError):
    status_code = 400
    error_code = "same_password"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"

    def __init__(self, message: str = "Too many attempts", *, retry_after: int = 1) -> None:
        retry_after = max(1, int(retry_after))
        super().__init__(message, detail={"retry_after": retry_after})
        self.retry_after = retry_after


ERROR_CODES = frozenset(
    {
        "validation_error",
        "invalid_verification_link",
        "invalid_reset_token",
        "unauthorized",
        "unauthenticated",
        "invalid_token",
        "invalid_credentials",
        "email_not_verified",
        "forbidden",
        "insufficient_privileges",
        "self_operation_forbidden",
        "self_demotion_forbidden",
        "not_found",
        "user_not_found",
        "conflict",
        "already_suspended",
        "not_suspended",
        "current_password_incorrect",
        "same_password",
        "rate_limited",
        "server_error",
    }
)


__all__ = [
    "ERROR_CODES",
    "ServiceError",
    "ValidationError",
    "InvalidLinkError",
    "InvalidResetTokenError",
    "AuthenticationError",
    "UnauthenticatedError",
    "InvalidTokenError",
    "InvalidCredentialsError",
    "EmailNotVerifiedError",
    "ForbiddenError",
    "InsufficientPrivilegesError",
    "SelfOperationForbiddenError",
    "NotFoundError",
    "AccountNotFoundError",
    "ConflictError",
    "StateConflictError",
    "AlreadySuspendedError",
    "NotSuspendedError",
    "CurrentPasswordIncorrectError",
    "SamePasswordError",
    "RateLimitedError",
]
