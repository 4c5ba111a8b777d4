from __future__ import annotations

from enum import Enum
from typing import Iterable, Optional

GENERIC_AUTH_MESSAGE = "Invalid email or password"


class ErrorKind(str, Enum):
    """Stable failure kinds callers match on instead of exception names."""

    INVALID_CREDENTIALS = "InvalidCredentials"
    ACCOUNT_INACTIVE = "AccountInactive"
    NOT_VERIFIED = "NotVerified"
    EMAIL_IN_USE = "EmailInUse"
    WEAK_PASSWORD = "WeakPassword"
    INVALID_TOKEN = "InvalidToken"
    TOKEN_EXPIRED = "TokenExpired"
    USER_NOT_FOUND = "UserNotFound"
    ROLE_NOT_FOUND = "RoleNotFound"
    ROLE_NAME_IN_USE = "RoleNameInUse"
    ACCESS_DENIED = "AccessDenied"
    UNAVAILABLE = "Unavailable"


class ServiceError(Exception):
    """Base class for session-engine failures.

    Each subclass pins one ``ErrorKind`` together with the HTTP ``status_code``
    and ``error_code`` an outer transport layer should use for it. Every
    operation raises at most one of these.
    """

    kind: ErrorKind
    status_code: int = 400
    error_code: str = "validation_error"
    default_message: str = "Request failed"
    retryable: bool = False

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}

    def to_dict(self) -> dict:
        body = {"error": self.error_code, "message": self.message}
        if self.detail:
            body["detail"] = self.detail
        return body


class _AuthenticationFailure(ServiceError):
    # Shared shape so the boundary cannot tell which check failed
    status_code = 401
    error_code = "invalid_credentials"
    default_message = GENERIC_AUTH_MESSAGE


class InvalidCredentialsError(_AuthenticationFailure):
    """Unknown email, wrong password, or a wrong second-factor code."""
    kind = ErrorKind.INVALID_CREDENTIALS


class AccountInactiveError(_AuthenticationFailure):
    kind = ErrorKind.ACCOUNT_INACTIVE


class NotVerifiedError(_AuthenticationFailure):
    kind = ErrorKind.NOT_VERIFIED


class EmailInUseError(ServiceError):
    kind = ErrorKind.EMAIL_IN_USE
    status_code = 409
    error_code = "email_in_use"
    default_message = "Email already registered"


class WeakPasswordError(ServiceError):
    """Password policy failed; ``reasons`` lists every violated rule."""

    kind = ErrorKind.WEAK_PASSWORD
    status_code = 400
    error_code = "weak_password"
    default_message = "Password does not meet requirements"

    def __init__(self, reasons: Iterable[str], message: Optional[str] = None) -> None:
        self.reasons = list(reasons)
        super().__init__(message, detail={"reasons": self.reasons})


class InvalidTokenError(ServiceError):
    kind = ErrorKind.INVALID_TOKEN
    status_code = 401
    error_code = "invalid_token"
    default_message = "Invalid or revoked token"


class TokenExpiredError(ServiceError):
    kind = ErrorKind.TOKEN_EXPIRED
    status_code = 401
    error_code = "token_expired"
    default_message = "Token has expired"


class UserNotFoundError(ServiceError):
    kind = ErrorKind.USER_NOT_FOUND
    status_code = 404
    error_code = "user_not_found"
    default_message = "User not found"


class RoleNotFoundError(ServiceError):
    kind = ErrorKind.ROLE_NOT_FOUND
    status_code = 404
    error_code = "role_not_found"
    default_message = "Role not found"


class RoleNameInUseError(ServiceError):
    kind = ErrorKind.ROLE_NAME_IN_USE
    status_code = 409
    error_code = "role_name_in_use"
    default_message = "Role name already in use"


class AccessDeniedError(ServiceError):
    kind = ErrorKind.ACCESS_DENIED
    status_code = 403
    error_code = "forbidden"
    default_message = "Access denied"


class UnavailableError(ServiceError):
    """Storage or hashing did not answer in time; safe to retry with backoff."""

    kind = ErrorKind.UNAVAILABLE
    status_code = 503
    error_code = "unavailable"
    default_message = "Service temporarily unavailable"
    retryable = True


__all__ = [
    "GENERIC_AUTH_MESSAGE",
    "ErrorKind",
    "ServiceError",
    "InvalidCredentialsError",
    "AccountInactiveError",
    "NotVerifiedError",
    "EmailInUseError",
    "WeakPasswordError",
    "InvalidTokenError",
    "TokenExpiredError",
    "UserNotFoundError",
    "RoleNotFoundError",
    "RoleNameInUseError",
    "AccessDeniedError",
    "UnavailableError",
]
