from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    """Stable codes carried by structured auth results and audit events."""

    MALFORMED_TOKEN = "malformed_token"
    EXPIRED_TOKEN = "expired_token"
    WRONG_TOKEN_KIND = "wrong_token_kind"
    REVOKED_TOKEN = "revoked_token"
    CONTEXT_MISMATCH = "context_mismatch"
    TOKEN_TOO_OLD = "token_too_old"
    NOT_FRESH = "not_fresh"
    USER_NOT_FOUND = "user_not_found"
    USER_NOT_VERIFIED = "user_not_verified"
    USER_INACTIVE = "user_inactive"
    USER_STATUS_CHECK_TIMEOUT = "user_status_check_timeout"
    SESSION_NOT_FOUND = "session_not_found"
    INVALID_CREDENTIALS = "invalid_credentials"
    MISSING_TOKEN = "missing_token"


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP status_code and an error_code
    rendered into the response envelope:
    - unauthorized (401)
    - reauth_required (401)
    - forbidden (403)
    - not_found (404)
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


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class TokenError(AuthenticationError):
    """A presented credential was rejected.

    ``code`` is the machine-readable reason. It is meant for logs and audit
    records; HTTP responses only ever expose the generic ``unauthorized``.
    """

    code: ErrorCode = ErrorCode.MALFORMED_TOKEN

    def __init__(self, message: str, *, detail: Optional[dict] = None) -> None:
        super().__init__(message, detail=detail)


class MalformedTokenError(TokenError):
    code = ErrorCode.MALFORMED_TOKEN


class ExpiredTokenError(TokenError):
    code = ErrorCode.EXPIRED_TOKEN


class WrongTokenKindError(TokenError):
    code = ErrorCode.WRONG_TOKEN_KIND


class RevokedTokenError(TokenError):
    code = ErrorCode.REVOKED_TOKEN


class ContextMismatchError(TokenError):
    """IP or device binding did not match the presenting request."""
    code = ErrorCode.CONTEXT_MISMATCH


class TokenTooOldError(TokenError):
    code = ErrorCode.TOKEN_TOO_OLD


class NotFreshError(TokenError):
    code = ErrorCode.NOT_FRESH


class UserNotFoundError(TokenError):
    code = ErrorCode.USER_NOT_FOUND


class UserNotVerifiedError(TokenError):
    code = ErrorCode.USER_NOT_VERIFIED


class UserInactiveError(TokenError):
    code = ErrorCode.USER_INACTIVE


class UserStatusCheckTimeoutError(TokenError):
    code = ErrorCode.USER_STATUS_CHECK_TIMEOUT


class SessionNotFoundError(TokenError):
    """The session was invalidated or never existed."""
    code = ErrorCode.SESSION_NOT_FOUND


class InvalidCredentialsError(TokenError):
    code = ErrorCode.INVALID_CREDENTIALS


class ConfigurationError(Exception):
    """Fatal misconfiguration detected at startup (bad, missing or duplicate secrets).

    Deliberately not a ServiceError: it must stop the process from serving
    traffic instead of being rendered per request.
    """


__all__ = [
    "ErrorCode",
    "ServiceError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ServerError",
    "TokenError",
    "MalformedTokenError",
    "ExpiredTokenError",
    "WrongTokenKindError",
    "RevokedTokenError",
    "ContextMismatchError",
    "TokenTooOldError",
    "NotFreshError",
    "UserNotFoundError",
    "UserNotVerifiedError",
    "UserInactiveError",
    "UserStatusCheckTimeoutError",
    "SessionNotFoundError",
    "InvalidCredentialsError",
    "ConfigurationError",
]
