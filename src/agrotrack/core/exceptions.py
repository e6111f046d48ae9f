"""
Custom exceptions for AgroTrack.

Provides structured error handling with a closed taxonomy of error codes
that map deterministically to HTTP status codes.
"""

from enum import Enum
from typing import Any, Dict, Mapping, Optional


class ErrorCode(str, Enum):
    """Machine readable error codes carried in the error envelope."""

    # Authentication & authorization
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    CSRF_TOKEN_MISSING = "CSRF_TOKEN_MISSING"
    CSRF_VALIDATION_FAILED = "CSRF_VALIDATION_FAILED"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"
    MISSING_REQUIRED_FIELD = "MISSING_REQUIRED_FIELD"
    UNSUPPORTED_API_VERSION = "UNSUPPORTED_API_VERSION"

    # Resources
    NOT_FOUND = "NOT_FOUND"
    ALREADY_EXISTS = "ALREADY_EXISTS"
    CONFLICT = "CONFLICT"

    # Rate limiting
    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"

    # Server
    INTERNAL_SERVER_ERROR = "INTERNAL_SERVER_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    VERSION_NOT_IMPLEMENTED = "VERSION_NOT_IMPLEMENTED"

    # Business logic
    INSUFFICIENT_STOCK = "INSUFFICIENT_STOCK"
    PAYMENT_FAILED = "PAYMENT_FAILED"
    DELIVERY_UNAVAILABLE = "DELIVERY_UNAVAILABLE"


STATUS_BY_CODE: Dict[str, int] = {
    ErrorCode.UNAUTHORIZED: 401,
    ErrorCode.INVALID_CREDENTIALS: 401,
    ErrorCode.SESSION_EXPIRED: 401,
    ErrorCode.FORBIDDEN: 403,
    ErrorCode.CSRF_TOKEN_MISSING: 403,
    ErrorCode.CSRF_VALIDATION_FAILED: 403,
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.INVALID_INPUT: 400,
    ErrorCode.MISSING_REQUIRED_FIELD: 400,
    ErrorCode.UNSUPPORTED_API_VERSION: 400,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.ALREADY_EXISTS: 409,
    ErrorCode.CONFLICT: 409,
    ErrorCode.INSUFFICIENT_STOCK: 409,
    ErrorCode.DELIVERY_UNAVAILABLE: 409,
    ErrorCode.PAYMENT_FAILED: 422,
    ErrorCode.RATE_LIMIT_EXCEEDED: 429,
    ErrorCode.INTERNAL_SERVER_ERROR: 500,
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.VERSION_NOT_IMPLEMENTED: 501,
    ErrorCode.EXTERNAL_SERVICE_ERROR: 503,
}


def status_for_code(code: Any) -> int:
    """Map an error code to its HTTP status; anything unknown is a 500."""
    try:
        return STATUS_BY_CODE[ErrorCode(code)]
    except (ValueError, KeyError):
        return 500


class AgroTrackException(Exception):
    """Base exception for AgroTrack."""

    default_code: ErrorCode = ErrorCode.INTERNAL_SERVER_ERROR
    default_message: str = "Internal server error"

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[ErrorCode] = None,
        details: Optional[Dict[str, Any]] = None,
        field: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        message = message or self.default_message
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.details = details or {}
        self.field = field
        self.headers: Dict[str, str] = dict(headers or {})

    @property
    def status_code(self) -> int:
        return status_for_code(self.code)

    @property
    def error_code(self) -> str:
        return self.code.value if isinstance(self.code, ErrorCode) else str(self.code)


class ValidationError(AgroTrackException):
    """Raised when input fails validation."""

    default_code = ErrorCode.VALIDATION_ERROR
    default_message = "Invalid request"


class AuthenticationError(AgroTrackException):
    """Raised when no valid session is present."""

    default_code = ErrorCode.UNAUTHORIZED
    default_message = "Unauthorized"


class ForbiddenError(AgroTrackException):
    """Raised when the session lacks the required role."""

    default_code = ErrorCode.FORBIDDEN
    default_message = "Access denied"


class NotFoundError(AgroTrackException):
    default_code = ErrorCode.NOT_FOUND
    default_message = "Resource not found"


class ConflictError(AgroTrackException):
    default_code = ErrorCode.CONFLICT
    default_message = "Resource conflict"


class RateLimitError(AgroTrackException):
    """Raised when a rate limit window is exhausted."""

    default_code = ErrorCode.RATE_LIMIT_EXCEEDED
    default_message = "Too many requests, please try again later."

    def __init__(
        self,
        message: Optional[str] = None,
        retry_after: Optional[int] = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> None:
        details: Dict[str, Any] = {}
        merged = dict(headers or {})
        if retry_after is not None:
            details["retry_after"] = retry_after
            merged["Retry-After"] = str(retry_after)
        super().__init__(message=message, details=details, headers=merged)
        self.retry_after = retry_after


class CsrfError(AgroTrackException):
    """Raised when a mutating request has a missing or invalid CSRF token."""

    default_code = ErrorCode.CSRF_VALIDATION_FAILED
    default_message = "Invalid or missing CSRF token"


class DatabaseError(AgroTrackException):
    default_code = ErrorCode.DATABASE_ERROR
    default_message = "Database operation failed"


class ExternalServiceError(AgroTrackException):
    default_code = ErrorCode.EXTERNAL_SERVICE_ERROR
    default_message = "External service unavailable"


class UnsupportedVersionError(AgroTrackException):
    default_code = ErrorCode.UNSUPPORTED_API_VERSION
    default_message = "Unsupported API version"


class VersionNotImplementedError(AgroTrackException):
    default_code = ErrorCode.VERSION_NOT_IMPLEMENTED
    default_message = "Version not implemented"
