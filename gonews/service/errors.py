from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Failure categories shared by the client and the reference backend."""

    NETWORK = "network"
    UNAUTHORIZED = "unauthorized"
    FORBIDDEN = "forbidden"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    RATE_LIMITED = "rate_limited"
    SERVER = "server"
    STORAGE = "storage"
    CIRCUIT_OPEN = "circuit_open"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in RETRYABLE_KINDS


RETRYABLE_KINDS = frozenset({ErrorKind.NETWORK, ErrorKind.SERVER, ErrorKind.RATE_LIMITED})

DEFAULT_MESSAGES = {
    ErrorKind.NETWORK: "Network error. Please check your connection",
    ErrorKind.UNAUTHORIZED: "Session expired. Please login again",
    ErrorKind.FORBIDDEN: "You do not have permission to do that",
    ErrorKind.VALIDATION: "Please check your input",
    ErrorKind.NOT_FOUND: "Not found",
    ErrorKind.CONFLICT: "Already exists",
    ErrorKind.RATE_LIMITED: "Too many requests. Please try again later",
    ErrorKind.SERVER: "Server error. Please try again later",
    ErrorKind.STORAGE: "Could not access local session storage",
    ErrorKind.CIRCUIT_OPEN: "Session refresh temporarily unavailable",
    ErrorKind.UNKNOWN: "Something went wrong. Please try again",
}

# Stable wire codes carried in error envelopes
_CODE_TO_KIND = {
    "validation_error": ErrorKind.VALIDATION,
    "unauthorized": ErrorKind.UNAUTHORIZED,
    "forbidden": ErrorKind.FORBIDDEN,
    "not_found": ErrorKind.NOT_FOUND,
    "conflict": ErrorKind.CONFLICT,
    "rate_limited": ErrorKind.RATE_LIMITED,
    "server_error": ErrorKind.SERVER,
}

_STATUS_TO_KIND = {
    400: ErrorKind.VALIDATION,
    401: ErrorKind.UNAUTHORIZED,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    409: ErrorKind.CONFLICT,
    422: ErrorKind.VALIDATION,
    429: ErrorKind.RATE_LIMITED,
}


def kind_for_status(status_code: int) -> ErrorKind:
    if status_code in _STATUS_TO_KIND:
        return _STATUS_TO_KIND[status_code]
    if status_code >= 500:
        return ErrorKind.SERVER
    return ErrorKind.UNKNOWN


def kind_for_error_code(code: Optional[str], status_code: int) -> ErrorKind:
    """Prefer the envelope's stable code, fall back to the HTTP status."""
    if code and code in _CODE_TO_KIND:
        return _CODE_TO_KIND[code]
    return kind_for_status(status_code)


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass pins an HTTP status_code, the stable error_code written to
    the error envelope, and the ErrorKind the client derives from it:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - conflict (409)
    - rate_limited (429)
    - validation_error (400)
    - server_error (500)
    """

    status_code: int = 400
    error_code: str = "validation_error"
    kind: ErrorKind = ErrorKind.VALIDATION

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
    kind = ErrorKind.VALIDATION


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"
    kind = ErrorKind.UNAUTHORIZED


class ForbiddenError(ServiceError):
    """Access denied (403)."""
    status_code = 403
    error_code = "forbidden"
    kind = ErrorKind.FORBIDDEN


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"
    kind = ErrorKind.NOT_FOUND


class ConflictError(ServiceError):
    """Resource conflict, e.g. an email that is already registered (409)."""
    status_code = 409
    error_code = "conflict"
    kind = ErrorKind.CONFLICT


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"
    kind = ErrorKind.RATE_LIMITED


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"
    kind = ErrorKind.SERVER


class NetworkError(ServiceError):
    """The request never produced an HTTP response."""
    status_code = 503
    error_code = "server_error"
    kind = ErrorKind.NETWORK


__all__ = [
    "ErrorKind",
    "RETRYABLE_KINDS",
    "DEFAULT_MESSAGES",
    "kind_for_status",
    "kind_for_error_code",
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "RateLimitedError",
    "ServerError",
    "NetworkError",
]
