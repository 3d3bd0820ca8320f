"""
Error taxonomy shared by the ingestion service and the sync client.

Server side, every rejected operation raises an IngestionError subclass that
carries a stable wire code and an HTTP status. Client side, every failed call
is classified into exactly one ErrorKind before the sync engine decides
between retry and terminal failure.
"""

from enum import Enum
from typing import Optional


# =============================================================================
# Server-side exceptions
# =============================================================================

class IngestionError(Exception):
    """Base exception for rejected ingestion operations."""

    code = "internal"
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class InvalidArgumentError(IngestionError):
    """Raised when a request field fails validation."""

    code = "invalid-argument"
    status_code = 400


class UnauthenticatedError(IngestionError):
    """Raised when the caller identity is missing."""

    code = "unauthenticated"
    status_code = 401


class PermissionDeniedError(IngestionError):
    """Raised for non-members, blocked users and wrong senders."""

    code = "permission-denied"
    status_code = 403


class NotFoundError(IngestionError):
    """Raised when a message or conversation does not exist."""

    code = "not-found"
    status_code = 404


class FailedPreconditionError(IngestionError):
    """Raised when the target is in a state that forbids the operation."""

    code = "failed-precondition"
    status_code = 412


class ResourceExhaustedError(IngestionError):
    """Raised when a rate limit rejects the request."""

    code = "resource-exhausted"
    status_code = 429


# =============================================================================
# Client-side classification
# =============================================================================

class ErrorKind(str, Enum):
    """Failure buckets the sync engine acts on."""

    INVALID_INPUT = "invalid_input"
    FORBIDDEN = "forbidden"
    RATE_LIMITED = "rate_limited"
    CONFLICT = "conflict"
    TRANSIENT = "transient"
    NOT_FOUND = "not_found"

    @property
    def is_permanent(self) -> bool:
        return self in (ErrorKind.INVALID_INPUT, ErrorKind.FORBIDDEN, ErrorKind.NOT_FOUND)

    @property
    def is_retryable(self) -> bool:
        return self in (ErrorKind.RATE_LIMITED, ErrorKind.TRANSIENT)


_CODE_TO_KIND = {
    InvalidArgumentError.code: ErrorKind.INVALID_INPUT,
    UnauthenticatedError.code: ErrorKind.FORBIDDEN,
    PermissionDeniedError.code: ErrorKind.FORBIDDEN,
    FailedPreconditionError.code: ErrorKind.FORBIDDEN,
    NotFoundError.code: ErrorKind.NOT_FOUND,
    ResourceExhaustedError.code: ErrorKind.RATE_LIMITED,
    "already-exists": ErrorKind.CONFLICT,
}

_STATUS_TO_KIND = {
    400: ErrorKind.INVALID_INPUT,
    401: ErrorKind.FORBIDDEN,
    403: ErrorKind.FORBIDDEN,
    404: ErrorKind.NOT_FOUND,
    409: ErrorKind.CONFLICT,
    412: ErrorKind.FORBIDDEN,
    422: ErrorKind.INVALID_INPUT,
    429: ErrorKind.RATE_LIMITED,
}


def classify_error(status_code: Optional[int], code: Optional[str] = None) -> ErrorKind:
    """
    Map a failed response onto an ErrorKind.

    The wire code wins over the HTTP status. Anything unrecognized, including
    5xx responses and a missing status (network failure), is transient.
    """
    if code and code in _CODE_TO_KIND:
        return _CODE_TO_KIND[code]
    if status_code is not None and status_code in _STATUS_TO_KIND:
        return _STATUS_TO_KIND[status_code]
    return ErrorKind.TRANSIENT
