"""
Error Hierarchy for the Bucket Operations Engine

Design Principles:
- Validation failures are raised/returned before any network call
- Store-reported errors are surfaced verbatim plus a readable message
- Partial bulk failure is a BatchResult, never an exception
- Carry full error context for debugging and audit trails

Each error carries:
- Unique error code for programmatic handling
- Human-readable message for logging and display
- Optional cause (the original store exception, unchanged)
- Timestamp and error id for correlation with logs

Usage:
    result = await client.rename(key, "new-name")
    match result:
        case Ok(new_key):
            show(new_key)
        case Err(CloudCoreError(code=ErrorCode.RENAME_INCOMPLETE) as err):
            warn(err.user_message)
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Sequence
from uuid import uuid4

from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from cloudcore.core import constants as C


# =============================================================================
# ERROR CODE ENUMERATION
# =============================================================================
class ErrorCode(Enum):
    """
    Unique error codes for programmatic error handling.

    Codes are grouped by origin:
    - 1xxx: Caller input (rejected before any network call)
    - 2xxx: Store-reported or transport failures
    - 3xxx: Transfer and composite-operation outcomes
    - 9xxx: Engine setup
    """

    # Caller input (1xxx)
    INVALID_PATH = 1001
    INVALID_ARGUMENT = 1002
    SIZE_EXCEEDED = 1003

    # Store (2xxx)
    ACCESS_DENIED = 2001
    NOT_FOUND = 2002
    OPERATION_FAILED = 2003
    TRANSIENT = 2004

    # Transfer (3xxx)
    CANCELLED = 3001
    CONFLICT = 3002
    RENAME_INCOMPLETE = 3003
    PARTIAL_BATCH_FAILURE = 3004

    # Setup (9xxx)
    NOT_INITIALIZED = 9001
    CONFIGURATION_ERROR = 9002


# Store error code -> readable message
USER_MESSAGES: dict[str, str] = {
    "NoSuchBucket": "Bucket not found",
    "NoSuchKey": "File not found",
    "NotFound": "Not found",
    "AccessDenied": "Access denied to bucket",
    "Forbidden": "Access denied to bucket",
    "InvalidAccessKeyId": "Invalid access key",
    "SignatureDoesNotMatch": "Invalid secret key",
    "ExpiredToken": "Session expired - please login again",
    "NetworkingError": "Network error - check your connection",
    "TimeoutError": "Request timed out",
    "RequestTimeout": "Request timed out",
    "Throttling": "Too many requests - please slow down",
    "ThrottlingException": "Too many requests - please slow down",
    "SlowDown": "Too many requests - please slow down",
}

_ACCESS_DENIED_CODES = frozenset({
    "AccessDenied", "Forbidden", "InvalidAccessKeyId",
    "SignatureDoesNotMatch", "ExpiredToken", "403",
})
_NOT_FOUND_CODES = frozenset({"NoSuchKey", "NoSuchBucket", "NotFound", "404"})

_CONNECTION_ERRORS: tuple[type[BaseException], ...] = (
    EndpointConnectionError,
    ConnectionClosedError,
    ConnectionResetError,
)
_TIMEOUT_ERRORS: tuple[type[BaseException], ...] = (
    ReadTimeoutError,
    ConnectTimeoutError,
    asyncio.TimeoutError,
)


# =============================================================================
# STORE ERROR INSPECTION
# =============================================================================
def error_code_of(exc: BaseException) -> Optional[str]:
    """Extract the store error code (or a transport error name)."""
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    if isinstance(exc, _TIMEOUT_ERRORS):
        return "TimeoutError"
    if isinstance(exc, _CONNECTION_ERRORS):
        return "NetworkingError"
    return getattr(exc, "code", None) or type(exc).__name__


def status_code_of(exc: BaseException) -> Optional[int]:
    """Extract the HTTP status reported with a store error, if any."""
    if isinstance(exc, ClientError):
        return exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
    status = getattr(exc, "status_code", None)
    return status if isinstance(status, int) else None


def is_transport_error(exc: BaseException) -> bool:
    """Connection drops and timeouts below the HTTP layer."""
    return isinstance(exc, _CONNECTION_ERRORS + _TIMEOUT_ERRORS)


# =============================================================================
# BASE ERROR CLASS
# =============================================================================
@dataclass
class CloudCoreError(Exception):
    """
    Base class for all engine errors.

    Provides:
    - Unique error ID for log correlation
    - Error code for programmatic handling
    - Cause: the original exception, never re-wrapped further
    """

    code: ErrorCode
    message: str
    error_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    cause: Optional[BaseException] = None
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def user_message(self) -> str:
        """Message suitable for display to an end user."""
        return self.message

    @property
    def store_code(self) -> Optional[str]:
        """Error code reported by the store, when the error came from it."""
        return self.context.get("store_code")

    def with_context(self, **kwargs: Any) -> CloudCoreError:
        """Return a copy with additional context fields."""
        return type(self)(
            code=self.code,
            message=self.message,
            error_id=self.error_id,
            timestamp=self.timestamp,
            cause=self.cause,
            context={**self.context, **kwargs},
        )

    def to_dict(self) -> dict[str, Any]:
        """Serialize for logging/API responses (cause excluded)."""
        return {
            "error_id": self.error_id,
            "code": self.code.name,
            "code_value": self.code.value,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
            "context": self.context,
        }

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message} (id={self.error_id[:8]})"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"code={self.code.name}, "
            f"message={self.message!r}, "
            f"error_id={self.error_id!r})"
        )

    @classmethod
    def not_initialized(cls, operation: str) -> CloudCoreError:
        """Engine used before a store client was attached."""
        return cls(
            code=ErrorCode.NOT_INITIALIZED,
            message="S3 client not initialized",
            context={"operation": operation},
        )

    @classmethod
    def configuration(cls, reason: str) -> CloudCoreError:
        return cls(
            code=ErrorCode.CONFIGURATION_ERROR,
            message=f"Configuration error: {reason}",
            context={"reason": reason},
        )

    @classmethod
    def invalid_argument(cls, name: str, value: Any, reason: str) -> CloudCoreError:
        return cls(
            code=ErrorCode.INVALID_ARGUMENT,
            message=f"Invalid {name}: {reason}",
            context={"argument": name, "value": str(value)[:100], "reason": reason},
        )


# =============================================================================
# PATH ERRORS
# =============================================================================
@dataclass
class PathError(CloudCoreError):
    """Key sanitizer/validator rejections. Always fatal, never retried."""

    @classmethod
    def invalid_path(cls, path: str, reason: str) -> PathError:
        return cls(
            code=ErrorCode.INVALID_PATH,
            message=f"Invalid path: {reason}",
            context={"path": path[:200], "reason": reason},
        )


# =============================================================================
# STORE ERRORS
# =============================================================================
@dataclass
class StoreError(CloudCoreError):
    """
    Failures reported by the remote object store or its transport.

    Built from the original exception after the retry executor has
    given up; the exception itself is kept as ``cause``.
    """

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        operation: str,
        key: Optional[str] = None,
        retried: bool = True,
    ) -> StoreError:
        """
        Map a store/transport exception to a typed error.

        Transient failures that went through the retry executor are
        reported as OPERATION_FAILED; those from calls that are never
        retried (non-idempotent) keep the TRANSIENT code so callers
        know a later attempt may succeed.
        """
        store_code = error_code_of(exc)
        status = status_code_of(exc)
        transient = (
            is_transport_error(exc)
            or store_code in C.RETRYABLE_ERROR_CODES
            or status in C.RETRYABLE_STATUS_CODES
        )

        if store_code in _ACCESS_DENIED_CODES or status == 403:
            code = ErrorCode.ACCESS_DENIED
        elif store_code in _NOT_FOUND_CODES or status == 404:
            code = ErrorCode.NOT_FOUND
        elif transient and not retried:
            code = ErrorCode.TRANSIENT
        else:
            code = ErrorCode.OPERATION_FAILED

        message = USER_MESSAGES.get(store_code or "")
        if message is None:
            if code is ErrorCode.ACCESS_DENIED:
                message = "Access denied"
            elif code is ErrorCode.NOT_FOUND:
                message = "Not found"
            else:
                message = f"{operation} failed: {exc}"

        return cls(
            code=code,
            message=message,
            cause=exc,
            context={
                "operation": operation,
                "key": key,
                "store_code": store_code,
                "http_status": status,
                "transient": transient,
            },
        )


# =============================================================================
# TRANSFER ERRORS
# =============================================================================
@dataclass
class TransferError(CloudCoreError):
    """Outcomes of uploads, downloads and composite operations."""

    @classmethod
    def size_exceeded(cls, key: str, size: int, limit: int) -> TransferError:
        return cls(
            code=ErrorCode.SIZE_EXCEEDED,
            message=f"File size exceeds maximum allowed ({limit // C.GB}GB)",
            context={"key": key, "size_bytes": size, "limit_bytes": limit},
        )

    @classmethod
    def cancelled(cls, operation: str, key: Optional[str] = None) -> TransferError:
        return cls(
            code=ErrorCode.CANCELLED,
            message="Operation cancelled",
            context={"operation": operation, "key": key},
        )

    @classmethod
    def source_unreadable(cls, key: str, source: str, cause: BaseException) -> TransferError:
        """Local content could not be read; nothing was stored for it."""
        return cls(
            code=ErrorCode.OPERATION_FAILED,
            message=f"Could not read '{source}': {cause}",
            cause=cause,
            context={"key": key, "source": source, "reason": type(cause).__name__},
        )

    @classmethod
    def conflict(cls, key: str) -> TransferError:
        return cls(
            code=ErrorCode.CONFLICT,
            message=f"An item named '{key.rsplit('/', 1)[-1]}' already exists",
            context={"key": key},
        )

    @classmethod
    def rename_incomplete(
        cls,
        source: str,
        destination: str,
        copied: int,
        reason: str,
        remaining: Sequence[str] = (),
        cause: Optional[BaseException] = None,
    ) -> TransferError:
        """
        Composite copy+delete stopped part way.

        No rollback is attempted: copies already made stay at the
        destination and originals not yet deleted stay at the source.
        """
        return cls(
            code=ErrorCode.RENAME_INCOMPLETE,
            message=(
                f"Move of '{source}' to '{destination}' did not complete: {reason}. "
                f"{copied} object(s) were confirmed copied; copies may exist at the destination."
            ),
            cause=cause,
            context={
                "source": source,
                "destination": destination,
                "copied": copied,
                "remaining": list(remaining)[:100],
                "remaining_count": len(remaining),
            },
        )
