"""
Error Hierarchy for Certificate Storage

Design Principles:
- One tagged vocabulary: every error carries an ErrorCode set by the layer
  that detected the condition, and that code is never rewritten upstream
- Upper layers attach context (operation, bucket, key) but keep the kind
- Errors are values returned inside Err; raising is reserved for bugs

Each error includes:
- Error code for programmatic handling
- Human-readable message for logging
- Optional cause for root cause analysis
- Timestamp and id for correlation across gateway instances

Usage:
    result = await storage.load("certificates/example.com.crt")
    match result:
        case Ok(data):
            use(data)
        case Err(err) if err.code is ErrorCode.NOT_FOUND:
            issue_new_certificate()
        case Err(err):
            log_and_retry_later(err)
"""

from __future__ import annotations

import dataclasses
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from certstorage.core.types import Timestamp


# =============================================================================
# ERROR CODE ENUMERATION
# =============================================================================
class ErrorCode(Enum):
    """
    Error codes for programmatic error handling.

    Codes are grouped by subsystem:
    - 1xxx: Construction and configuration
    - 2xxx: Object storage
    - 3xxx: Distributed locking
    """

    # Construction (1xxx)
    INITIALIZATION = 1001
    CONFIGURATION = 1002

    # Object storage (2xxx)
    NOT_FOUND = 2001
    BACKEND = 2002
    METADATA_MALFORMED = 2003
    PRECONDITION_FAILED = 2004

    # Locking (3xxx)
    LOCK_NOT_CACHED = 3001
    MUTEX_INIT_FAILED = 3002
    ACQUIRE_FAILED = 3003
    LOCK_TIMEOUT = 3004
    NOT_HELD = 3005
    LEASE_LOST = 3006


# =============================================================================
# BASE ERROR CLASS
# =============================================================================
@dataclass
class CertStorageError(Exception):
    """
    Package-level error class.

    Every error returned by certstorage is an instance of this class, so
    callers can attribute a failure to the storage layer with a single
    isinstance check and branch on `code` for the specific kind.
    """

    code: ErrorCode
    message: str
    error_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: Timestamp = field(default_factory=Timestamp.now)
    cause: Optional[BaseException] = None
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)
        if self.cause is not None:
            self.__cause__ = self.cause

    @property
    def is_not_found(self) -> bool:
        return self.code is ErrorCode.NOT_FOUND

    def with_context(self, **kwargs: Any) -> CertStorageError:
        """
        Return a copy with additional context.

        The copy keeps the concrete class, code, id and cause.
        """
        return dataclasses.replace(self, context={**self.context, **kwargs})

    def to_dict(self) -> dict[str, Any]:
        """Serialize error to dictionary for structured logging."""
        data = {
            "error_id": self.error_id,
            "code": self.code.name,
            "code_value": self.code.value,
            "message": self.message,
            "timestamp_nanos": self.timestamp.nanos,
            "context": self.context,
        }
        if self.cause is not None:
            data["cause"] = repr(self.cause)
        return data

    @classmethod
    def initialization(
        cls,
        reason: str,
        cause: Optional[BaseException] = None,
    ) -> CertStorageError:
        """Storage could not be constructed (credentials, permissions)."""
        return cls(
            code=ErrorCode.INITIALIZATION,
            message=f"initialization failed: {reason}",
            cause=cause,
            context={"reason": reason},
        )

    @classmethod
    def configuration(
        cls,
        reason: str,
        cause: Optional[BaseException] = None,
    ) -> CertStorageError:
        """Configuration or credentials blob is invalid."""
        return cls(
            code=ErrorCode.CONFIGURATION,
            message=f"invalid configuration: {reason}",
            cause=cause,
            context={"reason": reason},
        )

    def __str__(self) -> str:
        text = f"certstorage: [{self.code.name}] {self.message}"
        if self.cause is not None:
            text += f": {self.cause}"
        return text

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"code={self.code.name}, "
            f"message={self.message!r}, "
            f"error_id={self.error_id!r})"
        )


# =============================================================================
# STORAGE ERRORS
# =============================================================================
@dataclass
class StorageError(CertStorageError):
    """
    Errors from the object store client and the storage facade.

    NOT_FOUND is produced only by clients, at the point the backend
    reports a missing object.
    """

    @classmethod
    def not_found(cls, bucket: str, key: str) -> StorageError:
        """Object does not exist."""
        return cls(
            code=ErrorCode.NOT_FOUND,
            message=f"object {key!r} does not exist",
            context={"bucket": bucket, "key": key},
        )

    @classmethod
    def backend(
        cls,
        operation: str,
        bucket: str,
        key: str,
        cause: Optional[BaseException] = None,
    ) -> StorageError:
        """Any other backend or transport failure."""
        return cls(
            code=ErrorCode.BACKEND,
            message=f"{operation} {key!r} failed",
            cause=cause,
            context={"operation": operation, "bucket": bucket, "key": key},
        )

    @classmethod
    def precondition_failed(cls, operation: str, bucket: str, key: str) -> StorageError:
        """Conditional write rejected (object exists or etag changed)."""
        return cls(
            code=ErrorCode.PRECONDITION_FAILED,
            message=f"{operation} {key!r} precondition failed",
            context={"operation": operation, "bucket": bucket, "key": key},
        )

    @classmethod
    def metadata_malformed(
        cls,
        header: str,
        value: Optional[str],
        cause: Optional[BaseException] = None,
    ) -> StorageError:
        """Object metadata could not be parsed."""
        return cls(
            code=ErrorCode.METADATA_MALFORMED,
            message=f"malformed {header} header {value!r}",
            cause=cause,
            context={"header": header, "value": value},
        )


# =============================================================================
# LOCK ERRORS
# =============================================================================
@dataclass
class LockError(CertStorageError):
    """Errors from the lock handle cache and the distributed mutex."""

    @classmethod
    def not_cached(cls, name: str) -> LockError:
        """unlock() for a name this process never locked."""
        return cls(
            code=ErrorCode.LOCK_NOT_CACHED,
            message=f"mutex for {name} not exists",
            context={"lock": name},
        )

    @classmethod
    def mutex_init_failed(cls, name: str, cause: Optional[BaseException] = None) -> LockError:
        return cls(
            code=ErrorCode.MUTEX_INIT_FAILED,
            message=f"cannot create mutex for {name}",
            cause=cause,
            context={"lock": name},
        )

    @classmethod
    def acquire_failed(cls, name: str, cause: Optional[BaseException] = None) -> LockError:
        return cls(
            code=ErrorCode.ACQUIRE_FAILED,
            message=f"cannot acquire {name}",
            cause=cause,
            context={"lock": name},
        )

    @classmethod
    def timeout(cls, name: str, timeout_seconds: float) -> LockError:
        return cls(
            code=ErrorCode.LOCK_TIMEOUT,
            message=f"acquiring {name} timed out after {timeout_seconds}s",
            context={"lock": name, "timeout_seconds": timeout_seconds},
        )

    @classmethod
    def not_held(cls, name: str) -> LockError:
        return cls(
            code=ErrorCode.NOT_HELD,
            message=f"{name} is not held",
            context={"lock": name},
        )

    @classmethod
    def lease_lost(cls, name: str, cause: Optional[BaseException] = None) -> LockError:
        """The lease expired or was broken by another holder."""
        return cls(
            code=ErrorCode.LEASE_LOST,
            message=f"lease on {name} was lost",
            cause=cause,
            context={"lock": name},
        )
