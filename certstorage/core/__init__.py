"""
Core module: Type definitions, error hierarchy, and configuration.

- Result/Either monad for expected failures
- Tagged error hierarchy rooted at CertStorageError
- Configuration management with validation
"""

from certstorage.core.types import (
    Result,
    Ok,
    Err,
    Timestamp,
)
from certstorage.core.errors import (
    ErrorCode,
    CertStorageError,
    StorageError,
    LockError,
)
from certstorage.core.config import (
    CertStorageConfig,
    LockConfig,
    S3ClientConfig,
    S3Credentials,
)

__all__ = [
    "Result",
    "Ok",
    "Err",
    "Timestamp",
    "ErrorCode",
    "CertStorageError",
    "StorageError",
    "LockError",
    "CertStorageConfig",
    "LockConfig",
    "S3ClientConfig",
    "S3Credentials",
]
