"""
Certificate Storage on Object Stores

Shared persistence and fleet-wide locking for a TLS certificate lifecycle
manager running on many independently deployed gateway instances:
- Storage: store/load/delete/exists/list/stat under ``bucket[/prefix]``
- Locking: distributed mutexes synthesized from conditional object writes
- Clients: S3-compatible stores (aioboto3) and an in-memory store

License: MIT
"""

__version__ = "1.0.0"

# =============================================================================
# PUBLIC API EXPORTS
# =============================================================================
from certstorage.core.types import Result, Ok, Err, Timestamp
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
from certstorage.storage import (
    CertStorage,
    KeyInfo,
    KeySpace,
    ObjectStoreClient,
    InMemoryObjectClient,
    S3ObjectClient,
)
from certstorage.locking import ObjectMutex, LockHandleCache, MutexState

__all__ = [
    "__version__",
    # Result monad
    "Result",
    "Ok",
    "Err",
    "Timestamp",
    # Errors
    "ErrorCode",
    "CertStorageError",
    "StorageError",
    "LockError",
    # Config
    "CertStorageConfig",
    "LockConfig",
    "S3ClientConfig",
    "S3Credentials",
    # Storage
    "CertStorage",
    "KeyInfo",
    "KeySpace",
    "ObjectStoreClient",
    "InMemoryObjectClient",
    "S3ObjectClient",
    # Locking
    "ObjectMutex",
    "LockHandleCache",
    "MutexState",
]
