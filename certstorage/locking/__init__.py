"""
Locking module: Distributed mutex on object storage and the lock-handle cache.
"""

from certstorage.locking.mutex import LeaseRecord, MutexState, ObjectMutex
from certstorage.locking.cache import LockHandleCache

__all__ = [
    "LeaseRecord",
    "MutexState",
    "ObjectMutex",
    "LockHandleCache",
]
