"""
Lock Handle Cache

Per-storage registry of distributed mutexes, one per lock name for the
lifetime of the process. Entries are never evicted: the cache grows by one
handle per distinct name ever locked.

The guard is a threading.Lock covering lookup-or-insert only. It is never
held across an await, so callers on different event loops (one per thread)
can share a cache.
"""

from __future__ import annotations

import threading
from typing import Callable, Optional

from certstorage.locking.mutex import ObjectMutex


class LockHandleCache:
    """
    Name -> ObjectMutex map with atomic get-or-create.

    Usage:
        cache = LockHandleCache()
        mutex, hit = cache.get_or_create("example.com", lambda: ObjectMutex(...))
        ...
        mutex = cache.get("example.com")
    """

    __slots__ = ("_locks", "_guard")

    def __init__(self) -> None:
        self._locks: dict[str, ObjectMutex] = {}
        self._guard = threading.Lock()

    def get_or_create(
        self,
        name: str,
        factory: Callable[[], ObjectMutex],
    ) -> tuple[ObjectMutex, bool]:
        """
        Return the cached mutex for name, creating it on a miss.

        The factory runs under the guard so concurrent callers for one name
        observe a single instance. If the factory raises, nothing is cached
        and the exception propagates.

        Returns:
            (mutex, hit) where hit is True when the mutex was already cached.
        """
        with self._guard:
            mutex = self._locks.get(name)
            if mutex is not None:
                return mutex, True
            mutex = factory()
            self._locks[name] = mutex
            return mutex, False

    def get(self, name: str) -> Optional[ObjectMutex]:
        with self._guard:
            return self._locks.get(name)

    def names(self) -> list[str]:
        with self._guard:
            return sorted(self._locks)

    def __contains__(self, name: object) -> bool:
        with self._guard:
            return name in self._locks

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)
