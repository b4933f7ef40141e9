"""
Distributed Mutex: Lease Objects with Conditional Writes

Provides fleet-wide mutual exclusion on top of an object store:
- Lease record stored as a small JSON object at the lock name
- Acquisition by create-if-absent, so exactly one writer wins
- Automatic lease refresh while held
- Stale-lease recovery once a holder stops refreshing
- Exponential backoff with jitter under contention

Algorithm:
    1. create(name, lease) with If-None-Match. Success means HELD_BY_SELF.
    2. On conflict, read the current lease and its etag.
       - Expired (or unreadable): delete_if_match(etag) and retry at once.
       - Live: HELD_BY_OTHER; sleep with backoff and retry.
    3. While held, a background task rewrites the lease with
       replace(etag) every refresh interval, pushing expiry forward.
    4. release() stops the refresh task, then delete_if_match(own etag).

Safety Guarantees:
    - Mutual exclusion: conditional create admits one holder at a time
    - Crash recovery: a holder that stops refreshing loses the lease at expiry
    - No foreign release: deletes are conditioned on the holder's own etag

Lease expiry is wall-clock time, so hosts sharing a lock need clocks
synchronized to well within the lease TTL.
"""

from __future__ import annotations

import asyncio
import json
import random
from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional
from uuid import uuid4

from certstorage.core import constants as C
from certstorage.core.config import LockConfig
from certstorage.core.errors import CertStorageError, ErrorCode, LockError
from certstorage.core.types import Err, Ok, Result, Timestamp
from certstorage.observability.logging import StructuredLogger
from certstorage.storage.client import ObjectStoreClient


# =============================================================================
# LEASE STATE
# =============================================================================
class MutexState(Enum):
    """Lock state as observed by this mutex."""
    UNHELD = auto()
    HELD_BY_SELF = auto()
    HELD_BY_OTHER = auto()


@dataclass(frozen=True, slots=True)
class LeaseRecord:
    """Lease record stored in the lock object."""
    holder: str
    expires_at_ns: int
    acquired_at_ns: int

    def is_expired(self, now: Optional[Timestamp] = None) -> bool:
        now = now or Timestamp.now()
        return now.nanos >= self.expires_at_ns

    def renewed(self, ttl_seconds: float) -> LeaseRecord:
        """Same lease with expiry pushed ttl_seconds past now."""
        return LeaseRecord(
            holder=self.holder,
            expires_at_ns=Timestamp.now().after_seconds(ttl_seconds).nanos,
            acquired_at_ns=self.acquired_at_ns,
        )

    def encode(self) -> bytes:
        return json.dumps({
            "holder": self.holder,
            "expires_at_ns": self.expires_at_ns,
            "acquired_at_ns": self.acquired_at_ns,
        }).encode()

    @classmethod
    def decode(cls, data: bytes) -> LeaseRecord:
        """
        Parse a lease record.

        Raises:
            ValueError: data is not a lease record
        """
        try:
            raw = json.loads(data)
            record = cls(
                holder=str(raw["holder"]),
                expires_at_ns=int(raw["expires_at_ns"]),
                acquired_at_ns=int(raw["acquired_at_ns"]),
            )
        except (TypeError, KeyError, AttributeError, OverflowError, UnicodeDecodeError) as e:
            raise ValueError(f"malformed lease record: {e}") from e
        return record


# =============================================================================
# DISTRIBUTED MUTEX
# =============================================================================
class ObjectMutex:
    """
    Distributed mutex backed by a lease object.

    One instance is shared by every caller in a process that locks the
    same name. The mutex is not re-entrant: a second acquire() on the same
    instance waits until the first holder releases.

    Usage:
        mutex = ObjectMutex("gateway/issue_cert_example.com", "certs", client)

        result = await mutex.acquire()
        if result.is_ok():
            try:
                renew_certificate()
            finally:
                await mutex.release()
    """

    __slots__ = (
        "_name", "_bucket", "_client", "_logger", "_config",
        "_holder", "_state", "_etag", "_lease", "_refresh_task",
    )

    def __init__(
        self,
        name: str,
        bucket: str,
        client: ObjectStoreClient,
        logger: Optional[StructuredLogger] = None,
        config: Optional[LockConfig] = None,
        holder: Optional[str] = None,
    ) -> None:
        """
        Raises:
            ValueError: empty name or bucket
        """
        if not name:
            raise ValueError("mutex name must not be empty")
        if not bucket:
            raise ValueError("mutex bucket must not be empty")

        self._name = name
        self._bucket = bucket
        self._client = client
        self._logger = (logger or StructuredLogger("certstorage.lock")).with_extra(lock=name)
        self._config = config or LockConfig()
        self._holder = holder or uuid4().hex
        self._state = MutexState.UNHELD
        self._etag: Optional[str] = None
        self._lease: Optional[LeaseRecord] = None
        self._refresh_task: Optional[asyncio.Task[None]] = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def holder(self) -> str:
        return self._holder

    @property
    def state(self) -> MutexState:
        return self._state

    # -------------------------------------------------------------------------
    # ACQUIRE
    # -------------------------------------------------------------------------

    async def acquire(self) -> Result[None, LockError]:
        """
        Block until the lease is held.

        Contention is retried indefinitely; bound the wait with
        asyncio.wait_for(). Any backend error other
        than a lost create race fails with ACQUIRE_FAILED.
        """
        attempt = 0

        while True:
            now = Timestamp.now()
            lease = LeaseRecord(
                holder=self._holder,
                expires_at_ns=now.after_seconds(self._config.ttl_seconds).nanos,
                acquired_at_ns=now.nanos,
            )

            created = await self._client.create(self._bucket, self._name, lease.encode())
            if created.is_ok():
                self._on_acquired(created.unwrap(), lease)
                return Ok(None)

            if created.error.code is not ErrorCode.PRECONDITION_FAILED:
                self._logger.warning("acquire failed", error=str(created.error))
                return Err(LockError.acquire_failed(self._name, cause=created.error))

            current = await self._client.read(self._bucket, self._name)
            if current.is_err():
                if current.error.is_not_found:
                    # Released between our create and read
                    continue
                self._logger.warning("reading lease failed", error=str(current.error))
                return Err(LockError.acquire_failed(self._name, cause=current.error))

            data, etag = current.unwrap()
            try:
                other: Optional[LeaseRecord] = LeaseRecord.decode(data)
            except ValueError as e:
                self._logger.warning("unreadable lease record", error=str(e))
                other = None

            if other is None or other.is_expired():
                broken = await self._client.delete_if_match(self._bucket, self._name, etag)
                if broken.is_err() and broken.error.code not in (
                    ErrorCode.NOT_FOUND,
                    ErrorCode.PRECONDITION_FAILED,
                ):
                    self._logger.warning("breaking stale lease failed", error=str(broken.error))
                    return Err(LockError.acquire_failed(self._name, cause=broken.error))
                if broken.is_ok():
                    self._logger.info(
                        "broke stale lease",
                        stale_holder=other.holder if other else None,
                    )
                continue

            if self._state is MutexState.UNHELD:
                self._state = MutexState.HELD_BY_OTHER
            delay = self._backoff_seconds(attempt)
            self._logger.debug(
                "lock contended",
                other_holder=other.holder,
                attempt=attempt,
                retry_in_ms=int(delay * C.SECOND_MS),
            )
            attempt += 1
            await asyncio.sleep(delay)

    def _backoff_seconds(self, attempt: int) -> float:
        """Exponential backoff with jitter."""
        backoff = min(
            self._config.backoff_max_ms,
            self._config.backoff_base_ms * (2 ** min(attempt, 16)),
        )
        jitter = random.uniform(0, backoff * C.LOCK_BACKOFF_JITTER)
        return (backoff + jitter) / C.SECOND_MS

    def _on_acquired(self, etag: str, lease: LeaseRecord) -> None:
        self._state = MutexState.HELD_BY_SELF
        self._etag = etag
        self._lease = lease
        self._refresh_task = asyncio.create_task(self._refresh_loop())
        self._logger.info("acquired", holder=self._holder)

    # -------------------------------------------------------------------------
    # REFRESH
    # -------------------------------------------------------------------------

    async def _refresh_loop(self) -> None:
        """Background task keeping the lease alive while held."""
        while self._state is MutexState.HELD_BY_SELF:
            await asyncio.sleep(self._config.refresh_interval_seconds)

            if self._state is not MutexState.HELD_BY_SELF or self._lease is None:
                return

            lease = self._lease.renewed(self._config.ttl_seconds)
            result = await self._client.replace(
                self._bucket, self._name, lease.encode(), self._etag or ""
            )
            if result.is_err():
                # The lease expires on its own; release() reports LEASE_LOST
                self._logger.warning("lease refresh failed", error=str(result.error))
                return

            self._etag = result.unwrap()
            self._lease = lease
            self._logger.debug("lease refreshed", expires_at_ns=lease.expires_at_ns)

    async def _stop_refresh(self) -> None:
        task, self._refresh_task = self._refresh_task, None
        if task is None or task.done():
            return
        task.cancel()
        if task.get_loop() is asyncio.get_running_loop():
            # Waiting does not re-raise the task's CancelledError
            await asyncio.wait({task})

    # -------------------------------------------------------------------------
    # RELEASE
    # -------------------------------------------------------------------------

    async def release(self) -> Result[None, LockError]:
        """
        Release the lease.

        Returns:
            Ok(None) when our lease object was deleted.
            Err(NOT_HELD) when this mutex does not hold the lease.
            Err(LEASE_LOST) when the lease expired or was taken over.
        """
        if self._state is not MutexState.HELD_BY_SELF:
            return Err(LockError.not_held(self._name))

        self._state = MutexState.UNHELD
        await self._stop_refresh()
        etag, lease = self._etag or "", self._lease
        self._etag = None
        self._lease = None

        result = await self._client.delete_if_match(self._bucket, self._name, etag)
        if result.is_err() and result.error.code is ErrorCode.PRECONDITION_FAILED:
            # A refresh may have landed after its etag was recorded
            result = await self._delete_own_lease(lease)

        if result.is_err():
            self._logger.warning("lease lost before release", error=str(result.error))
            if isinstance(result.error, LockError):
                return result
            return Err(LockError.lease_lost(self._name, cause=result.error))

        self._logger.info("released", holder=self._holder)
        return Ok(None)

    async def _delete_own_lease(
        self,
        lease: Optional[LeaseRecord],
    ) -> Result[None, CertStorageError]:
        """Delete the lock object if it still carries our lease."""
        current = await self._client.read(self._bucket, self._name)
        if current.is_err():
            return current
        data, etag = current.unwrap()
        try:
            stored = LeaseRecord.decode(data)
        except ValueError as e:
            return Err(LockError.lease_lost(self._name, cause=e))
        if lease is None or (stored.holder, stored.acquired_at_ns) != (
            lease.holder,
            lease.acquired_at_ns,
        ):
            return Err(LockError.lease_lost(self._name))
        return await self._client.delete_if_match(self._bucket, self._name, etag)

    def __repr__(self) -> str:
        return (
            f"ObjectMutex(name={self._name!r}, bucket={self._bucket!r}, "
            f"state={self._state.name})"
        )
