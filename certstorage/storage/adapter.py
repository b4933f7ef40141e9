"""
Certificate Storage: Persistence and Locking on an Object Store

CertStorage is the storage backend of a TLS certificate manager shared by a
fleet of gateway instances:
- store/load/delete/exists/list/stat of certificate material keyed by
  string paths, namespaced under ``bucket[/prefix]``
- lock/unlock by name, fleet-wide, via distributed mutexes on the same
  bucket

Each instance owns one object store client and one lock-handle cache.
Construction verifies bucket permissions; a storage that fails the probe
is never returned.

Usage:
    result = await CertStorage.open(credentials_blob, "certs/gateway")
    storage = result.unwrap()

    if (await storage.lock("example.com")).is_ok():
        try:
            await storage.store("certificates/example.com.crt", pem)
        finally:
            await storage.unlock("example.com")
"""

from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional, Union
from uuid import uuid4

from certstorage.core import constants as C
from certstorage.core.config import CertStorageConfig, LockConfig, S3ClientConfig, S3Credentials
from certstorage.core.errors import CertStorageError, LockError, StorageError
from certstorage.core.types import Err, Ok, Result
from certstorage.locking.cache import LockHandleCache
from certstorage.locking.mutex import ObjectMutex
from certstorage.observability.logging import StructuredLogger
from certstorage.observability.metrics import HistogramTimer, MetricsCollector
from certstorage.storage.client import ObjectHeaders, ObjectStoreClient
from certstorage.storage.keyspace import KeySpace
from certstorage.storage.s3_client import S3ObjectClient

_DECIMAL = re.compile(r"[+-]?[0-9]+")
_RFC1123 = re.compile(C.RFC1123_PATTERN)


@dataclass(frozen=True, slots=True)
class KeyInfo:
    """Metadata of a stored object."""
    key: str
    modified: datetime
    size: int
    is_terminal: bool = True


def _outcome(result: Result[Any, CertStorageError]) -> str:
    if result.is_ok():
        return "ok"
    if result.error.is_not_found:
        return "not_found"
    return "error"


def parse_key_info(key: str, headers: ObjectHeaders) -> Result[KeyInfo, StorageError]:
    """
    Build KeyInfo from object headers.

    ``last-modified`` must be RFC 1123 and ``content-length`` a base-10
    integer; anything else is METADATA_MALFORMED.
    """
    raw_modified = headers.get(C.HEADER_LAST_MODIFIED)
    if raw_modified is None or not _RFC1123.fullmatch(raw_modified):
        return Err(StorageError.metadata_malformed(C.HEADER_LAST_MODIFIED, raw_modified))
    try:
        # Locale independent, unlike strptime with %a/%b
        modified = parsedate_to_datetime(raw_modified)
    except ValueError as e:
        return Err(StorageError.metadata_malformed(C.HEADER_LAST_MODIFIED, raw_modified, cause=e))

    raw_size = headers.get(C.HEADER_CONTENT_LENGTH)
    if raw_size is None or not _DECIMAL.fullmatch(raw_size):
        return Err(StorageError.metadata_malformed(C.HEADER_CONTENT_LENGTH, raw_size))

    return Ok(KeyInfo(
        key=key,
        modified=modified.astimezone(timezone.utc),
        size=int(raw_size),
        is_terminal=True,
    ))


class CertStorage:
    """
    Storage and distributed-lock backend on an object store bucket.

    Build with ``open()`` or ``from_config()``; the constructor performs no
    I/O and no permission check.
    """

    __slots__ = (
        "_client", "_keyspace", "_locks", "_lock_config", "_logger",
        "_owns_client", "_op_seconds", "_lockcache_total", "_mutex_not_exists",
    )

    def __init__(
        self,
        client: ObjectStoreClient,
        keyspace: KeySpace,
        lock_config: Optional[LockConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        logger: Optional[StructuredLogger] = None,
        owns_client: bool = False,
    ) -> None:
        self._client = client
        self._keyspace = keyspace
        self._locks = LockHandleCache()
        self._lock_config = lock_config or LockConfig()
        self._logger = logger or StructuredLogger("certstorage")
        self._owns_client = owns_client

        metrics = metrics or MetricsCollector.get_instance()
        self._op_seconds = metrics.histogram(
            "certstorage_operation_seconds",
            ["operation", "outcome"],
            "Duration of storage and lock operations",
        )
        self._lockcache_total = metrics.counter(
            "certstorage_lockcache_total",
            ["hit"],
            "Lock handle cache lookups by lock()",
        )
        self._mutex_not_exists = metrics.counter(
            "certstorage_mutex_not_exists_total",
            help_text="unlock() calls for names never locked by this process",
        )

    # -------------------------------------------------------------------------
    # CONSTRUCTION
    # -------------------------------------------------------------------------

    @classmethod
    async def open(
        cls,
        credentials: Union[bytes, str, S3Credentials, None],
        path: str,
        *,
        client: Optional[ObjectStoreClient] = None,
        lock_config: Optional[LockConfig] = None,
        s3_config: Optional[S3ClientConfig] = None,
        metrics: Optional[MetricsCollector] = None,
        logger: Optional[StructuredLogger] = None,
    ) -> Result[CertStorage, CertStorageError]:
        """
        Create storage for ``bucket[/prefix]`` and verify permissions.

        Args:
            credentials: JSON credentials blob or parsed credentials.
                Ignored when a client is injected.
            path: ``bucket`` or ``bucket/prefix``.
            client: Pre-built client; its lifecycle stays with the caller.

        Returns:
            Ok(storage), or Err(INITIALIZATION) when the credentials, the
            client or the permission probe fail.
        """
        keyspace = KeySpace.from_path(path)
        if not keyspace.bucket:
            return Err(CertStorageError.initialization(f"path {path!r} has no bucket"))

        logger = logger or StructuredLogger("certstorage")
        owns_client = client is None

        if client is None:
            if isinstance(credentials, S3Credentials):
                parsed: Result[S3Credentials, CertStorageError] = Ok(credentials)
            elif credentials is None:
                return Err(CertStorageError.initialization("no credentials"))
            else:
                parsed = S3Credentials.from_json(credentials)
            if parsed.is_err():
                return Err(CertStorageError.initialization(
                    "cannot parse credentials", cause=parsed.error
                ))

            connected = await S3ObjectClient.connect(parsed.unwrap(), s3_config)
            if connected.is_err():
                return connected
            client = connected.unwrap()

        probe_key = keyspace.map(C.PERMISSION_PROBE_PREFIX + uuid4().hex)
        probe = await client.test_permissions(keyspace.bucket, probe_key)
        if probe.is_err():
            logger.error(
                "permission check failed",
                bucket=keyspace.bucket,
                key=probe_key,
                error=str(probe.error),
            )
            if owns_client:
                await client.close()
            return Err(CertStorageError.initialization(
                f"permission check on bucket {keyspace.bucket!r} failed", cause=probe.error
            ))

        logger.info("storage ready", bucket=keyspace.bucket, prefix=keyspace.prefix)
        return Ok(cls(
            client,
            keyspace,
            lock_config=lock_config,
            metrics=metrics,
            logger=logger,
            owns_client=owns_client,
        ))

    @classmethod
    async def from_config(
        cls,
        config: CertStorageConfig,
        metrics: Optional[MetricsCollector] = None,
    ) -> Result[CertStorage, CertStorageError]:
        """Open storage from validated configuration."""
        credentials = config.read_credentials()
        if credentials.is_err():
            return credentials
        return await cls.open(
            credentials.unwrap(),
            config.path,
            lock_config=config.lock,
            s3_config=config.s3,
            metrics=metrics,
        )

    async def close(self) -> None:
        """Close the client if this storage created it."""
        if self._owns_client:
            await self._client.close()

    async def __aenter__(self) -> CertStorage:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # -------------------------------------------------------------------------
    # PROPERTIES
    # -------------------------------------------------------------------------

    @property
    def bucket(self) -> str:
        return self._keyspace.bucket

    @property
    def prefix(self) -> str:
        return self._keyspace.prefix

    @property
    def locks(self) -> LockHandleCache:
        return self._locks

    def _timer(self, operation: str) -> HistogramTimer:
        return self._op_seconds.time(operation=operation)

    # -------------------------------------------------------------------------
    # LOCKING
    # -------------------------------------------------------------------------

    def _new_mutex(self, name: str) -> ObjectMutex:
        return ObjectMutex(
            self._keyspace.map(name),
            self._keyspace.bucket,
            self._client,
            logger=self._logger.named("lock"),
            config=self._lock_config,
        )

    async def lock(self, name: str, timeout: Optional[float] = None) -> Result[None, LockError]:
        """
        Acquire the fleet-wide lock for name.

        Blocks until acquired. With a timeout (seconds), gives up with
        LOCK_TIMEOUT. Cancellation of the caller propagates.
        """
        with self._timer("lock") as timer:
            try:
                mutex, hit = self._locks.get_or_create(name, lambda: self._new_mutex(name))
            except ValueError as e:
                timer.label(outcome="error")
                return Err(LockError.mutex_init_failed(name, cause=e))
            self._lockcache_total.inc(hit=str(hit).lower())

            if timeout is None:
                result = await mutex.acquire()
            else:
                try:
                    result = await asyncio.wait_for(mutex.acquire(), timeout)
                except asyncio.TimeoutError:
                    self._logger.warning("lock timed out", lock=name, timeout_seconds=timeout)
                    result = Err(LockError.timeout(name, timeout))

            timer.label(outcome=_outcome(result))
            return result

    async def unlock(self, name: str) -> Result[None, LockError]:
        """Release the lock for name taken by this process."""
        with self._timer("unlock") as timer:
            mutex = self._locks.get(name)
            if mutex is None:
                self._mutex_not_exists.inc()
                timer.label(outcome="error")
                return Err(LockError.not_cached(name))

            result = await mutex.release()
            timer.label(outcome=_outcome(result))
            return result

    # -------------------------------------------------------------------------
    # DATA OPERATIONS
    # -------------------------------------------------------------------------

    async def store(self, key: str, value: bytes) -> Result[None, StorageError]:
        """Write value at key, replacing any existing object."""
        k = self._keyspace.map(key)
        self._logger.debug("store", bucket=self.bucket, key=k)

        with self._timer("store") as timer:
            result = await self._client.upload(self.bucket, k, value)
            timer.label(outcome=_outcome(result))
            return result

    async def load(self, key: str) -> Result[bytes, StorageError]:
        """
        Read the object at key.

        Missing objects are NOT_FOUND. The body stream is always closed; a
        close failure is returned when the read succeeded and attached to
        the read error otherwise.
        """
        k = self._keyspace.map(key)
        self._logger.debug("load", bucket=self.bucket, key=k)

        with self._timer("load") as timer:
            opened = await self._client.download(self.bucket, k)
            if opened.is_err():
                timer.label(outcome=_outcome(opened))
                return opened

            reader = opened.unwrap()
            try:
                result = await reader.read()
            finally:
                closed = await reader.close()

            if closed.is_err():
                if result.is_ok():
                    result = closed
                else:
                    result = Err(result.error.with_context(close_error=str(closed.error)))

            timer.label(outcome=_outcome(result))
            return result

    async def delete(self, key: str) -> Result[None, StorageError]:
        """Delete the object at key. Missing objects are NOT_FOUND."""
        k = self._keyspace.map(key)
        self._logger.debug("delete", bucket=self.bucket, key=k)

        with self._timer("delete") as timer:
            result = await self._client.delete(self.bucket, k)
            timer.label(outcome=_outcome(result))
            return result

    async def exists(self, key: str) -> bool:
        """True iff the object's metadata can be read. Errors count as absent."""
        k = self._keyspace.map(key)

        with self._timer("exists") as timer:
            result = await self._client.stat(self.bucket, k)
            timer.label(outcome=_outcome(result))
            return result.is_ok()

    async def list(self, prefix: str, recursive: bool) -> Result[list[str], StorageError]:
        """
        List keys under prefix.

        Keys are physical object keys (including this storage's prefix).
        Non-recursive listing includes one ``.../`` entry per direct
        child prefix.
        """
        p = self._keyspace.map(prefix)
        self._logger.debug("list", bucket=self.bucket, prefix=p, recursive=recursive)

        with self._timer("list") as timer:
            result = await self._client.list(self.bucket, p, recursive)
            timer.label(outcome=_outcome(result))
            return result

    async def stat(self, key: str) -> Result[KeyInfo, StorageError]:
        """Size and modification time of the object at key."""
        k = self._keyspace.map(key)
        self._logger.debug("stat", bucket=self.bucket, key=k)

        with self._timer("stat") as timer:
            headers = await self._client.stat(self.bucket, k)
            result = headers.flat_map(lambda h: parse_key_info(k, h))
            timer.label(outcome=_outcome(result))
            return result

    def __repr__(self) -> str:
        return f"CertStorage({self._keyspace})"
