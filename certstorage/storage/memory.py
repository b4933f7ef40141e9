"""
In-Memory Object Store Client

Process-local implementation of ObjectStoreClient with the same
observable semantics as the S3 client:
    - Entity tags change on every write
    - Conditional create/replace/delete
    - Delimiter-style non-recursive listing
    - RFC 1123 last-modified headers

Used for tests and local development. Buckets must be declared up front;
operations on an unknown bucket fail like a missing bucket on S3.

Example:
    client = InMemoryObjectClient("certs")
    await client.upload("certs", "gateway/a.crt", b"...")
    headers = (await client.stat("certs", "gateway/a.crt")).unwrap()
"""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import format_datetime
from uuid import uuid4

from certstorage.core import constants as C
from certstorage.core.errors import StorageError
from certstorage.core.types import Err, Ok, Result
from certstorage.storage.client import (
    BytesReader,
    ObjectHeaders,
    ObjectReader,
    ObjectStoreClient,
    probe_permissions,
)


@dataclass(frozen=True, slots=True)
class StoredObject:
    """Object body and the metadata a real store would report."""
    data: bytes
    etag: str
    last_modified: datetime

    def headers(self) -> ObjectHeaders:
        return ObjectHeaders({
            C.HEADER_LAST_MODIFIED: format_datetime(self.last_modified, usegmt=True),
            C.HEADER_CONTENT_LENGTH: str(len(self.data)),
            C.HEADER_ETAG: f'"{self.etag}"',
        })


class InMemoryObjectClient(ObjectStoreClient):
    """
    In-memory object store client.

    Args:
        *buckets: Names of the buckets that exist.
        read_only: Reject every write, as a store would for credentials
            without write permission.
    """

    def __init__(self, *buckets: str, read_only: bool = False) -> None:
        self._buckets: dict[str, dict[str, StoredObject]] = {b: {} for b in buckets}
        self._read_only = read_only
        self._readers: list[BytesReader] = []
        self._lock = threading.Lock()
        self.calls: list[tuple[str, str, str]] = []

    # -------------------------------------------------------------------------
    # HELPERS
    # -------------------------------------------------------------------------

    @property
    def unclosed_readers(self) -> int:
        """Readers handed out by download() and not yet closed."""
        with self._lock:
            return sum(1 for r in self._readers if not r.closed)

    def objects(self, bucket: str) -> dict[str, bytes]:
        """Snapshot of a bucket's contents."""
        with self._lock:
            return {k: o.data for k, o in self._bucket(bucket).items()}

    def _bucket(self, bucket: str) -> dict[str, StoredObject]:
        try:
            return self._buckets[bucket]
        except KeyError:
            raise LookupError(f"NoSuchBucket: {bucket}") from None

    def _record(self, operation: str, bucket: str, key: str) -> None:
        self.calls.append((operation, bucket, key))

    def _write(self, bucket: str, key: str, data: bytes) -> StoredObject:
        if self._read_only:
            raise PermissionError(f"AccessDenied: write {bucket}/{key}")
        obj = StoredObject(
            data=bytes(data),
            etag=uuid4().hex,
            last_modified=datetime.now(timezone.utc).replace(microsecond=0),
        )
        self._bucket(bucket)[key] = obj
        return obj

    # -------------------------------------------------------------------------
    # PLAIN OPERATIONS
    # -------------------------------------------------------------------------

    async def upload(self, bucket: str, key: str, data: bytes) -> Result[None, StorageError]:
        with self._lock:
            self._record("upload", bucket, key)
            try:
                self._write(bucket, key, data)
            except (LookupError, PermissionError) as e:
                return Err(StorageError.backend("upload", bucket, key, cause=e))
            return Ok(None)

    async def download(self, bucket: str, key: str) -> Result[ObjectReader, StorageError]:
        with self._lock:
            self._record("download", bucket, key)
            try:
                obj = self._bucket(bucket).get(key)
            except LookupError as e:
                return Err(StorageError.backend("download", bucket, key, cause=e))
            if obj is None:
                return Err(StorageError.not_found(bucket, key))
            reader = BytesReader(obj.data, bucket, key)
            self._readers.append(reader)
            return Ok(reader)

    async def delete(self, bucket: str, key: str) -> Result[None, StorageError]:
        with self._lock:
            self._record("delete", bucket, key)
            if self._read_only:
                return Err(StorageError.backend(
                    "delete", bucket, key, cause=PermissionError("AccessDenied")
                ))
            try:
                objects = self._bucket(bucket)
            except LookupError as e:
                return Err(StorageError.backend("delete", bucket, key, cause=e))
            if objects.pop(key, None) is None:
                return Err(StorageError.not_found(bucket, key))
            return Ok(None)

    async def list(
        self,
        bucket: str,
        prefix: str,
        recursive: bool,
    ) -> Result[list[str], StorageError]:
        with self._lock:
            self._record("list", bucket, prefix)
            try:
                keys = sorted(k for k in self._bucket(bucket) if k.startswith(prefix))
            except LookupError as e:
                return Err(StorageError.backend("list", bucket, prefix, cause=e))

        if recursive:
            return Ok(keys)

        result: list[str] = []
        seen: set[str] = set()
        for key in keys:
            rest = key[len(prefix):]
            idx = rest.find(C.KEY_SEPARATOR)
            entry = key if idx < 0 else prefix + rest[:idx + 1]
            if entry not in seen:
                seen.add(entry)
                result.append(entry)
        return Ok(result)

    async def stat(self, bucket: str, key: str) -> Result[ObjectHeaders, StorageError]:
        with self._lock:
            self._record("stat", bucket, key)
            try:
                obj = self._bucket(bucket).get(key)
            except LookupError as e:
                return Err(StorageError.backend("stat", bucket, key, cause=e))
            if obj is None:
                return Err(StorageError.not_found(bucket, key))
            return Ok(obj.headers())

    # -------------------------------------------------------------------------
    # CONDITIONAL OPERATIONS
    # -------------------------------------------------------------------------

    async def create(self, bucket: str, key: str, data: bytes) -> Result[str, StorageError]:
        with self._lock:
            self._record("create", bucket, key)
            try:
                if key in self._bucket(bucket):
                    return Err(StorageError.precondition_failed("create", bucket, key))
                return Ok(self._write(bucket, key, data).etag)
            except (LookupError, PermissionError) as e:
                return Err(StorageError.backend("create", bucket, key, cause=e))

    async def replace(
        self,
        bucket: str,
        key: str,
        data: bytes,
        etag: str,
    ) -> Result[str, StorageError]:
        with self._lock:
            self._record("replace", bucket, key)
            try:
                current = self._bucket(bucket).get(key)
                if current is None:
                    return Err(StorageError.not_found(bucket, key))
                if current.etag != etag:
                    return Err(StorageError.precondition_failed("replace", bucket, key))
                return Ok(self._write(bucket, key, data).etag)
            except (LookupError, PermissionError) as e:
                return Err(StorageError.backend("replace", bucket, key, cause=e))

    async def delete_if_match(self, bucket: str, key: str, etag: str) -> Result[None, StorageError]:
        with self._lock:
            self._record("delete_if_match", bucket, key)
            try:
                objects = self._bucket(bucket)
            except LookupError as e:
                return Err(StorageError.backend("delete_if_match", bucket, key, cause=e))
            current = objects.get(key)
            if current is None:
                return Err(StorageError.not_found(bucket, key))
            if current.etag != etag:
                return Err(StorageError.precondition_failed("delete_if_match", bucket, key))
            del objects[key]
            return Ok(None)

    async def read(self, bucket: str, key: str) -> Result[tuple[bytes, str], StorageError]:
        with self._lock:
            self._record("read", bucket, key)
            try:
                obj = self._bucket(bucket).get(key)
            except LookupError as e:
                return Err(StorageError.backend("read", bucket, key, cause=e))
            if obj is None:
                return Err(StorageError.not_found(bucket, key))
            return Ok((obj.data, obj.etag))

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    async def test_permissions(self, bucket: str, probe_key: str) -> Result[None, StorageError]:
        """Write, read, list and delete a probe object."""
        return await probe_permissions(self, bucket, probe_key)
