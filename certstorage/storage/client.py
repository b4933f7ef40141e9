"""
Object Store Client: the contract the storage facade and the distributed
mutex are built on.

Provides abstract interface for:
- Upload, download, delete, list and stat against a named bucket
- Conditional create/replace/delete keyed on entity tags (for leases)
- A startup permission probe

Every method returns a Result. A missing object is reported as
StorageError with ErrorCode.NOT_FOUND by the client itself; callers never
inspect backend exception types.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Iterator, Mapping, Optional

from certstorage.core import constants as C
from certstorage.core.errors import StorageError
from certstorage.core.types import Err, Ok, Result


class ObjectHeaders(Mapping[str, str]):
    """
    Case-insensitive, read-only view of object metadata headers.

    Guaranteed keys: ``last-modified`` (RFC 1123), ``content-length``
    (decimal string) and ``etag``.
    """

    __slots__ = ("_headers",)

    def __init__(self, headers: Optional[Mapping[str, str]] = None) -> None:
        self._headers = {k.lower(): v for k, v in (headers or {}).items()}

    def __getitem__(self, name: str) -> str:
        return self._headers[name.lower()]

    def __iter__(self) -> Iterator[str]:
        return iter(self._headers)

    def __len__(self) -> int:
        return len(self._headers)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and name.lower() in self._headers

    @property
    def etag(self) -> str:
        return self._headers.get(C.HEADER_ETAG, "").strip('"')

    def __repr__(self) -> str:
        return f"ObjectHeaders({self._headers!r})"


class ObjectReader(ABC):
    """
    Readable object body. Must be closed once consumed.

    Both methods report transport failures as StorageError values.
    """

    @abstractmethod
    async def read(self) -> Result[bytes, StorageError]:
        """Read the remaining body."""

    @abstractmethod
    async def close(self) -> Result[None, StorageError]:
        """Release the underlying stream or connection."""


class BytesReader(ObjectReader):
    """ObjectReader over an in-memory payload."""

    __slots__ = ("_data", "_closed", "_bucket", "_key")

    def __init__(self, data: bytes, bucket: str = "", key: str = "") -> None:
        self._data = data
        self._closed = False
        self._bucket = bucket
        self._key = key

    @property
    def closed(self) -> bool:
        return self._closed

    async def read(self) -> Result[bytes, StorageError]:
        if self._closed:
            return Err(StorageError.backend(
                "read", self._bucket, self._key, cause=ValueError("read from closed reader")
            ))
        data, self._data = self._data, b""
        return Ok(data)

    async def close(self) -> Result[None, StorageError]:
        self._closed = True
        return Ok(None)


class ObjectStoreClient(ABC):
    """Abstract object store client."""

    # -------------------------------------------------------------------------
    # PLAIN OPERATIONS
    # -------------------------------------------------------------------------

    @abstractmethod
    async def upload(self, bucket: str, key: str, data: bytes) -> Result[None, StorageError]:
        """Store object, overwriting any existing object at key."""

    @abstractmethod
    async def download(self, bucket: str, key: str) -> Result[ObjectReader, StorageError]:
        """Open object body for reading."""

    @abstractmethod
    async def delete(self, bucket: str, key: str) -> Result[None, StorageError]:
        """Delete object. NOT_FOUND when it does not exist."""

    @abstractmethod
    async def list(
        self,
        bucket: str,
        prefix: str,
        recursive: bool,
    ) -> Result[list[str], StorageError]:
        """
        List keys under prefix.

        Non-recursive listing returns direct child objects and one entry
        ending in ``/`` per direct child prefix.
        """

    @abstractmethod
    async def stat(self, bucket: str, key: str) -> Result[ObjectHeaders, StorageError]:
        """Object metadata without body."""

    # -------------------------------------------------------------------------
    # CONDITIONAL OPERATIONS
    # -------------------------------------------------------------------------

    @abstractmethod
    async def create(self, bucket: str, key: str, data: bytes) -> Result[str, StorageError]:
        """Store object only if key is absent. Returns the new etag."""

    @abstractmethod
    async def replace(
        self,
        bucket: str,
        key: str,
        data: bytes,
        etag: str,
    ) -> Result[str, StorageError]:
        """Overwrite object only if its etag matches. Returns the new etag."""

    @abstractmethod
    async def delete_if_match(self, bucket: str, key: str, etag: str) -> Result[None, StorageError]:
        """Delete object only if its etag matches."""

    @abstractmethod
    async def read(self, bucket: str, key: str) -> Result[tuple[bytes, str], StorageError]:
        """Read whole object with its etag."""

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    @abstractmethod
    async def test_permissions(self, bucket: str, probe_key: str) -> Result[None, StorageError]:
        """Verify the bucket is readable, listable and writable."""

    async def close(self) -> None:
        """Release client resources. Safe to call multiple times."""


async def probe_permissions(
    client: ObjectStoreClient,
    bucket: str,
    probe_key: str,
    body: Optional[bytes] = None,
) -> Result[None, StorageError]:
    """
    Benign write/read/list/delete cycle against a bucket.

    Shared by clients whose backend has no native permission-test call.
    Stops at the first failing step. Once the write succeeds the probe
    object is deleted whatever happens next; a failed cleanup is attached
    to the earlier error as context.
    """
    body = C.PERMISSION_PROBE_BODY if body is None else body

    result = await client.upload(bucket, probe_key, body)
    if result.is_err():
        return result

    try:
        checked = await _check_probe(client, bucket, probe_key, body)
    finally:
        deleted = await client.delete(bucket, probe_key)

    if checked.is_err():
        if deleted.is_err():
            return Err(checked.error.with_context(cleanup_error=str(deleted.error)))
        return checked
    return deleted


async def _check_probe(
    client: ObjectStoreClient,
    bucket: str,
    probe_key: str,
    body: bytes,
) -> Result[None, StorageError]:
    download = await client.download(bucket, probe_key)
    if download.is_err():
        return download
    reader = download.unwrap()
    try:
        read = await reader.read()
    finally:
        closed = await reader.close()
    if read.is_err():
        return read
    if closed.is_err():
        return closed
    if read.unwrap() != body:
        return Err(StorageError.backend(
            "test_permissions", bucket, probe_key,
            cause=ValueError("probe object read back with different content"),
        ))

    listing = await client.list(bucket, probe_key, True)
    if listing.is_err():
        return listing
    if probe_key not in listing.unwrap():
        return Err(StorageError.backend(
            "test_permissions", bucket, probe_key,
            cause=LookupError("probe object missing from listing"),
        ))
    return Ok(None)
