"""
S3-Compatible Object Store Client
=================================

ObjectStoreClient on aioboto3 for AWS S3 and S3-compatible services
(MinIO, Cloudflare R2, the GCS interoperability endpoint).

Design Principles:
------------------
1. **Result Monad**: No exceptions for control flow; botocore errors are
   classified once, here, into NOT_FOUND / PRECONDITION_FAILED / BACKEND
2. **Streaming Reads**: download() hands out the response body; the caller
   reads and closes it
3. **Conditional Writes**: If-None-Match / If-Match on put and delete back
   the distributed mutex
4. **Paginated Listing**: list_objects_v2 paginator, with Delimiter for
   non-recursive listing

Operation Mapping:
------------------
| Operation       | S3 call                                  |
|-----------------|------------------------------------------|
| upload          | PutObject                                |
| download        | GetObject (streaming body)               |
| delete          | HeadObject + DeleteObject                |
| list            | ListObjectsV2 (paginated)                |
| stat            | HeadObject                               |
| create          | PutObject If-None-Match: *               |
| replace         | PutObject If-Match: etag                 |
| delete_if_match | DeleteObject If-Match: etag              |
| read            | GetObject (buffered)                     |

Thread Safety:
--------------
- aiobotocore clients are safe for concurrent tasks on one event loop
- No shared mutable state in instance beyond the client
"""

from __future__ import annotations

import asyncio
import inspect
from datetime import datetime
from email.utils import format_datetime
from typing import TYPE_CHECKING, Any, Optional

import aioboto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from certstorage.core import constants as C
from certstorage.core.config import S3ClientConfig, S3Credentials
from certstorage.core.errors import CertStorageError, StorageError
from certstorage.core.types import Err, Ok, Result
from certstorage.observability.logging import StructuredLogger
from certstorage.storage.client import (
    ObjectHeaders,
    ObjectReader,
    ObjectStoreClient,
    probe_permissions,
)

# Type stubs only; aiobotocore builds the client class at runtime
if TYPE_CHECKING:
    from types_aiobotocore_s3 import S3Client

_TRANSPORT_ERRORS = (BotoCoreError, asyncio.TimeoutError, OSError)

logger = StructuredLogger("certstorage.s3")


# =============================================================================
# ERROR CLASSIFICATION
# =============================================================================

def _client_error_code(exc: ClientError) -> str:
    """Error code of a botocore ClientError, falling back to the HTTP status."""
    response = getattr(exc, "response", None) or {}
    code = response.get("Error", {}).get("Code")
    if code:
        return str(code)
    return str(response.get("ResponseMetadata", {}).get("HTTPStatusCode", ""))


def classify_error(
    operation: str,
    bucket: str,
    key: str,
    exc: BaseException,
) -> StorageError:
    """Map a botocore/transport exception to a StorageError."""
    if isinstance(exc, ClientError):
        code = _client_error_code(exc)
        if code in C.S3_NOT_FOUND_CODES:
            return StorageError.not_found(bucket, key).with_context(operation=operation)
        if code in C.S3_PRECONDITION_CODES:
            return StorageError.precondition_failed(operation, bucket, key)
    return StorageError.backend(operation, bucket, key, cause=exc)


def _quote_etag(etag: str) -> str:
    return etag if etag.startswith('"') else f'"{etag}"'


def _unquote_etag(etag: Optional[str]) -> str:
    return (etag or "").strip('"')


# =============================================================================
# STREAMING READER
# =============================================================================

class S3ObjectReader(ObjectReader):
    """ObjectReader over a GetObject streaming body."""

    __slots__ = ("_body", "_closed", "_bucket", "_key")

    def __init__(self, body: Any, bucket: str, key: str) -> None:
        self._body = body
        self._closed = False
        self._bucket = bucket
        self._key = key

    async def read(self) -> Result[bytes, StorageError]:
        try:
            return Ok(await self._body.read())
        except (ClientError, ValueError, *_TRANSPORT_ERRORS) as e:
            return Err(classify_error("read", self._bucket, self._key, e))

    async def close(self) -> Result[None, StorageError]:
        if self._closed:
            return Ok(None)
        self._closed = True
        try:
            # aiobotocore's StreamingBody.close() is sync on aiohttp, async on httpx
            result = self._body.close()
            if inspect.isawaitable(result):
                await result
        except _TRANSPORT_ERRORS as e:
            return Err(StorageError.backend("close", self._bucket, self._key, cause=e))
        return Ok(None)


# =============================================================================
# S3 OBJECT CLIENT
# =============================================================================

class S3ObjectClient(ObjectStoreClient):
    """
    S3-compatible object store client.

    Example:
        >>> creds = S3Credentials.from_json(blob).unwrap()
        >>> client = (await S3ObjectClient.connect(creds)).unwrap()
        >>> await client.upload("certs", "gateway/a.crt", data)
        >>> await client.close()

    Tests construct the client directly around a fake aiobotocore client.
    """

    __slots__ = ("_client", "_client_cm", "_page_size")

    def __init__(
        self,
        client: S3Client,
        client_cm: Any = None,
        page_size: int = C.S3_LIST_PAGE_SIZE,
    ) -> None:
        """
        Args:
            client: Entered aiobotocore S3 client.
            client_cm: The client's async context manager, exited on close().
            page_size: Keys requested per ListObjectsV2 page.
        """
        self._client = client
        self._client_cm = client_cm
        self._page_size = page_size

    # -------------------------------------------------------------------------
    # CONNECTION MANAGEMENT
    # -------------------------------------------------------------------------

    @classmethod
    async def connect(
        cls,
        credentials: S3Credentials,
        config: Optional[S3ClientConfig] = None,
    ) -> Result[S3ObjectClient, CertStorageError]:
        """
        Create aioboto3 session and S3 client.

        Returns:
            Ok(client) on success, Err(INITIALIZATION) on failure.
        """
        config = config or S3ClientConfig()

        client_config = Config(
            max_pool_connections=config.max_pool_connections,
            connect_timeout=config.connect_timeout_seconds,
            read_timeout=config.read_timeout_seconds,
            retries={"max_attempts": config.max_retries, "mode": "standard"},
            s3={"addressing_style": config.addressing_style},
        )

        client_kwargs: dict[str, Any] = {"config": client_config}
        if credentials.endpoint_url:
            client_kwargs["endpoint_url"] = credentials.endpoint_url
        if not config.verify_ssl:
            client_kwargs["verify"] = False

        try:
            session = aioboto3.Session(**credentials.session_kwargs())
            client_cm = session.client("s3", **client_kwargs)
            client = await client_cm.__aenter__()
        except (BotoCoreError, ValueError) as e:
            return Err(CertStorageError.initialization("cannot create S3 client", cause=e))

        logger.debug(
            "s3 client created",
            region=credentials.region,
            endpoint=credentials.endpoint_url,
        )
        return Ok(cls(client, client_cm))

    async def close(self) -> None:
        """Close S3 client and release resources. Safe to call multiple times."""
        if self._client_cm is not None:
            cm, self._client_cm = self._client_cm, None
            await cm.__aexit__(None, None, None)

    # -------------------------------------------------------------------------
    # PLAIN OPERATIONS
    # -------------------------------------------------------------------------

    async def upload(self, bucket: str, key: str, data: bytes) -> Result[None, StorageError]:
        try:
            await self._client.put_object(Bucket=bucket, Key=key, Body=data)
        except (ClientError, *_TRANSPORT_ERRORS) as e:
            return Err(classify_error("upload", bucket, key, e))
        return Ok(None)

    async def download(self, bucket: str, key: str) -> Result[ObjectReader, StorageError]:
        try:
            response = await self._client.get_object(Bucket=bucket, Key=key)
        except (ClientError, *_TRANSPORT_ERRORS) as e:
            return Err(classify_error("download", bucket, key, e))
        return Ok(S3ObjectReader(response["Body"], bucket, key))

    async def delete(self, bucket: str, key: str) -> Result[None, StorageError]:
        """
        Delete object.

        DeleteObject succeeds for absent keys, so existence is checked with
        HeadObject first to report NOT_FOUND.
        """
        try:
            await self._client.head_object(Bucket=bucket, Key=key)
            await self._client.delete_object(Bucket=bucket, Key=key)
        except (ClientError, *_TRANSPORT_ERRORS) as e:
            return Err(classify_error("delete", bucket, key, e))
        return Ok(None)

    async def list(
        self,
        bucket: str,
        prefix: str,
        recursive: bool,
    ) -> Result[list[str], StorageError]:
        kwargs: dict[str, Any] = {
            "Bucket": bucket,
            "Prefix": prefix,
            "PaginationConfig": {"PageSize": self._page_size},
        }
        if not recursive:
            kwargs["Delimiter"] = C.KEY_SEPARATOR

        keys: list[str] = []
        try:
            paginator = self._client.get_paginator("list_objects_v2")
            async for page in paginator.paginate(**kwargs):
                # Store order: objects, then the page's common prefixes
                keys.extend(obj["Key"] for obj in page.get("Contents", []))
                keys.extend(p["Prefix"] for p in page.get("CommonPrefixes", []))
        except (ClientError, *_TRANSPORT_ERRORS) as e:
            return Err(classify_error("list", bucket, prefix, e))
        return Ok(keys)

    async def stat(self, bucket: str, key: str) -> Result[ObjectHeaders, StorageError]:
        try:
            response = await self._client.head_object(Bucket=bucket, Key=key)
        except (ClientError, *_TRANSPORT_ERRORS) as e:
            return Err(classify_error("stat", bucket, key, e))

        headers = dict(response.get("ResponseMetadata", {}).get("HTTPHeaders", {}))
        headers = {k.lower(): str(v) for k, v in headers.items()}

        # Some S3-compatible stores omit raw headers from the parsed response
        modified = response.get("LastModified")
        if C.HEADER_LAST_MODIFIED not in headers and isinstance(modified, datetime):
            headers[C.HEADER_LAST_MODIFIED] = format_datetime(modified, usegmt=True)
        if C.HEADER_CONTENT_LENGTH not in headers and "ContentLength" in response:
            headers[C.HEADER_CONTENT_LENGTH] = str(response["ContentLength"])
        if C.HEADER_ETAG not in headers and "ETag" in response:
            headers[C.HEADER_ETAG] = response["ETag"]

        return Ok(ObjectHeaders(headers))

    # -------------------------------------------------------------------------
    # CONDITIONAL OPERATIONS
    # -------------------------------------------------------------------------

    async def create(self, bucket: str, key: str, data: bytes) -> Result[str, StorageError]:
        try:
            response = await self._client.put_object(
                Bucket=bucket,
                Key=key,
                Body=data,
                ContentType=C.LOCK_CONTENT_TYPE,
                IfNoneMatch="*",
            )
        except (ClientError, *_TRANSPORT_ERRORS) as e:
            return Err(classify_error("create", bucket, key, e))
        return Ok(_unquote_etag(response.get("ETag")))

    async def replace(
        self,
        bucket: str,
        key: str,
        data: bytes,
        etag: str,
    ) -> Result[str, StorageError]:
        try:
            response = await self._client.put_object(
                Bucket=bucket,
                Key=key,
                Body=data,
                ContentType=C.LOCK_CONTENT_TYPE,
                IfMatch=_quote_etag(etag),
            )
        except (ClientError, *_TRANSPORT_ERRORS) as e:
            return Err(classify_error("replace", bucket, key, e))
        return Ok(_unquote_etag(response.get("ETag")))

    async def delete_if_match(self, bucket: str, key: str, etag: str) -> Result[None, StorageError]:
        try:
            await self._client.delete_object(Bucket=bucket, Key=key, IfMatch=_quote_etag(etag))
        except (ClientError, *_TRANSPORT_ERRORS) as e:
            return Err(classify_error("delete_if_match", bucket, key, e))
        return Ok(None)

    async def read(self, bucket: str, key: str) -> Result[tuple[bytes, str], StorageError]:
        try:
            response = await self._client.get_object(Bucket=bucket, Key=key)
            async with response["Body"] as stream:
                data = await stream.read()
        except (ClientError, *_TRANSPORT_ERRORS) as e:
            return Err(classify_error("read", bucket, key, e))
        return Ok((data, _unquote_etag(response.get("ETag"))))

    # -------------------------------------------------------------------------
    # LIFECYCLE
    # -------------------------------------------------------------------------

    async def test_permissions(self, bucket: str, probe_key: str) -> Result[None, StorageError]:
        """Write, read, list and delete a probe object."""
        return await probe_permissions(self, bucket, probe_key)
