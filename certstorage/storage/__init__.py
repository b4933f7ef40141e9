"""
Storage module: Object store clients and the certificate storage facade.

- ObjectStoreClient contract with S3 (aioboto3) and in-memory implementations
- KeySpace mapping of logical keys into a bucket prefix
- CertStorage: persistence and fleet-wide locking for certificate managers
"""

from certstorage.storage.client import (
    BytesReader,
    ObjectHeaders,
    ObjectReader,
    ObjectStoreClient,
    probe_permissions,
)
from certstorage.storage.keyspace import KeySpace
from certstorage.storage.memory import InMemoryObjectClient
from certstorage.storage.s3_client import S3ObjectClient
from certstorage.storage.adapter import CertStorage, KeyInfo

__all__ = [
    "BytesReader",
    "ObjectHeaders",
    "ObjectReader",
    "ObjectStoreClient",
    "probe_permissions",
    "KeySpace",
    "InMemoryObjectClient",
    "S3ObjectClient",
    "CertStorage",
    "KeyInfo",
]
