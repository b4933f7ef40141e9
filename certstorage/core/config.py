"""
Configuration Management for Certificate Storage

Provides validated configuration with sensible defaults.
Supports environment variable overrides.

Design:
- Immutable after validation
- Fail-fast on invalid configuration
- Type-safe with dataclasses

Environment variables are prefixed with CERTSTORAGE_:
    CERTSTORAGE_PATH              bucket[/prefix] (required)
    CERTSTORAGE_CREDENTIALS_FILE  JSON credentials blob
    CERTSTORAGE_LOCK_TTL_SECONDS
    CERTSTORAGE_LOCK_REFRESH_INTERVAL_SECONDS
    CERTSTORAGE_LOCK_BACKOFF_BASE_MS
    CERTSTORAGE_LOCK_BACKOFF_MAX_MS
    CERTSTORAGE_S3_CONNECT_TIMEOUT_SECONDS
    CERTSTORAGE_S3_READ_TIMEOUT_SECONDS
    CERTSTORAGE_S3_MAX_RETRIES
    CERTSTORAGE_S3_VERIFY_SSL
    CERTSTORAGE_LOG_LEVEL
    CERTSTORAGE_LOG_JSON
"""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

from certstorage.core import constants as C
from certstorage.core.errors import CertStorageError
from certstorage.core.types import Err, Ok, Result


@dataclass(frozen=True)
class S3Credentials:
    """
    Credentials blob for an S3-compatible store.

    The blob is a JSON object:
        {
            "access_key_id": "...",
            "secret_access_key": "...",
            "session_token": "...",        (optional)
            "endpoint_url": "https://...", (optional, MinIO/GCS/R2)
            "region": "us-east-1"          (optional)
        }
    """

    access_key_id: str
    secret_access_key: str = field(repr=False)
    session_token: Optional[str] = field(default=None, repr=False)
    endpoint_url: Optional[str] = None
    region: str = C.S3_DEFAULT_REGION

    def __post_init__(self) -> None:
        if not self.access_key_id:
            raise ValueError("access_key_id is required")
        if not self.secret_access_key:
            raise ValueError("secret_access_key is required")

    @classmethod
    def from_json(cls, blob: bytes | str) -> Result[S3Credentials, CertStorageError]:
        """Parse the credentials blob."""
        try:
            data = json.loads(blob)
        except (ValueError, UnicodeDecodeError) as e:
            return Err(CertStorageError.configuration("credentials are not valid JSON", cause=e))

        if not isinstance(data, dict):
            return Err(CertStorageError.configuration("credentials must be a JSON object"))

        try:
            return Ok(cls(
                access_key_id=str(data.get("access_key_id") or ""),
                secret_access_key=str(data.get("secret_access_key") or ""),
                session_token=data.get("session_token") or None,
                endpoint_url=data.get("endpoint_url") or None,
                region=data.get("region") or C.S3_DEFAULT_REGION,
            ))
        except ValueError as e:
            return Err(CertStorageError.configuration(str(e), cause=e))

    def session_kwargs(self) -> dict[str, Any]:
        """Keyword arguments for aioboto3.Session."""
        kwargs: dict[str, Any] = {
            "aws_access_key_id": self.access_key_id,
            "aws_secret_access_key": self.secret_access_key,
            "region_name": self.region,
        }
        if self.session_token:
            kwargs["aws_session_token"] = self.session_token
        return kwargs


@dataclass(frozen=True)
class LockConfig:
    """Distributed mutex lease configuration."""

    ttl_seconds: float = C.LOCK_TTL_SECONDS
    refresh_interval_seconds: float = C.LOCK_REFRESH_INTERVAL_SECONDS
    backoff_base_ms: int = C.LOCK_BACKOFF_BASE_MS
    backoff_max_ms: int = C.LOCK_BACKOFF_MAX_MS

    def __post_init__(self) -> None:
        if self.ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be > 0, got {self.ttl_seconds}")
        if not 0 < self.refresh_interval_seconds < self.ttl_seconds:
            raise ValueError("refresh_interval_seconds must be in (0, ttl_seconds)")
        if self.backoff_base_ms <= 0:
            raise ValueError(f"backoff_base_ms must be > 0, got {self.backoff_base_ms}")
        if self.backoff_max_ms < self.backoff_base_ms:
            raise ValueError("backoff_max_ms must be >= backoff_base_ms")


@dataclass(frozen=True)
class S3ClientConfig:
    """botocore client tuning."""

    connect_timeout_seconds: int = C.S3_CONNECT_TIMEOUT_SECONDS
    read_timeout_seconds: int = C.S3_READ_TIMEOUT_SECONDS
    max_retries: int = C.S3_MAX_RETRIES
    max_pool_connections: int = C.S3_MAX_POOL_CONNECTIONS
    verify_ssl: bool = True
    addressing_style: str = "auto"

    def __post_init__(self) -> None:
        if self.connect_timeout_seconds <= 0:
            raise ValueError("connect_timeout_seconds must be > 0")
        if self.read_timeout_seconds <= 0:
            raise ValueError("read_timeout_seconds must be > 0")
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if self.max_pool_connections <= 0:
            raise ValueError("max_pool_connections must be > 0")
        if self.addressing_style not in ("auto", "path", "virtual"):
            raise ValueError(f"unknown addressing_style {self.addressing_style!r}")


@dataclass(frozen=True)
class CertStorageConfig:
    """Root configuration for a certificate storage instance."""

    path: str
    credentials_file: Optional[Path] = None
    lock: LockConfig = field(default_factory=LockConfig)
    s3: S3ClientConfig = field(default_factory=S3ClientConfig)
    log_level: str = "INFO"
    log_json: bool = True

    def __post_init__(self) -> None:
        bucket = self.path.split(C.KEY_SEPARATOR, 1)[0]
        if not bucket:
            raise ValueError(f"path must start with a bucket name, got {self.path!r}")

    @classmethod
    def from_env(
        cls,
        environ: Optional[Mapping[str, str]] = None,
    ) -> Result[CertStorageConfig, CertStorageError]:
        """Load configuration from CERTSTORAGE_* environment variables."""
        env = os.environ if environ is None else environ

        def _get(key: str, default: str = "") -> str:
            return env.get(f"{C.ENV_PREFIX}_{key}", default)

        def _get_float(key: str, default: float) -> float:
            val = _get(key)
            return float(val) if val else default

        def _get_int(key: str, default: int) -> int:
            val = _get(key)
            return int(val) if val else default

        def _get_bool(key: str, default: bool) -> bool:
            val = _get(key).lower()
            if val in ("true", "1", "yes"):
                return True
            if val in ("false", "0", "no"):
                return False
            return default

        try:
            credentials = _get("CREDENTIALS_FILE")
            lock = LockConfig(
                ttl_seconds=_get_float("LOCK_TTL_SECONDS", C.LOCK_TTL_SECONDS),
                refresh_interval_seconds=_get_float(
                    "LOCK_REFRESH_INTERVAL_SECONDS", C.LOCK_REFRESH_INTERVAL_SECONDS
                ),
                backoff_base_ms=_get_int("LOCK_BACKOFF_BASE_MS", C.LOCK_BACKOFF_BASE_MS),
                backoff_max_ms=_get_int("LOCK_BACKOFF_MAX_MS", C.LOCK_BACKOFF_MAX_MS),
            )
            s3 = S3ClientConfig(
                connect_timeout_seconds=_get_int(
                    "S3_CONNECT_TIMEOUT_SECONDS", C.S3_CONNECT_TIMEOUT_SECONDS
                ),
                read_timeout_seconds=_get_int("S3_READ_TIMEOUT_SECONDS", C.S3_READ_TIMEOUT_SECONDS),
                max_retries=_get_int("S3_MAX_RETRIES", C.S3_MAX_RETRIES),
                verify_ssl=_get_bool("S3_VERIFY_SSL", True),
                addressing_style=_get("S3_ADDRESSING_STYLE", "auto"),
            )
            return Ok(cls(
                path=_get("PATH"),
                credentials_file=Path(credentials) if credentials else None,
                lock=lock,
                s3=s3,
                log_level=_get("LOG_LEVEL", "INFO").upper(),
                log_json=_get_bool("LOG_JSON", True),
            ))
        except (ValueError, TypeError) as e:
            return Err(CertStorageError.configuration(str(e), cause=e))

    def read_credentials(self) -> Result[bytes, CertStorageError]:
        """Read the credentials blob from credentials_file."""
        if self.credentials_file is None:
            return Err(CertStorageError.configuration("credentials_file is not set"))
        try:
            return Ok(self.credentials_file.read_bytes())
        except OSError as e:
            return Err(CertStorageError.configuration(
                f"cannot read credentials file {self.credentials_file}", cause=e
            ))
