"""
Constants for Certificate Storage

All magic numbers and defaults centralized here.
"""

from typing import Final

# =============================================================================
# SIZE AND TIME UNITS
# =============================================================================
KB: Final[int] = 1024
MB: Final[int] = 1024 * KB

SECOND_MS: Final[int] = 1000

# =============================================================================
# KEY SPACE
# =============================================================================
KEY_SEPARATOR: Final[str] = "/"

# Probe object written and removed at startup to verify bucket permissions
PERMISSION_PROBE_PREFIX: Final[str] = ".certstorage-permission-probe-"
PERMISSION_PROBE_BODY: Final[bytes] = b"certstorage permission probe"

# =============================================================================
# OBJECT METADATA
# =============================================================================
# RFC 1123 as sent in HTTP Last-Modified headers; English names, GMT only
RFC1123_PATTERN: Final[str] = (
    r"(Mon|Tue|Wed|Thu|Fri|Sat|Sun), [0-9]{2} "
    r"(Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Oct|Nov|Dec) "
    r"[0-9]{4} [0-9]{2}:[0-9]{2}:[0-9]{2} GMT"
)
HEADER_LAST_MODIFIED: Final[str] = "last-modified"
HEADER_CONTENT_LENGTH: Final[str] = "content-length"
HEADER_ETAG: Final[str] = "etag"

# =============================================================================
# DISTRIBUTED LOCKS
# =============================================================================
LOCK_TTL_SECONDS: Final[float] = 60.0
LOCK_REFRESH_INTERVAL_SECONDS: Final[float] = 20.0
LOCK_BACKOFF_BASE_MS: Final[int] = 50
LOCK_BACKOFF_MAX_MS: Final[int] = 5 * SECOND_MS
LOCK_BACKOFF_JITTER: Final[float] = 0.3
LOCK_CONTENT_TYPE: Final[str] = "application/json"

# =============================================================================
# S3 CLIENT
# =============================================================================
S3_DEFAULT_REGION: Final[str] = "us-east-1"
S3_CONNECT_TIMEOUT_SECONDS: Final[int] = 5
S3_READ_TIMEOUT_SECONDS: Final[int] = 60
S3_MAX_RETRIES: Final[int] = 3
S3_MAX_POOL_CONNECTIONS: Final[int] = 10
S3_LIST_PAGE_SIZE: Final[int] = 1000

# botocore ClientError codes
S3_NOT_FOUND_CODES: Final[frozenset[str]] = frozenset({"404", "NoSuchKey", "NotFound"})
S3_PRECONDITION_CODES: Final[frozenset[str]] = frozenset({
    "412",
    "PreconditionFailed",
    "409",
    "ConditionalRequestConflict",
})

# =============================================================================
# ENVIRONMENT
# =============================================================================
ENV_PREFIX: Final[str] = "CERTSTORAGE"
