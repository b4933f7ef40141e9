"""
Key-Space Mapper

Translates logical keys into physical object keys by prepending the
bucket-relative prefix configured for a storage instance.

A path of the form ``bucket[/prefix]`` is split on the first separator.
A prefix, when present, always ends with exactly one separator, so
``"certs/gateway//"`` and ``"certs/gateway"`` both map ``"a.crt"`` to
``"gateway/a.crt"``; a prefix never starts with a separator, and
``"certs/"`` has no prefix at all. Keys are never validated here; the
backing store decides what it accepts.
"""

from __future__ import annotations

from dataclasses import dataclass

from certstorage.core.constants import KEY_SEPARATOR


@dataclass(frozen=True, slots=True)
class KeySpace:
    """Bucket plus normalized key prefix."""

    bucket: str
    prefix: str = ""

    def __post_init__(self) -> None:
        if self.prefix and not self.prefix.endswith(KEY_SEPARATOR):
            raise ValueError(f"prefix must end with {KEY_SEPARATOR!r}, got {self.prefix!r}")

    @classmethod
    def from_path(cls, path: str) -> KeySpace:
        """Split ``bucket[/prefix]`` and normalize the prefix."""
        bucket, _, prefix = path.partition(KEY_SEPARATOR)
        prefix = prefix.strip(KEY_SEPARATOR)
        if not prefix:
            return cls(bucket=bucket)
        return cls(bucket=bucket, prefix=prefix + KEY_SEPARATOR)

    def map(self, key: str) -> str:
        """Physical object key for a logical key."""
        return self.prefix + key

    def __str__(self) -> str:
        return f"{self.bucket}/{self.prefix}" if self.prefix else self.bucket
