"""
Core Type Definitions for Certificate Storage

Implements the Result/Either monad used by every storage and locking
operation, plus the nanosecond timestamp used by lease records.

Design Principles:
- Expected failures (missing keys, contended locks) are values, not raises
- Error kinds travel inside Err unchanged from the layer that detected them
- Cancellation is never converted into a Result; it always propagates
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import (
    Any,
    Callable,
    Generic,
    Literal,
    TypeVar,
    Union,
)

# =============================================================================
# TYPE VARIABLES FOR GENERIC CONTAINERS
# =============================================================================
T = TypeVar("T")  # Success type
E = TypeVar("E")  # Error type
U = TypeVar("U")  # Transform result type


# =============================================================================
# RESULT MONAD
# =============================================================================
@dataclass(frozen=True, slots=True)
class Ok(Generic[T]):
    """
    Success variant of Result.

    Immutable container for a successful operation's value.
    """

    value: T

    def is_ok(self) -> Literal[True]:
        return True

    def is_err(self) -> Literal[False]:
        return False

    def unwrap(self) -> T:
        """Extract value. Safe to call after is_ok() check."""
        return self.value

    def unwrap_or(self, default: T) -> T:
        """Return value, ignoring default."""
        return self.value

    def map(self, fn: Callable[[T], U]) -> Ok[U]:
        """Apply transformation to success value."""
        return Ok(fn(self.value))

    def map_err(self, fn: Callable[[Any], Any]) -> Ok[T]:
        """No-op on success variant."""
        return self

    def flat_map(self, fn: Callable[[T], Result[U, E]]) -> Result[U, E]:
        """Chain another fallible operation."""
        return fn(self.value)

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """
    Failure variant of Result.

    Carries the error value for exhaustive handling by the caller.
    """

    error: E

    def is_ok(self) -> Literal[False]:
        return False

    def is_err(self) -> Literal[True]:
        return True

    def unwrap(self) -> Any:
        """
        Unwrapping an error is a programming error.

        Raises:
            RuntimeError: Always, chained to the error when it is an exception
        """
        if isinstance(self.error, BaseException):
            raise RuntimeError(f"Called unwrap() on Err: {self.error}") from self.error
        raise RuntimeError(f"Called unwrap() on Err: {self.error}")

    def unwrap_or(self, default: T) -> T:
        """Return default value on error."""
        return default

    def map(self, fn: Callable[[Any], U]) -> Err[E]:
        """No-op on error variant - propagates error unchanged."""
        return self

    def map_err(self, fn: Callable[[E], U]) -> Err[U]:
        """Transform the error value (used to attach context)."""
        return Err(fn(self.error))

    def flat_map(self, fn: Callable[[Any], Result[U, E]]) -> Err[E]:
        return self

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


# Union type for pattern matching
Result = Union[Ok[T], Err[E]]


# =============================================================================
# TIMESTAMP WITH NANOSECOND PRECISION
# =============================================================================
@dataclass(frozen=True, slots=True, order=True)
class Timestamp:
    """
    Wall-clock timestamp in nanoseconds since the Unix epoch.

    Lease records are shared between hosts, so expiry is expressed in
    wall-clock time rather than a process-local monotonic clock.
    """

    nanos: int

    NANOS_PER_SECOND = 1_000_000_000
    NANOS_PER_MILLI = 1_000_000

    @classmethod
    def now(cls) -> Timestamp:
        return cls(nanos=time.time_ns())

    @classmethod
    def from_seconds(cls, seconds: float) -> Timestamp:
        return cls(nanos=int(seconds * cls.NANOS_PER_SECOND))

    @property
    def seconds(self) -> float:
        return self.nanos / self.NANOS_PER_SECOND

    @property
    def millis(self) -> int:
        return self.nanos // self.NANOS_PER_MILLI

    def after_seconds(self, seconds: float) -> Timestamp:
        """Timestamp `seconds` later than this one."""
        return Timestamp(nanos=self.nanos + int(seconds * self.NANOS_PER_SECOND))

    def __sub__(self, other: Timestamp) -> int:
        """Subtract timestamps, returning difference in nanos."""
        return self.nanos - other.nanos

    def __repr__(self) -> str:
        return f"Timestamp({self.nanos}ns)"
