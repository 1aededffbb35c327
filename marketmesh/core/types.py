"""
Core Type Definitions for the Marketplace Partition Mesh

Result/Either monad for exception-free control flow, plus the identity
vocabulary shared by every component: roles, partition names, identifier
generation and nanosecond timestamps.

Design Principles:
- Never use null for absence (use Optional or Result)
- Identifiers are opaque strings; they carry no partition information
- Timestamps are integer nanoseconds so ordering ties are rare and exact
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import (
    Any,
    Callable,
    Generic,
    Literal,
    TypeVar,
    Union,
)
from uuid import uuid4

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

    Immutable container for the value of a completed operation.
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

    def flat_map(self, fn: Callable[[T], Result[U, E]]) -> Result[U, E]:
        """Monadic bind for chaining fallible operations."""
        return fn(self.value)

    def __repr__(self) -> str:
        return f"Ok({self.value!r})"


@dataclass(frozen=True, slots=True)
class Err(Generic[E]):
    """
    Failure variant of Result.

    Carries the error value unchanged through map/flat_map chains.
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
            RuntimeError: Always, with error context
        """
        raise RuntimeError(f"Called unwrap() on Err: {self.error}")

    def unwrap_or(self, default: T) -> T:
        """Return default value on error."""
        return default

    def map(self, fn: Callable[[Any], U]) -> Err[E]:
        return self

    def flat_map(self, fn: Callable[[Any], Result[U, E]]) -> Err[E]:
        return self

    def __repr__(self) -> str:
        return f"Err({self.error!r})"


# Union type for pattern matching
Result = Union[Ok[T], Err[E]]


# =============================================================================
# ROLES AND PARTITIONS
# =============================================================================
class PartitionName(Enum):
    """
    Independently connected data stores.

    Three account partitions hold exactly one role each; the relationship
    partition holds conversations and messages for every role.
    """

    CUSTOMER = "customer"
    PROVIDER = "provider"
    ADMIN = "admin"
    RELATIONSHIP = "relationship"

    @property
    def is_account_partition(self) -> bool:
        return self is not PartitionName.RELATIONSHIP

    @property
    def role(self) -> Role:
        """Role of every account stored in this partition."""
        if self is PartitionName.RELATIONSHIP:
            raise ValueError("relationship partition holds no accounts")
        return Role(self.value)

    @classmethod
    def parse(cls, value: str) -> Result[PartitionName, str]:
        try:
            return Ok(cls(value.strip().lower()))
        except ValueError:
            return Err(f"Unknown partition: {value!r}")


class Role(Enum):
    """Account role; decides the partition an account lives in."""

    CUSTOMER = "customer"
    PROVIDER = "provider"
    ADMIN = "admin"
    UNKNOWN = "unknown"  # Placeholder for unresolved identities

    @property
    def partition(self) -> PartitionName:
        if self is Role.UNKNOWN:
            raise ValueError("unknown role has no partition")
        return PartitionName(self.value)

    @classmethod
    def parse(cls, value: str) -> Result[Role, str]:
        try:
            role = cls(value.strip().lower())
        except ValueError:
            return Err(f"Unknown role: {value!r}")
        if role is Role.UNKNOWN:
            return Err("Role 'unknown' cannot be assigned to an account")
        return Ok(role)


# =============================================================================
# IDENTIFIERS
# =============================================================================
def new_id() -> str:
    """
    Generate an opaque 24-hex-character identifier.

    Random 96-bit values make cross-partition collisions practically
    impossible, although nothing structurally prevents them.
    """
    return uuid4().hex[:24]


def pair_key(a: str, b: str) -> str:
    """Order-independent key for an unordered pair of account ids."""
    first, second = sorted((a, b))
    return f"{first}:{second}"


# =============================================================================
# TIMESTAMP WITH NANOSECOND PRECISION
# =============================================================================
@dataclass(frozen=True, slots=True, order=True)
class Timestamp:
    """
    Nanoseconds since the Unix epoch.

    Ordering is total; equal values are possible under concurrent
    writers, so callers that need a stable order add a tie-break key.
    """

    nanos: int

    NANOS_PER_SECOND = 1_000_000_000
    NANOS_PER_MILLI = 1_000_000

    @classmethod
    def now(cls) -> Timestamp:
        return cls(nanos=time.time_ns())

    @property
    def seconds(self) -> float:
        return self.nanos / self.NANOS_PER_SECOND

    def to_datetime(self) -> datetime:
        return datetime.fromtimestamp(self.seconds, tz=timezone.utc)

    def __sub__(self, other: Timestamp) -> int:
        """Subtract timestamps, returning difference in nanos."""
        return self.nanos - other.nanos

    def isoformat(self) -> str:
        return self.to_datetime().isoformat()

    def __repr__(self) -> str:
        return f"Timestamp({self.nanos}ns)"
