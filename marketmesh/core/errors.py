"""
Error Hierarchy for the Marketplace Partition Mesh

Design Principles:
- Fallible operations return Result[T, MarketMeshError]; errors are values
- Every error carries a stable code, a message and structured context
- Retryability is a property of the error, decided once, here

Error kinds surfaced to the API-handler layer:
- NOT_FOUND              conversation / message / account absent
- UNAUTHORIZED           principal is not a participant / not an admin
- INVALID_OPERAND        self-conversation, empty content, bad input
- PARTITION_UNAVAILABLE  a partition's store is unreachable (retryable)
- MIGRATION_CONFLICT     target identifier already exists (fatal)

Usage:
    result = await store.append_message(conversation_id, sender_id, text)
    match result:
        case Ok(message):
            render(message)
        case Err(error) if error.code is ErrorCode.UNAUTHORIZED:
            deny()
        case Err(error) if error.retryable:
            ask_client_to_retry()
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from marketmesh.core.types import Timestamp


# =============================================================================
# ERROR CODE ENUMERATION
# =============================================================================
class ErrorCode(Enum):
    """
    Unique error codes for programmatic error handling.

    Codes are grouped by subsystem:
    - 1xxx: Storage / partition errors
    - 3xxx: Query errors
    - 4xxx: Validation errors
    - 5xxx: Security errors
    - 7xxx: Migration errors
    - 9xxx: Internal errors
    """

    # Storage errors (1xxx)
    PARTITION_UNAVAILABLE = 1001
    STORAGE_DUPLICATE_KEY = 1003

    # Query errors (3xxx)
    NOT_FOUND = 3004

    # Validation errors (4xxx)
    INVALID_OPERAND = 4001

    # Security errors (5xxx)
    UNAUTHORIZED = 5001

    # Migration errors (7xxx)
    MIGRATION_CONFLICT = 7001
    MIGRATION_STEP_FAILED = 7002

    # Internal errors (9xxx)
    INTERNAL_ERROR = 9001
    INTERNAL_CONFIGURATION_ERROR = 9002


RETRYABLE_CODES: frozenset[ErrorCode] = frozenset({
    ErrorCode.PARTITION_UNAVAILABLE,
})


# =============================================================================
# BASE ERROR CLASS
# =============================================================================
@dataclass
class MarketMeshError(Exception):
    """
    Base class for all mesh errors.

    Provides a unique error id for log correlation, the error code,
    creation timestamp, an optional cause and structured context.
    """

    code: ErrorCode
    message: str
    error_id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: Timestamp = field(default_factory=Timestamp.now)
    cause: Optional[Exception] = None
    context: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        """True when the same call may succeed if repeated later."""
        return self.code in RETRYABLE_CODES

    def with_context(self, **kwargs: Any) -> MarketMeshError:
        """Return a copy of this error with extra context fields."""
        return type(self)(
            code=self.code,
            message=self.message,
            error_id=self.error_id,
            timestamp=self.timestamp,
            cause=self.cause,
            context={**self.context, **kwargs},
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Serialize for logging and API responses.

        The cause is reduced to its type name so backend details such as
        DSNs do not leak to clients.
        """
        data = {
            "error_id": self.error_id,
            "code": self.code.name,
            "code_value": self.code.value,
            "message": self.message,
            "retryable": self.retryable,
            "timestamp_nanos": self.timestamp.nanos,
            "context": self.context,
        }
        if self.cause is not None:
            data["cause_type"] = type(self.cause).__name__
        return data

    def __str__(self) -> str:
        return f"[{self.code.name}] {self.message} (id={self.error_id[:8]})"

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"code={self.code.name}, "
            f"message={self.message!r}, "
            f"error_id={self.error_id!r})"
        )


# =============================================================================
# STORAGE ERRORS
# =============================================================================
@dataclass
class StorageError(MarketMeshError):
    """Errors raised by partition handles and the partition store."""

    @classmethod
    def partition_unavailable(
        cls,
        partition: str,
        operation: str = "connect",
        cause: Optional[Exception] = None,
    ) -> StorageError:
        """The partition's store cannot be reached."""
        return cls(
            code=ErrorCode.PARTITION_UNAVAILABLE,
            message=f"Partition '{partition}' unavailable during {operation}",
            cause=cause,
            context={"partition": partition, "operation": operation},
        )

    @classmethod
    def timeout(
        cls,
        partition: str,
        operation: str,
        duration_ms: int,
        cause: Optional[Exception] = None,
    ) -> StorageError:
        """
        A partition call exceeded its time bound.

        Reported as an unavailable partition; the duration is kept in context.
        """
        return cls(
            code=ErrorCode.PARTITION_UNAVAILABLE,
            message=(
                f"Operation '{operation}' on partition '{partition}' "
                f"timed out after {duration_ms}ms"
            ),
            cause=cause,
            context={
                "partition": partition,
                "operation": operation,
                "duration_ms": duration_ms,
            },
        )

    @classmethod
    def duplicate_key(
        cls,
        partition: str,
        table: str,
        key: str,
        cause: Optional[Exception] = None,
    ) -> StorageError:
        """A uniqueness constraint rejected the write."""
        return cls(
            code=ErrorCode.STORAGE_DUPLICATE_KEY,
            message=f"Duplicate key '{key}' in {partition}.{table}",
            cause=cause,
            context={"partition": partition, "table": table, "key": key},
        )


# =============================================================================
# QUERY ERRORS
# =============================================================================
@dataclass
class QueryError(MarketMeshError):
    """Read-path errors."""

    @classmethod
    def not_found(
        cls,
        resource_type: str,
        resource_id: str,
    ) -> QueryError:
        return cls(
            code=ErrorCode.NOT_FOUND,
            message=f"{resource_type} '{resource_id}' not found",
            context={"resource_type": resource_type, "resource_id": resource_id},
        )


# =============================================================================
# VALIDATION ERRORS
# =============================================================================
@dataclass
class ValidationError(MarketMeshError):
    """Caller supplied an operand the operation cannot accept."""

    @classmethod
    def invalid_operand(
        cls,
        field_name: str,
        value: Any,
        reason: str,
    ) -> ValidationError:
        return cls(
            code=ErrorCode.INVALID_OPERAND,
            message=f"Invalid value for '{field_name}': {reason}",
            context={
                "field": field_name,
                "value": str(value)[:100],
                "reason": reason,
            },
        )


# =============================================================================
# SECURITY ERRORS
# =============================================================================
@dataclass
class SecurityError(MarketMeshError):
    """Principal may not perform the requested action."""

    @classmethod
    def unauthorized(
        cls,
        principal_id: str,
        resource: str,
        action: str,
    ) -> SecurityError:
        return cls(
            code=ErrorCode.UNAUTHORIZED,
            message=f"Principal '{principal_id}' may not {action} {resource}",
            context={
                "principal_id": principal_id,
                "resource": resource,
                "action": action,
            },
        )

    @classmethod
    def account_banned(cls, account_id: str, action: str) -> SecurityError:
        return cls(
            code=ErrorCode.UNAUTHORIZED,
            message=f"Account '{account_id}' is banned and may not {action}",
            context={"account_id": account_id, "action": action, "banned": True},
        )


# =============================================================================
# MIGRATION ERRORS
# =============================================================================
@dataclass
class MigrationError(MarketMeshError):
    """Errors from the cross-partition migration coordinator."""

    @classmethod
    def conflict(
        cls,
        migration_id: str,
        target_partition: str,
        target_id: str,
        cause: Optional[Exception] = None,
    ) -> MigrationError:
        """
        Target identifier already exists.

        Fatal for the attempt; requires operator intervention.
        """
        return cls(
            code=ErrorCode.MIGRATION_CONFLICT,
            message=(
                f"Migration {migration_id}: identifier '{target_id}' already "
                f"exists in partition '{target_partition}'"
            ),
            cause=cause,
            context={
                "migration_id": migration_id,
                "target_partition": target_partition,
                "target_id": target_id,
            },
        )

    @classmethod
    def step_failed(
        cls,
        migration_id: str,
        step: str,
        cause: Optional[MarketMeshError] = None,
        **context: Any,
    ) -> MigrationError:
        """
        A step failed; committed steps stay committed.

        Retryable when the underlying cause is retryable.
        """
        error = cls(
            code=ErrorCode.MIGRATION_STEP_FAILED,
            message=f"Migration {migration_id} failed at step '{step}'",
            cause=cause,
            context={"migration_id": migration_id, "step": step, **context},
        )
        return error

    @property
    def retryable(self) -> bool:
        if self.code is ErrorCode.MIGRATION_STEP_FAILED:
            return isinstance(self.cause, MarketMeshError) and self.cause.retryable
        return False


# =============================================================================
# INTERNAL ERRORS
# =============================================================================
@dataclass
class ConfigurationError(MarketMeshError):
    """Invalid or incomplete configuration."""

    @classmethod
    def invalid(cls, reason: str, **context: Any) -> ConfigurationError:
        return cls(
            code=ErrorCode.INTERNAL_CONFIGURATION_ERROR,
            message=f"Configuration error: {reason}",
            context=context,
        )
