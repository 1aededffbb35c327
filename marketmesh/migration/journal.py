"""
Migration Journal: Persisted Saga Records

Every customer-to-provider migration is an explicit state machine whose
record is saved after each transition, so a crashed migration can be
continued by a recovery process instead of leaving silent inconsistency.

States:
    STARTED -> ACCOUNT_CREATED_IN_TARGET -> REFERENCES_REWRITTEN
            -> SOURCE_ACCOUNT_DELETED -> DONE
    any non-terminal state -> FAILED
    FAILED -> the state it failed from (resume; never for a conflict)

There is no compensation: committed steps stay committed and the saga
only moves forward.

Backends:
- InMemoryMigrationJournal: dict guarded by an asyncio.Lock
- RedisMigrationJournal: one hash per record plus a pending-set index
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Optional, Protocol

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from marketmesh.core.config import MigrationConfig
from marketmesh.core.errors import ErrorCode, MarketMeshError, StorageError
from marketmesh.core.types import Err, Ok, PartitionName, Result, Timestamp, new_id

logger = logging.getLogger(__name__)

JOURNAL = "migration_journal"


# =============================================================================
# STATE MACHINE
# =============================================================================
class MigrationState(Enum):
    STARTED = "started"
    ACCOUNT_CREATED_IN_TARGET = "account_created_in_target"
    REFERENCES_REWRITTEN = "references_rewritten"
    SOURCE_ACCOUNT_DELETED = "source_account_deleted"
    DONE = "done"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (MigrationState.DONE, MigrationState.FAILED)


@dataclass(frozen=True, slots=True)
class MigrationTransition:
    from_state: MigrationState
    to_state: MigrationState


_FORWARD = (
    MigrationState.STARTED,
    MigrationState.ACCOUNT_CREATED_IN_TARGET,
    MigrationState.REFERENCES_REWRITTEN,
    MigrationState.SOURCE_ACCOUNT_DELETED,
    MigrationState.DONE,
)

VALID_TRANSITIONS: frozenset[MigrationTransition] = frozenset(
    # Forward chain
    {MigrationTransition(a, b) for a, b in zip(_FORWARD, _FORWARD[1:])}
    # Any non-terminal state can fail
    | {MigrationTransition(s, MigrationState.FAILED) for s in _FORWARD[:-1]}
    # A failed record resumes at the state it failed from
    | {MigrationTransition(MigrationState.FAILED, s) for s in _FORWARD[:-1]}
)


# =============================================================================
# RECORD
# =============================================================================
@dataclass(frozen=True, slots=True)
class ProviderOverrides:
    """Profile fields replaced on the new provider account."""

    display_name: Optional[str] = None
    contact_phone: Optional[str] = None
    city: Optional[str] = None

    def to_dict(self) -> dict[str, Optional[str]]:
        return {
            "display_name": self.display_name,
            "contact_phone": self.contact_phone,
            "city": self.city,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ProviderOverrides:
        return cls(
            display_name=data.get("display_name") or None,
            contact_phone=data.get("contact_phone") or None,
            city=data.get("city") or None,
        )


@dataclass(frozen=True, slots=True)
class MigrationRecord:
    """One migration attempt and how far it got."""

    migration_id: str
    source_id: str
    state: MigrationState = MigrationState.STARTED
    source_partition: PartitionName = PartitionName.CUSTOMER
    target_partition: PartitionName = PartitionName.PROVIDER
    target_id: Optional[str] = None
    failed_from: Optional[MigrationState] = None
    error_code: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 1
    overrides: ProviderOverrides = field(default_factory=ProviderOverrides)
    created_at: Timestamp = field(default_factory=Timestamp.now)
    updated_at: Timestamp = field(default_factory=Timestamp.now)

    @classmethod
    def start(cls, source_id: str, overrides: Optional[ProviderOverrides] = None) -> MigrationRecord:
        return cls(
            migration_id=new_id(),
            source_id=source_id,
            overrides=overrides or ProviderOverrides(),
        )

    @property
    def is_conflict(self) -> bool:
        return self.error_code == ErrorCode.MIGRATION_CONFLICT.name

    @property
    def is_resumable(self) -> bool:
        """Interrupted mid-flight, or failed for a reason other than a conflict."""
        if self.state is MigrationState.FAILED:
            return self.failed_from is not None and not self.is_conflict
        return self.state is not MigrationState.DONE

    def advance(self, to_state: MigrationState, **changes: Any) -> MigrationRecord:
        transition = MigrationTransition(self.state, to_state)
        if transition not in VALID_TRANSITIONS:
            raise ValueError(
                f"Invalid migration transition {self.state.value} -> {to_state.value}"
            )
        return replace(self, state=to_state, updated_at=Timestamp.now(), **changes)

    def fail(self, error: MarketMeshError) -> MigrationRecord:
        return self.advance(
            MigrationState.FAILED,
            failed_from=self.state,
            error_code=error.code.name,
            error=error.message,
        )

    def resumed(self) -> MigrationRecord:
        """Move a failed record back to the state it failed from."""
        if self.state is not MigrationState.FAILED:
            return self
        return self.advance(
            self.failed_from,
            failed_from=None,
            error_code=None,
            error=None,
            attempts=self.attempts + 1,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "migration_id": self.migration_id,
            "source_id": self.source_id,
            "state": self.state.value,
            "source_partition": self.source_partition.value,
            "target_partition": self.target_partition.value,
            "target_id": self.target_id,
            "failed_from": self.failed_from.value if self.failed_from else None,
            "error_code": self.error_code,
            "error": self.error,
            "attempts": self.attempts,
            "overrides": self.overrides.to_dict(),
            "created_at": self.created_at.nanos,
            "updated_at": self.updated_at.nanos,
        }

    def to_hash(self) -> dict[str, str]:
        """Flat string mapping for a Redis hash; None becomes ''."""
        flat: dict[str, str] = {}
        for key, value in self.to_dict().items():
            if key == "overrides":
                for name, override in value.items():
                    flat[f"override_{name}"] = override or ""
            else:
                flat[key] = "" if value is None else str(value)
        return flat

    @classmethod
    def from_hash(cls, data: dict[str, str]) -> MigrationRecord:
        return cls(
            migration_id=data["migration_id"],
            source_id=data["source_id"],
            state=MigrationState(data["state"]),
            source_partition=PartitionName(data["source_partition"]),
            target_partition=PartitionName(data["target_partition"]),
            target_id=data.get("target_id") or None,
            failed_from=MigrationState(data["failed_from"]) if data.get("failed_from") else None,
            error_code=data.get("error_code") or None,
            error=data.get("error") or None,
            attempts=int(data.get("attempts") or 1),
            overrides=ProviderOverrides.from_dict({
                "display_name": data.get("override_display_name"),
                "contact_phone": data.get("override_contact_phone"),
                "city": data.get("override_city"),
            }),
            created_at=Timestamp(int(data["created_at"])),
            updated_at=Timestamp(int(data["updated_at"])),
        )


# =============================================================================
# JOURNAL PROTOCOL
# =============================================================================
class MigrationJournal(Protocol):
    async def save(self, record: MigrationRecord) -> Result[None, StorageError]:
        ...

    async def get(self, migration_id: str) -> Result[Optional[MigrationRecord], StorageError]:
        ...

    async def latest_for_source(self, source_id: str) -> Result[Optional[MigrationRecord], StorageError]:
        ...

    async def list_pending(self) -> Result[list[MigrationRecord], StorageError]:
        ...

    async def close(self) -> None:
        ...


# =============================================================================
# IN-MEMORY JOURNAL
# =============================================================================
class InMemoryMigrationJournal:
    """Journal for development and tests."""

    __slots__ = ("_records", "_by_source", "_lock")

    def __init__(self) -> None:
        self._records: dict[str, MigrationRecord] = {}
        self._by_source: dict[str, str] = {}
        self._lock = asyncio.Lock()

    async def save(self, record: MigrationRecord) -> Result[None, StorageError]:
        async with self._lock:
            self._records[record.migration_id] = record
            self._by_source[record.source_id] = record.migration_id
            return Ok(None)

    async def get(self, migration_id: str) -> Result[Optional[MigrationRecord], StorageError]:
        async with self._lock:
            return Ok(self._records.get(migration_id))

    async def latest_for_source(self, source_id: str) -> Result[Optional[MigrationRecord], StorageError]:
        async with self._lock:
            migration_id = self._by_source.get(source_id)
            return Ok(self._records.get(migration_id) if migration_id else None)

    async def list_pending(self) -> Result[list[MigrationRecord], StorageError]:
        async with self._lock:
            pending = [r for r in self._records.values() if r.is_resumable]
        return Ok(sorted(pending, key=lambda r: r.created_at))

    async def close(self) -> None:
        pass


# =============================================================================
# REDIS JOURNAL
# =============================================================================
class RedisMigrationJournal:
    """
    Journal stored in Redis.

    Keys:
        {prefix}:record:{migration_id}  hash of the record
        {prefix}:source:{source_id}     latest migration id for a source
        {prefix}:pending                set of resumable migration ids

    Each save writes all three in one MULTI/EXEC pipeline.
    """

    __slots__ = ("_client", "_prefix")

    def __init__(self, client: aioredis.Redis, key_prefix: str) -> None:
        self._client = client
        self._prefix = key_prefix

    @classmethod
    def from_config(cls, config: MigrationConfig) -> RedisMigrationJournal:
        client = aioredis.from_url(config.redis_url, decode_responses=True)
        return cls(client, config.key_prefix)

    def _record_key(self, migration_id: str) -> str:
        return f"{self._prefix}:record:{migration_id}"

    def _source_key(self, source_id: str) -> str:
        return f"{self._prefix}:source:{source_id}"

    @property
    def _pending_key(self) -> str:
        return f"{self._prefix}:pending"

    def _unavailable(self, operation: str, error: Exception) -> StorageError:
        logger.warning(
            "Migration journal unavailable",
            extra={"operation": operation, "error_type": type(error).__name__},
        )
        return StorageError.partition_unavailable(JOURNAL, operation, cause=error)

    async def save(self, record: MigrationRecord) -> Result[None, StorageError]:
        try:
            async with self._client.pipeline(transaction=True) as pipe:
                pipe.hset(self._record_key(record.migration_id), mapping=record.to_hash())
                pipe.set(self._source_key(record.source_id), record.migration_id)
                if record.is_resumable:
                    pipe.sadd(self._pending_key, record.migration_id)
                else:
                    pipe.srem(self._pending_key, record.migration_id)
                await pipe.execute()
            return Ok(None)
        except RedisError as e:
            return Err(self._unavailable("save", e))

    async def get(self, migration_id: str) -> Result[Optional[MigrationRecord], StorageError]:
        try:
            data = await self._client.hgetall(self._record_key(migration_id))
        except RedisError as e:
            return Err(self._unavailable("get", e))
        return Ok(MigrationRecord.from_hash(data) if data else None)

    async def latest_for_source(self, source_id: str) -> Result[Optional[MigrationRecord], StorageError]:
        try:
            migration_id = await self._client.get(self._source_key(source_id))
        except RedisError as e:
            return Err(self._unavailable("latest_for_source", e))
        if not migration_id:
            return Ok(None)
        return await self.get(migration_id)

    async def list_pending(self) -> Result[list[MigrationRecord], StorageError]:
        try:
            ids = await self._client.smembers(self._pending_key)
            if not ids:
                return Ok([])
            async with self._client.pipeline(transaction=False) as pipe:
                for migration_id in ids:
                    pipe.hgetall(self._record_key(migration_id))
                rows = await pipe.execute()
        except RedisError as e:
            return Err(self._unavailable("list_pending", e))

        records = [MigrationRecord.from_hash(row) for row in rows if row]
        return Ok(sorted(records, key=lambda r: r.created_at))

    async def close(self) -> None:
        await self._client.aclose()


def create_journal(config: MigrationConfig) -> MigrationJournal:
    """Factory selecting the journal backend from configuration."""
    if config.journal_backend == "redis":
        return RedisMigrationJournal.from_config(config)
    return InMemoryMigrationJournal()
