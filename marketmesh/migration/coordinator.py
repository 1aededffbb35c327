"""
Migration Coordinator: Customer to Provider, Without a Distributed Transaction

Moves an account from the customer partition to the provider partition
and rewrites every conversation and message reference to it. Each step
is an independent single-partition write; the saga record is persisted
after every transition so the work can be resumed.

Steps:
    1. STARTED                    read the source account (credential hash)
    2. ACCOUNT_CREATED_IN_TARGET  insert the provider account, fresh id
    3. REFERENCES_REWRITTEN       check the new id is unique, rewrite old -> new,
                                  verify none left
    4. SOURCE_ACCOUNT_DELETED     delete the source; on failure flag it as a stub
    5. DONE

Failure policy:
- a failure before step 2 commits leaves nothing behind; a new call
  resumes the failed record and retries the insert
- a conflicting target identifier is fatal and is never retried with
  another identifier
- failures in steps 3 and 4 leave the record FAILED and resumable
- no step is ever compensated

Banned accounts are refused at step 1, including on resume. Calls for
one source are serialized per process; a thread the new id already has
with the same partner absorbs the old one during the rewrite.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from marketmesh.core.config import MigrationConfig
from marketmesh.core.errors import (
    ErrorCode,
    MarketMeshError,
    MigrationError,
    QueryError,
    SecurityError,
    ValidationError,
)
from marketmesh.core.models import AccountDraft
from marketmesh.core.types import Err, Ok, PartitionName, Result, Role
from marketmesh.migration.journal import (
    MigrationJournal,
    MigrationRecord,
    MigrationState,
    ProviderOverrides,
)
from marketmesh.observability.logging import StructuredLogger
from marketmesh.observability.metrics import MeshMetrics
from marketmesh.reliability.retry import RetryPolicy, retry_with_backoff
from marketmesh.reliability.timeout import guarded_call
from marketmesh.relationships.store import RelationshipStore
from marketmesh.storage.partition_store import PartitionStore
from marketmesh.storage.protocols import AccountPartition

logger = logging.getLogger(__name__)
slog = StructuredLogger(__name__)

SOURCE = PartitionName.CUSTOMER
TARGET = PartitionName.PROVIDER


@dataclass(frozen=True, slots=True)
class RecoveryOutcome:
    """Result of one recovery pass over a pending migration."""

    migration_id: str
    source_id: str
    target_id: Optional[str]
    error: Optional[MarketMeshError] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class MigrationCoordinator:
    """
    Drives migration records forward through the journal.

    Usage:
        coordinator = MigrationCoordinator(partitions, relationships, journal)
        result = await coordinator.migrate_account_to_provider(
            "c1", ProviderOverrides(display_name="Ann's Plumbing"),
        )
    """

    __slots__ = (
        "_partitions", "_relationships", "_journal", "_config", "_metrics", "_steps", "_source_locks",
    )

    def __init__(
        self,
        partitions: PartitionStore,
        relationships: RelationshipStore,
        journal: MigrationJournal,
        config: Optional[MigrationConfig] = None,
        metrics: Optional[MeshMetrics] = None,
    ) -> None:
        self._partitions = partitions
        self._relationships = relationships
        self._journal = journal
        self._config = config or MigrationConfig()
        self._metrics = metrics or MeshMetrics()
        self._steps: dict[MigrationState, Callable[[MigrationRecord], Awaitable[Result[MigrationRecord, MarketMeshError]]]] = {
            MigrationState.STARTED: self._create_target_account,
            MigrationState.ACCOUNT_CREATED_IN_TARGET: self._rewrite_references,
            MigrationState.REFERENCES_REWRITTEN: self._delete_source_account,
            MigrationState.SOURCE_ACCOUNT_DELETED: self._finish,
        }
        self._source_locks: dict[str, asyncio.Lock] = {}

    # =========================================================================
    # ENTRY POINTS
    # =========================================================================
    async def migrate_account_to_provider(
        self,
        account_id: str,
        overrides: Optional[ProviderOverrides] = None,
    ) -> Result[str, MarketMeshError]:
        """
        Migrate a customer account; returns the new provider account id.

        A resumable record for the same source is continued instead of
        starting a second migration. Calls for one source are serialized
        within the process.
        """
        async with self._exclusive(account_id):
            latest = await self._journal.latest_for_source(account_id)
            if latest.is_err():
                return latest
            record = latest.unwrap()
            if record is not None and record.is_conflict:
                return Err(MigrationError.conflict(
                    record.migration_id, TARGET.value, record.target_id or "", cause=None
                ))
            if record is not None and record.is_resumable:
                slog.info(
                    "Resuming existing migration for source",
                    migration_id=record.migration_id,
                    source_id=account_id,
                    state=record.state.value,
                )
                return await self._drive(record)

            source = await self._read_source(account_id)
            if source.is_err():
                return source
            if source.unwrap().is_migrated:
                return Err(ValidationError.invalid_operand(
                    "account_id", account_id, "account is a migrated stub awaiting cleanup"
                ))

            record = MigrationRecord.start(account_id, overrides)
            saved = await self._journal.save(record)
            if saved.is_err():
                return saved
            return await self._drive(record)

    async def resume(self, migration_id: str) -> Result[str, MarketMeshError]:
        """Continue an interrupted or failed (non-conflict) migration."""
        loaded = await self._journal.get(migration_id)
        if loaded.is_err():
            return loaded
        if loaded.unwrap() is None:
            return Err(QueryError.not_found("Migration", migration_id))

        async with self._exclusive(loaded.unwrap().source_id):
            # Another caller may have moved it on while we waited
            loaded = await self._journal.get(migration_id)
            if loaded.is_err():
                return loaded
            record = loaded.unwrap()
            if record.state is MigrationState.DONE:
                return Ok(record.target_id)
            if not record.is_resumable:
                return Err(MigrationError.conflict(
                    migration_id, TARGET.value, record.target_id or ""
                ))
            return await self._drive(record)

    @asynccontextmanager
    async def _exclusive(self, source_id: str) -> AsyncIterator[None]:
        lock = self._source_locks.setdefault(source_id, asyncio.Lock())
        async with lock:
            yield

    async def recover_pending(
        self,
        policy: Optional[RetryPolicy] = None,
    ) -> Result[list[RecoveryOutcome], MarketMeshError]:
        """
        Resume every pending migration, retrying retryable failures with
        backoff. Outcomes are reported per migration.
        """
        if policy is None:
            policy = RetryPolicy.from_config(self._config)
        pending = await self._journal.list_pending()
        if pending.is_err():
            return pending

        outcomes = []
        for record in pending.unwrap():
            result = await retry_with_backoff(
                lambda migration_id=record.migration_id: self.resume(migration_id),
                policy,
            )
            outcomes.append(RecoveryOutcome(
                migration_id=record.migration_id,
                source_id=record.source_id,
                target_id=result.unwrap() if result.is_ok() else record.target_id,
                error=None if result.is_ok() else result.error,
            ))
        logger.info(
            "Migration recovery pass complete",
            extra={
                "pending": len(outcomes),
                "recovered": sum(1 for o in outcomes if o.succeeded),
            },
        )
        return Ok(outcomes)

    # =========================================================================
    # SAGA DRIVER
    # =========================================================================
    async def _drive(self, record: MigrationRecord) -> Result[str, MarketMeshError]:
        with StructuredLogger.context(migration_id=record.migration_id, source_id=record.source_id):
            record = record.resumed()
            while record.state is not MigrationState.DONE:
                step = self._steps[record.state]
                outcome = await step(record)
                if outcome.is_err():
                    return await self._fail(record, outcome.error)

                record = outcome.unwrap()
                saved = await self._journal.save(record)
                if saved.is_err():
                    slog.error(
                        "Migration step committed but journal save failed",
                        state=record.state.value,
                        error_code=saved.error.code.name,
                    )
                    return Err(MigrationError.step_failed(
                        record.migration_id, "journal_save", cause=saved.error,
                        state=record.state.value,
                    ))
                slog.info("Migration step committed", state=record.state.value)

            self._metrics.migrations.inc(state=MigrationState.DONE.value)
            slog.info("Migration done", target_id=record.target_id)
            return Ok(record.target_id)

    async def _fail(
        self,
        record: MigrationRecord,
        error: MarketMeshError,
    ) -> Result[str, MarketMeshError]:
        if not isinstance(error, MigrationError):
            error = MigrationError.step_failed(
                record.migration_id, record.state.value, cause=error,
            )
        failed = record.fail(error)
        saved = await self._journal.save(failed)
        if saved.is_err():
            slog.error("Could not persist migration failure", error_code=saved.error.code.name)
        self._metrics.migrations.inc(state=MigrationState.FAILED.value)
        slog.error(
            "Migration failed",
            failed_from=record.state.value,
            error_code=error.code.name,
            retryable=error.retryable,
            cause_code=error.cause.code.name if isinstance(error.cause, MarketMeshError) else None,
        )
        return Err(error)

    # =========================================================================
    # STEPS
    # =========================================================================
    async def _account_call(
        self,
        name: PartitionName,
        operation: str,
        factory: Callable[[AccountPartition], Awaitable[Result[Any, MarketMeshError]]],
    ) -> Result[Any, MarketMeshError]:
        timeout_ms = self._config.step_timeout_ms
        connected = await guarded_call(
            name.value, "connect", self._partitions.accounts(name), timeout_ms
        )
        if connected.is_err():
            return connected
        return await guarded_call(name.value, operation, factory(connected.unwrap()), timeout_ms)

    async def _read_source(self, account_id: str) -> Result[Any, MarketMeshError]:
        result = await self._account_call(SOURCE, "read_source", lambda part: part.get(account_id))
        if result.is_err():
            return result
        account = result.unwrap()
        if account is None:
            return Err(QueryError.not_found("Account", account_id))
        # A fresh provider account would not carry the ban
        if account.banned:
            return Err(SecurityError.account_banned(account_id, "migrate to provider"))
        return result

    async def _create_target_account(
        self,
        record: MigrationRecord,
    ) -> Result[MigrationRecord, MarketMeshError]:
        source = await self._read_source(record.source_id)
        if source.is_err():
            return source
        account = source.unwrap()

        overrides = record.overrides
        draft = AccountDraft(
            role=Role.PROVIDER,
            display_name=overrides.display_name or account.display_name,
            contact_email=account.contact_email,
            credential_hash=account.credential_hash,
            contact_phone=overrides.contact_phone or account.contact_phone,
            city=overrides.city or account.city,
        )
        inserted = await self._account_call(TARGET, "insert", lambda part: part.insert(draft))
        if inserted.is_err():
            if inserted.error.code is ErrorCode.STORAGE_DUPLICATE_KEY:
                return Err(MigrationError.conflict(
                    record.migration_id,
                    TARGET.value,
                    inserted.error.context.get("key", ""),
                    cause=inserted.error,
                ))
            return inserted

        return Ok(record.advance(
            MigrationState.ACCOUNT_CREATED_IN_TARGET,
            target_id=inserted.unwrap().id,
        ))

    async def _check_target_unique(self, record: MigrationRecord) -> Result[None, MarketMeshError]:
        """The new id must not already name an account in another partition."""
        target_id = record.target_id
        if target_id == record.source_id:
            return Err(MigrationError.conflict(record.migration_id, SOURCE.value, target_id))
        for name in (SOURCE, PartitionName.ADMIN):
            clash = await self._account_call(name, "conflict_check", lambda part: part.get(target_id))
            if clash.is_err():
                return clash
            if clash.unwrap() is not None:
                return Err(MigrationError.conflict(record.migration_id, name.value, target_id))
        return Ok(None)

    async def _rewrite_references(
        self,
        record: MigrationRecord,
    ) -> Result[MigrationRecord, MarketMeshError]:
        unique = await self._check_target_unique(record)
        if unique.is_err():
            return unique

        rewritten = await self._relationships.rewrite_references(
            record.source_id, record.target_id, TARGET
        )
        if rewritten.is_err():
            return rewritten
        report = rewritten.unwrap()
        if not report.complete:
            # A write racing the rewrite can reintroduce the old id
            return Err(MigrationError.step_failed(
                record.migration_id,
                MigrationState.REFERENCES_REWRITTEN.value,
                remaining_references=report.remaining_references,
            ))
        return Ok(record.advance(MigrationState.REFERENCES_REWRITTEN))

    async def _delete_source_account(
        self,
        record: MigrationRecord,
    ) -> Result[MigrationRecord, MarketMeshError]:
        deleted = await self._account_call(
            SOURCE, "delete_source", lambda part: part.delete(record.source_id)
        )
        if deleted.is_ok():
            return Ok(record.advance(MigrationState.SOURCE_ACCOUNT_DELETED))

        # Two live accounts now exist; disable the old one until cleanup
        flagged = await self._account_call(
            SOURCE,
            "mark_migrated",
            lambda part: part.mark_migrated(record.source_id, record.target_id),
        )
        if flagged.is_err():
            slog.error(
                "Source account could not be flagged as migrated",
                target_id=record.target_id,
                error_code=flagged.error.code.name,
            )
        else:
            slog.warning(
                "Source account deletion failed; flagged for manual cleanup",
                target_id=record.target_id,
            )
        return Err(MigrationError.step_failed(
            record.migration_id,
            MigrationState.SOURCE_ACCOUNT_DELETED.value,
            cause=deleted.error,
            flagged=flagged.is_ok(),
        ))

    async def _finish(self, record: MigrationRecord) -> Result[MigrationRecord, MarketMeshError]:
        return Ok(record.advance(MigrationState.DONE))
