"""
PostgreSQL Partition Backends

Each partition is its own database reached through its own asyncpg pool:
- PostgresEngine: pool lifecycle, query execution, error mapping
- PostgresAccountPartition: AccountPartition over the `accounts` table
- PostgresRelationshipPartition: RelationshipPartition over
  `conversations` and `messages`

Design:
- Uses asyncpg for async PostgreSQL access
- Connection pool with min/max bounds and a per-command timeout
- Every public method returns Result; asyncpg exceptions are mapped to
  StorageError (unique violations become duplicate_key)
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Sequence, TypeVar

import asyncpg

from marketmesh.core.config import PartitionConfig
from marketmesh.core.errors import StorageError
from marketmesh.core.models import (
    Account,
    AccountDraft,
    Conversation,
    Message,
    ProfileUpdate,
)
from marketmesh.core.types import (
    Err,
    Ok,
    PartitionName,
    Result,
    Role,
    Timestamp,
    new_id,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


# =============================================================================
# ENGINE
# =============================================================================
class PostgresEngine:
    """
    asyncpg pool for one partition database.

    Usage:
        result = await PostgresEngine.create(PartitionName.PROVIDER, config)
        engine = result.unwrap()
        rows = await engine.run("get", lambda conn: conn.fetch("SELECT 1"))
    """

    __slots__ = ("_partition", "_config", "_pool", "_closed")

    def __init__(self, partition: PartitionName, config: PartitionConfig) -> None:
        self._partition = partition
        self._config = config
        self._pool: Optional[asyncpg.Pool] = None
        self._closed = False

    @classmethod
    async def create(
        cls,
        partition: PartitionName,
        config: PartitionConfig,
    ) -> Result[PostgresEngine, StorageError]:
        """Create the pool and validate connectivity."""
        engine = cls(partition, config)
        try:
            engine._pool = await asyncpg.create_pool(
                dsn=config.dsn,
                min_size=config.pool_min,
                max_size=config.pool_max,
                command_timeout=config.query_timeout_ms / 1000,
            )
            async with engine._pool.acquire() as conn:
                await conn.execute("SELECT 1")
        except (asyncpg.PostgresError, OSError, asyncio.TimeoutError) as e:
            if engine._pool is not None:
                await engine._pool.close()
            return Err(StorageError.partition_unavailable(
                partition=partition.value,
                operation="connect",
                cause=e,
            ))

        logger.info(
            "Partition pool initialized",
            extra={
                "partition": partition.value,
                "pool_size": f"{config.pool_min}-{config.pool_max}",
            },
        )
        return Ok(engine)

    @property
    def partition(self) -> PartitionName:
        return self._partition

    def map_error(self, error: Exception, operation: str) -> StorageError:
        """Translate an asyncpg or transport exception to a StorageError."""
        if isinstance(error, asyncpg.UniqueViolationError):
            return StorageError.duplicate_key(
                partition=self._partition.value,
                table=getattr(error, "table_name", None) or "unknown",
                key=getattr(error, "constraint_name", None) or "unknown",
                cause=error,
            )
        if isinstance(error, asyncio.TimeoutError):
            return StorageError.timeout(
                partition=self._partition.value,
                operation=operation,
                duration_ms=self._config.query_timeout_ms,
                cause=error,
            )
        return StorageError.partition_unavailable(
            partition=self._partition.value,
            operation=operation,
            cause=error,
        )

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[asyncpg.Connection]:
        """Acquire a pooled connection inside a transaction."""
        if self._closed or self._pool is None:
            raise RuntimeError(f"Engine for {self._partition.value} is closed")
        async with self._pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def run(
        self,
        operation: str,
        fn: Callable[[asyncpg.Connection], Awaitable[T]],
    ) -> Result[T, StorageError]:
        """Run fn inside a transaction, mapping failures to Err."""
        try:
            async with self.transaction() as conn:
                return Ok(await fn(conn))
        except (asyncpg.PostgresError, asyncpg.InterfaceError, OSError, asyncio.TimeoutError) as e:
            logger.warning(
                "Partition query failed",
                extra={
                    "partition": self._partition.value,
                    "operation": operation,
                    "error_type": type(e).__name__,
                },
            )
            return Err(self.map_error(e, operation))

    async def run_in_transaction(self, statements: Sequence[str]) -> Result[None, StorageError]:
        """Execute parameterless statements atomically."""
        async def _all(conn: asyncpg.Connection) -> None:
            for statement in statements:
                await conn.execute(statement)

        return await self.run("ddl", _all)

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._pool is not None:
            await self._pool.close()
            logger.info("Partition pool closed", extra={"partition": self._partition.value})


def _affected(status: str) -> int:
    """Row count from an asyncpg command status such as 'UPDATE 3'."""
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, IndexError):
        return 0


# =============================================================================
# ROW MAPPING
# =============================================================================
def _row_to_account(row: asyncpg.Record) -> Account:
    return Account(
        id=row["id"],
        role=Role(row["role"]),
        display_name=row["display_name"],
        contact_email=row["contact_email"],
        credential_hash=row["credential_hash"],
        contact_phone=row["contact_phone"],
        city=row["city"],
        banned=row["banned"],
        migrated_to=row["migrated_to"],
        created_at=Timestamp(row["created_at"]),
        updated_at=Timestamp(row["updated_at"]),
    )


def _row_to_conversation(row: asyncpg.Record) -> Conversation:
    hints = tuple(PartitionName(h) if h else None for h in row["participant_partitions"])
    return Conversation(
        id=row["id"],
        participant_ids=tuple(row["participant_ids"]),
        participant_partitions=hints,
        deleted_for=frozenset(row["deleted_for"]),
        last_message_preview=row["last_message_preview"],
        created_at=Timestamp(row["created_at"]),
        updated_at=Timestamp(row["updated_at"]),
    )


def _row_to_message(row: asyncpg.Record) -> Message:
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        sender_id=row["sender_id"],
        receiver_id=row["receiver_id"],
        content=row["content"],
        is_read=row["is_read"],
        created_at=Timestamp(row["created_at"]),
    )


def _hint_values(conversation: Conversation) -> list[Optional[str]]:
    return [h.value if h else None for h in conversation.participant_partitions]


# =============================================================================
# ACCOUNT PARTITION
# =============================================================================
class PostgresAccountPartition:
    """AccountPartition backed by one database's `accounts` table."""

    __slots__ = ("_engine", "_id_factory")

    def __init__(
        self,
        engine: PostgresEngine,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        self._engine = engine
        self._id_factory = id_factory

    @property
    def name(self) -> PartitionName:
        return self._engine.partition

    async def get(self, account_id: str) -> Result[Optional[Account], StorageError]:
        async def _get(conn: asyncpg.Connection) -> Optional[Account]:
            row = await conn.fetchrow("SELECT * FROM accounts WHERE id = $1", account_id)
            return _row_to_account(row) if row else None

        return await self._engine.run("get", _get)

    async def get_many(
        self,
        account_ids: Sequence[str],
    ) -> Result[dict[str, Account], StorageError]:
        if not account_ids:
            return Ok({})

        async def _get_many(conn: asyncpg.Connection) -> dict[str, Account]:
            rows = await conn.fetch(
                "SELECT * FROM accounts WHERE id = ANY($1::text[])",
                list(account_ids),
            )
            return {row["id"]: _row_to_account(row) for row in rows}

        return await self._engine.run("get_many", _get_many)

    async def insert(self, draft: AccountDraft) -> Result[Account, StorageError]:
        if draft.role.partition is not self.name:
            raise ValueError(
                f"{draft.role.value} account cannot live in {self.name.value}"
            )
        account = Account.from_draft(self._id_factory(), draft)

        async def _insert(conn: asyncpg.Connection) -> Account:
            await conn.execute(
                """
                INSERT INTO accounts (
                    id, role, display_name, contact_email, credential_hash,
                    contact_phone, city, banned, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, FALSE, $8, $8)
                """,
                account.id,
                account.role.value,
                account.display_name,
                account.contact_email,
                account.credential_hash,
                account.contact_phone,
                account.city,
                account.created_at.nanos,
            )
            return account

        return await self._engine.run("insert", _insert)

    async def update_profile(
        self,
        account_id: str,
        update: ProfileUpdate,
    ) -> Result[Optional[Account], StorageError]:
        changes = update.changes()
        if not changes:
            return await self.get(account_id)
        # Column names come from ProfileUpdate's fixed field list
        assignments = ", ".join(
            f"{column} = ${i}" for i, column in enumerate(changes, start=3)
        )
        query = (
            f"UPDATE accounts SET updated_at = $2, {assignments} "
            "WHERE id = $1 RETURNING *"
        )
        return await self._update_returning(
            "update_profile", query, account_id, Timestamp.now().nanos, *changes.values()
        )

    async def set_banned(
        self,
        account_id: str,
        banned: bool,
    ) -> Result[Optional[Account], StorageError]:
        return await self._update_returning(
            "set_banned",
            "UPDATE accounts SET banned = $3, updated_at = $2 WHERE id = $1 RETURNING *",
            account_id,
            Timestamp.now().nanos,
            banned,
        )

    async def mark_migrated(
        self,
        account_id: str,
        target_id: str,
    ) -> Result[bool, StorageError]:
        result = await self._update_returning(
            "mark_migrated",
            "UPDATE accounts SET migrated_to = $3, updated_at = $2 WHERE id = $1 RETURNING *",
            account_id,
            Timestamp.now().nanos,
            target_id,
        )
        return result.map(lambda account: account is not None)

    async def _update_returning(
        self,
        operation: str,
        query: str,
        *args: Any,
    ) -> Result[Optional[Account], StorageError]:
        async def _update(conn: asyncpg.Connection) -> Optional[Account]:
            row = await conn.fetchrow(query, *args)
            return _row_to_account(row) if row else None

        return await self._engine.run(operation, _update)

    async def delete(self, account_id: str) -> Result[bool, StorageError]:
        async def _delete(conn: asyncpg.Connection) -> bool:
            status = await conn.execute("DELETE FROM accounts WHERE id = $1", account_id)
            return _affected(status) > 0

        return await self._engine.run("delete", _delete)

    async def list_accounts(
        self,
        limit: int,
        offset: int = 0,
    ) -> Result[list[Account], StorageError]:
        async def _list(conn: asyncpg.Connection) -> list[Account]:
            rows = await conn.fetch(
                "SELECT * FROM accounts ORDER BY created_at DESC, id DESC "
                "LIMIT $1 OFFSET $2",
                limit,
                offset,
            )
            return [_row_to_account(row) for row in rows]

        return await self._engine.run("list_accounts", _list)

    async def close(self) -> None:
        await self._engine.close()


# =============================================================================
# RELATIONSHIP PARTITION
# =============================================================================
class PostgresRelationshipPartition:
    """RelationshipPartition backed by `conversations` and `messages`."""

    __slots__ = ("_engine",)

    def __init__(self, engine: PostgresEngine) -> None:
        self._engine = engine

    @property
    def name(self) -> PartitionName:
        return PartitionName.RELATIONSHIP

    # -------------------------------------------------------------------------
    # Conversations
    # -------------------------------------------------------------------------
    async def get_conversation(
        self,
        conversation_id: str,
    ) -> Result[Optional[Conversation], StorageError]:
        return await self._fetch_conversation(
            "get_conversation",
            "SELECT * FROM conversations WHERE id = $1",
            conversation_id,
        )

    async def find_conversation_by_pair(
        self,
        key: str,
    ) -> Result[Optional[Conversation], StorageError]:
        return await self._fetch_conversation(
            "find_conversation_by_pair",
            "SELECT * FROM conversations WHERE pair_key = $1",
            key,
        )

    async def _fetch_conversation(
        self,
        operation: str,
        query: str,
        *args: Any,
    ) -> Result[Optional[Conversation], StorageError]:
        async def _fetch(conn: asyncpg.Connection) -> Optional[Conversation]:
            row = await conn.fetchrow(query, *args)
            return _row_to_conversation(row) if row else None

        return await self._engine.run(operation, _fetch)

    async def insert_conversation(
        self,
        conversation: Conversation,
    ) -> Result[Conversation, StorageError]:
        async def _insert(conn: asyncpg.Connection) -> Conversation:
            await conn.execute(
                """
                INSERT INTO conversations (
                    id, participant_ids, participant_partitions, deleted_for,
                    pair_key, last_message_preview, created_at, updated_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                """,
                conversation.id,
                list(conversation.participant_ids),
                _hint_values(conversation),
                sorted(conversation.deleted_for),
                conversation.pair_key,
                conversation.last_message_preview,
                conversation.created_at.nanos,
                conversation.updated_at.nanos,
            )
            return conversation

        return await self._engine.run("insert_conversation", _insert)

    async def list_conversations_for(
        self,
        account_id: str,
    ) -> Result[list[Conversation], StorageError]:
        return await self._fetch_conversations(
            "list_conversations_for",
            """
            SELECT * FROM conversations
            WHERE $1 = ANY(participant_ids) AND NOT ($1 = ANY(deleted_for))
            ORDER BY updated_at DESC, id DESC
            """,
            account_id,
        )

    async def list_all_conversations(self) -> Result[list[Conversation], StorageError]:
        return await self._fetch_conversations(
            "list_all_conversations",
            "SELECT * FROM conversations ORDER BY updated_at DESC, id DESC",
        )

    async def _fetch_conversations(
        self,
        operation: str,
        query: str,
        *args: Any,
    ) -> Result[list[Conversation], StorageError]:
        async def _fetch(conn: asyncpg.Connection) -> list[Conversation]:
            rows = await conn.fetch(query, *args)
            return [_row_to_conversation(row) for row in rows]

        return await self._engine.run(operation, _fetch)


    async def add_deleted_for(
        self,
        conversation_id: str,
        account_id: str,
    ) -> Result[bool, StorageError]:
        result = await self._execute(
            "add_deleted_for",
            """
            UPDATE conversations SET deleted_for = array_append(deleted_for, $2)
            WHERE id = $1 AND NOT ($2 = ANY(deleted_for))
            """,
            conversation_id,
            account_id,
        )
        return result.map(lambda count: count > 0)

    async def touch_conversation(
        self,
        conversation_id: str,
        preview: str,
        updated_at: Timestamp,
    ) -> Result[bool, StorageError]:
        result = await self._execute(
            "touch_conversation",
            """
            UPDATE conversations SET last_message_preview = $2, updated_at = $3
            WHERE id = $1 AND updated_at <= $3
            """,
            conversation_id,
            preview,
            updated_at.nanos,
        )
        return result.map(lambda count: count > 0)

    async def delete_conversation(
        self,
        conversation_id: str,
    ) -> Result[int, StorageError]:
        async def _delete(conn: asyncpg.Connection) -> int:
            status = await conn.execute(
                "DELETE FROM messages WHERE conversation_id = $1", conversation_id
            )
            await conn.execute("DELETE FROM conversations WHERE id = $1", conversation_id)
            return _affected(status)

        return await self._engine.run("delete_conversation", _delete)

    async def _execute(
        self,
        operation: str,
        query: str,
        *args: Any,
    ) -> Result[int, StorageError]:
        async def _run(conn: asyncpg.Connection) -> int:
            return _affected(await conn.execute(query, *args))

        return await self._engine.run(operation, _run)

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------
    async def insert_message(self, message: Message) -> Result[Message, StorageError]:
        async def _insert(conn: asyncpg.Connection) -> Message:
            await conn.execute(
                """
                INSERT INTO messages (
                    id, conversation_id, sender_id, receiver_id,
                    content, is_read, created_at
                ) VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                message.id,
                message.conversation_id,
                message.sender_id,
                message.receiver_id,
                message.content,
                message.is_read,
                message.created_at.nanos,
            )
            return message

        return await self._engine.run("insert_message", _insert)

    async def list_messages(
        self,
        conversation_id: str,
    ) -> Result[list[Message], StorageError]:
        async def _list(conn: asyncpg.Connection) -> list[Message]:
            rows = await conn.fetch(
                """
                SELECT * FROM messages WHERE conversation_id = $1
                ORDER BY created_at ASC, id ASC
                """,
                conversation_id,
            )
            return [_row_to_message(row) for row in rows]

        return await self._engine.run("list_messages", _list)

    async def mark_read(
        self,
        conversation_id: str,
        receiver_id: str,
    ) -> Result[int, StorageError]:
        return await self._execute(
            "mark_read",
            """
            UPDATE messages SET is_read = TRUE
            WHERE conversation_id = $1 AND receiver_id = $2 AND NOT is_read
            """,
            conversation_id,
            receiver_id,
        )

    # -------------------------------------------------------------------------
    # Reference rewriting
    # -------------------------------------------------------------------------
    async def rewrite_participant(
        self,
        old_id: str,
        new_id: str,
        new_partition: PartitionName,
    ) -> Result[int, StorageError]:
        async def _rewrite(conn: asyncpg.Connection) -> int:
            rows = await conn.fetch(
                "SELECT * FROM conversations WHERE $1 = ANY(participant_ids) FOR UPDATE",
                old_id,
            )
            changed = 0
            for row in rows:
                conversation = _row_to_conversation(row)
                changed += 1

                if conversation.other_participant(old_id) == new_id:
                    # Old and new identity of one account talking to itself
                    await conn.execute("DELETE FROM messages WHERE conversation_id = $1", conversation.id)
                    await conn.execute("DELETE FROM conversations WHERE id = $1", conversation.id)
                    continue

                updated = conversation.with_participant_replaced(old_id, new_id, new_partition)
                survivor_row = await conn.fetchrow(
                    "SELECT * FROM conversations WHERE pair_key = $1 AND id <> $2 FOR UPDATE",
                    updated.pair_key,
                    updated.id,
                )
                if survivor_row is None:
                    await conn.execute(
                        """
                        UPDATE conversations
                        SET participant_ids = $2, participant_partitions = $3,
                            deleted_for = $4, pair_key = $5
                        WHERE id = $1
                        """,
                        updated.id,
                        list(updated.participant_ids),
                        _hint_values(updated),
                        sorted(updated.deleted_for),
                        updated.pair_key,
                    )
                    continue

                # The new id already has a thread with this partner
                merged = _row_to_conversation(survivor_row).absorb(updated)
                await conn.execute(
                    "UPDATE messages SET conversation_id = $2 WHERE conversation_id = $1",
                    updated.id,
                    merged.id,
                )
                await conn.execute("DELETE FROM conversations WHERE id = $1", updated.id)
                await conn.execute(
                    """
                    UPDATE conversations
                    SET deleted_for = $2, last_message_preview = $3,
                        created_at = $4, updated_at = $5
                    WHERE id = $1
                    """,
                    merged.id,
                    sorted(merged.deleted_for),
                    merged.last_message_preview,
                    merged.created_at.nanos,
                    merged.updated_at.nanos,
                )
                logger.info(
                    "Merged conversation into existing thread for pair",
                    extra={"conversation_id": updated.id, "survivor_id": merged.id},
                )
            return changed

        return await self._engine.run("rewrite_participant", _rewrite)

    async def rewrite_message_party(
        self,
        old_id: str,
        new_id: str,
    ) -> Result[int, StorageError]:
        async def _rewrite(conn: asyncpg.Connection) -> int:
            senders = await conn.execute(
                "UPDATE messages SET sender_id = $2 WHERE sender_id = $1", old_id, new_id
            )
            receivers = await conn.execute(
                "UPDATE messages SET receiver_id = $2 WHERE receiver_id = $1", old_id, new_id
            )
            return _affected(senders) + _affected(receivers)

        return await self._engine.run("rewrite_message_party", _rewrite)

    async def count_references(self, account_id: str) -> Result[int, StorageError]:
        async def _count(conn: asyncpg.Connection) -> int:
            return await conn.fetchval(
                """
                SELECT
                    (SELECT count(*) FROM conversations WHERE $1 = ANY(participant_ids))
                  + (SELECT count(*) FROM messages WHERE sender_id = $1 OR receiver_id = $1)
                """,
                account_id,
            )

        return await self._engine.run("count_references", _count)

    async def close(self) -> None:
        await self._engine.close()

