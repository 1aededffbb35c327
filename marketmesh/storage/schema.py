"""
Partition Schema: DDL for PostgreSQL Partitions

Tables:
- accounts: one per account partition database (customer, provider, admin)
- conversations: relationship partition, one row per participant pair
- messages: relationship partition, ordered per conversation

Design:
- TEXT primary keys carrying opaque 24-hex identifiers
- BIGINT nanosecond timestamps, matching core.types.Timestamp
- TEXT[] participant lists so a migration can rewrite one element
- UNIQUE pair_key enforcing one conversation per unordered pair
"""

from __future__ import annotations

import logging

from marketmesh.core.errors import StorageError
from marketmesh.core.types import Ok, PartitionName, Result
from marketmesh.storage.postgres import PostgresEngine

logger = logging.getLogger(__name__)


class PartitionSchema:
    """
    Schema manager for partition DDL.

    Idempotent: every statement uses IF NOT EXISTS, and the whole set runs
    in one transaction.
    """

    # ==========================================================================
    # ACCOUNT PARTITIONS
    # ==========================================================================

    ACCOUNTS_DDL = """
    CREATE TABLE IF NOT EXISTS accounts (
        id TEXT PRIMARY KEY,
        role VARCHAR(16) NOT NULL,
        display_name TEXT NOT NULL,
        contact_email TEXT NOT NULL,
        credential_hash TEXT NOT NULL,
        contact_phone TEXT NOT NULL DEFAULT '',
        city TEXT NOT NULL DEFAULT '',
        banned BOOLEAN NOT NULL DEFAULT FALSE,

        -- Set only on a migration source whose deletion failed
        migrated_to TEXT,

        created_at BIGINT NOT NULL,
        updated_at BIGINT NOT NULL
    );
    """

    ACCOUNTS_INDEXES = [
        """CREATE INDEX IF NOT EXISTS idx_accounts_created_at
           ON accounts(created_at DESC);""",
        """CREATE INDEX IF NOT EXISTS idx_accounts_email
           ON accounts(contact_email);""",
    ]

    # ==========================================================================
    # RELATIONSHIP PARTITION
    # ==========================================================================

    CONVERSATIONS_DDL = """
    CREATE TABLE IF NOT EXISTS conversations (
        id TEXT PRIMARY KEY,
        participant_ids TEXT[] NOT NULL CHECK (cardinality(participant_ids) = 2),

        -- Partition each participant lived in when last written; a hint
        participant_partitions TEXT[] NOT NULL,

        deleted_for TEXT[] NOT NULL DEFAULT '{}',
        pair_key TEXT NOT NULL UNIQUE,
        last_message_preview TEXT NOT NULL DEFAULT '',
        created_at BIGINT NOT NULL,
        updated_at BIGINT NOT NULL
    );
    """

    CONVERSATIONS_INDEXES = [
        """CREATE INDEX IF NOT EXISTS idx_conversations_participants
           ON conversations USING GIN (participant_ids);""",
        """CREATE INDEX IF NOT EXISTS idx_conversations_updated_at
           ON conversations(updated_at DESC);""",
    ]

    MESSAGES_DDL = """
    CREATE TABLE IF NOT EXISTS messages (
        id TEXT PRIMARY KEY,
        conversation_id TEXT NOT NULL REFERENCES conversations(id),
        sender_id TEXT NOT NULL,
        receiver_id TEXT NOT NULL,
        content TEXT NOT NULL,
        is_read BOOLEAN NOT NULL DEFAULT FALSE,
        created_at BIGINT NOT NULL
    );
    """

    MESSAGES_INDEXES = [
        """CREATE INDEX IF NOT EXISTS idx_messages_conversation_order
           ON messages(conversation_id, created_at, id);""",
        """CREATE INDEX IF NOT EXISTS idx_messages_sender
           ON messages(sender_id);""",
        """CREATE INDEX IF NOT EXISTS idx_messages_receiver
           ON messages(receiver_id);""",
    ]

    @classmethod
    def statements_for(cls, partition: PartitionName) -> list[str]:
        """DDL statements, in dependency order, for a partition."""
        if partition.is_account_partition:
            return [cls.ACCOUNTS_DDL, *cls.ACCOUNTS_INDEXES]
        return [
            cls.CONVERSATIONS_DDL,
            *cls.CONVERSATIONS_INDEXES,
            cls.MESSAGES_DDL,
            *cls.MESSAGES_INDEXES,
        ]

    @classmethod
    async def ensure(
        cls,
        engine: PostgresEngine,
        partition: PartitionName,
    ) -> Result[None, StorageError]:
        """Create tables and indexes for the partition if missing."""
        statements = cls.statements_for(partition)
        result = await engine.run_in_transaction(statements)
        if result.is_err():
            return result
        logger.info(
            "Partition schema ensured",
            extra={"partition": partition.value, "statements": len(statements)},
        )
        return Ok(None)
