"""
Partition Protocol Definitions

Structural subtyping protocols (PEP 544) for pluggable partition backends:
- AccountPartition: one role's accounts, reachable only through its handle
- RelationshipPartition: conversations and messages for every role

Design Principles:
    - Expected outcomes (absent row, duplicate key) are Result values
    - Unexpected backend failures may raise; callers wrap every call in
      reliability.guarded_call, which bounds it in time and converts
      exceptions to StorageError
    - Identifiers are opaque; no backend interprets another partition's ids
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Optional, Protocol, Sequence, runtime_checkable

from marketmesh.core.errors import StorageError
from marketmesh.core.models import (
    Account,
    AccountDraft,
    Conversation,
    Message,
    ProfileUpdate,
)
from marketmesh.core.types import PartitionName, Result, Timestamp


# =============================================================================
# ACCOUNT PARTITION
# =============================================================================
@runtime_checkable
class AccountPartition(Protocol):
    """
    Handle to one account partition (customer, provider or admin).

    The partition assigns identifiers on insert; callers never choose them.
    """

    @property
    def name(self) -> PartitionName:
        ...

    @abstractmethod
    async def get(self, account_id: str) -> Result[Optional[Account], StorageError]:
        """Fetch one account; Ok(None) when absent."""
        ...

    @abstractmethod
    async def get_many(
        self,
        account_ids: Sequence[str],
    ) -> Result[dict[str, Account], StorageError]:
        """Fetch every present account among the ids in one query."""
        ...

    @abstractmethod
    async def insert(self, draft: AccountDraft) -> Result[Account, StorageError]:
        """
        Create an account with a fresh partition-assigned id.

        Returns:
            Err(StorageError.duplicate_key) if the assigned id is taken
        """
        ...

    @abstractmethod
    async def update_profile(
        self,
        account_id: str,
        update: ProfileUpdate,
    ) -> Result[Optional[Account], StorageError]:
        ...

    @abstractmethod
    async def set_banned(
        self,
        account_id: str,
        banned: bool,
    ) -> Result[Optional[Account], StorageError]:
        ...

    @abstractmethod
    async def mark_migrated(
        self,
        account_id: str,
        target_id: str,
    ) -> Result[bool, StorageError]:
        """Flag a migration source as a stub pointing at target_id."""
        ...

    @abstractmethod
    async def delete(self, account_id: str) -> Result[bool, StorageError]:
        """Hard delete; Ok(False) when nothing was removed."""
        ...

    @abstractmethod
    async def list_accounts(
        self,
        limit: int,
        offset: int = 0,
    ) -> Result[list[Account], StorageError]:
        """Accounts ordered by created_at descending."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...


# =============================================================================
# RELATIONSHIP PARTITION
# =============================================================================
@runtime_checkable
class RelationshipPartition(Protocol):
    """
    Handle to the shared relationship partition.

    At most one conversation exists per pair key; insert_conversation
    enforces it.
    """

    @property
    def name(self) -> PartitionName:
        ...

    # -------------------------------------------------------------------------
    # Conversations
    # -------------------------------------------------------------------------
    @abstractmethod
    async def get_conversation(
        self,
        conversation_id: str,
    ) -> Result[Optional[Conversation], StorageError]:
        ...

    @abstractmethod
    async def find_conversation_by_pair(
        self,
        key: str,
    ) -> Result[Optional[Conversation], StorageError]:
        ...

    @abstractmethod
    async def insert_conversation(
        self,
        conversation: Conversation,
    ) -> Result[Conversation, StorageError]:
        """
        Insert a new conversation.

        Returns:
            Err(StorageError.duplicate_key) if the pair key already exists
        """
        ...

    @abstractmethod
    async def list_conversations_for(
        self,
        account_id: str,
    ) -> Result[list[Conversation], StorageError]:
        """Visible conversations for the account, newest updated_at first."""
        ...

    @abstractmethod
    async def list_all_conversations(self) -> Result[list[Conversation], StorageError]:
        """Every conversation, newest updated_at first."""
        ...

    @abstractmethod
    async def add_deleted_for(
        self,
        conversation_id: str,
        account_id: str,
    ) -> Result[bool, StorageError]:
        """Add to deleted_for; Ok(False) if already present."""
        ...

    @abstractmethod
    async def touch_conversation(
        self,
        conversation_id: str,
        preview: str,
        updated_at: Timestamp,
    ) -> Result[bool, StorageError]:
        """Set preview and updated_at unless a newer message already did."""
        ...

    @abstractmethod
    async def delete_conversation(
        self,
        conversation_id: str,
    ) -> Result[int, StorageError]:
        """Delete messages, then the conversation; returns messages removed."""
        ...

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------
    @abstractmethod
    async def insert_message(self, message: Message) -> Result[Message, StorageError]:
        ...

    @abstractmethod
    async def list_messages(
        self,
        conversation_id: str,
    ) -> Result[list[Message], StorageError]:
        """Messages ordered by (created_at, id) ascending."""
        ...

    @abstractmethod
    async def mark_read(
        self,
        conversation_id: str,
        receiver_id: str,
    ) -> Result[int, StorageError]:
        ...

    # -------------------------------------------------------------------------
    # Reference rewriting
    # -------------------------------------------------------------------------
    @abstractmethod
    async def rewrite_participant(
        self,
        old_id: str,
        new_id: str,
        new_partition: PartitionName,
    ) -> Result[int, StorageError]:
        """
        Replace old_id with new_id in participant lists, where still old.

        Also moves the account in deleted_for and updates the hint. A
        thread whose new pair already has one is merged into it (messages
        move, the old row goes); a thread between old_id and new_id is
        dropped. Returns the number of conversations touched.
        """
        ...

    @abstractmethod
    async def rewrite_message_party(
        self,
        old_id: str,
        new_id: str,
    ) -> Result[int, StorageError]:
        """Replace old_id in sender_id and receiver_id, where still old."""
        ...

    @abstractmethod
    async def count_references(self, account_id: str) -> Result[int, StorageError]:
        """Conversations plus messages that still mention the account."""
        ...

    @abstractmethod
    async def close(self) -> None:
        ...
