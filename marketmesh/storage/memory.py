"""
In-Memory Partition Backends

Development and test implementations of the partition protocols.

Thread Safety:
    Each store guards its maps with one asyncio.Lock, so every method is
    atomic with respect to other coroutines on the same loop. This gives
    the single-partition write atomicity the mesh relies on and nothing
    more.

Example:
    customers = InMemoryAccountPartition(PartitionName.CUSTOMER)
    created = await customers.insert(AccountDraft(Role.CUSTOMER, "Ann", ...))
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Callable, Optional, Sequence

from marketmesh.core.errors import StorageError
from marketmesh.core.models import (
    Account,
    AccountDraft,
    Conversation,
    Message,
    ProfileUpdate,
)
from marketmesh.core.types import Err, Ok, PartitionName, Result, Timestamp, new_id

logger = logging.getLogger(__name__)


# =============================================================================
# ACCOUNT PARTITION
# =============================================================================
class InMemoryAccountPartition:
    """
    Account partition held in a dict keyed by id.

    Args:
        name: Which account partition this is; fixes the role of its rows
        id_factory: Identifier generator; tests inject deterministic ones
    """

    __slots__ = ("_name", "_accounts", "_lock", "_id_factory", "_closed")

    def __init__(
        self,
        name: PartitionName,
        id_factory: Callable[[], str] = new_id,
    ) -> None:
        if not name.is_account_partition:
            raise ValueError(f"{name.value} is not an account partition")
        self._name = name
        self._accounts: dict[str, Account] = {}
        self._lock = asyncio.Lock()
        self._id_factory = id_factory
        self._closed = False

    @property
    def name(self) -> PartitionName:
        return self._name

    async def get(self, account_id: str) -> Result[Optional[Account], StorageError]:
        async with self._lock:
            return Ok(self._accounts.get(account_id))

    async def get_many(
        self,
        account_ids: Sequence[str],
    ) -> Result[dict[str, Account], StorageError]:
        async with self._lock:
            return Ok({
                account_id: self._accounts[account_id]
                for account_id in account_ids
                if account_id in self._accounts
            })

    async def insert(self, draft: AccountDraft) -> Result[Account, StorageError]:
        if draft.role.partition is not self._name:
            raise ValueError(
                f"{draft.role.value} account cannot live in {self._name.value}"
            )
        async with self._lock:
            account_id = self._id_factory()
            if account_id in self._accounts:
                return Err(StorageError.duplicate_key(
                    partition=self._name.value,
                    table="accounts",
                    key=account_id,
                ))
            account = Account.from_draft(account_id, draft)
            self._accounts[account_id] = account
            return Ok(account)

    async def update_profile(
        self,
        account_id: str,
        update: ProfileUpdate,
    ) -> Result[Optional[Account], StorageError]:
        return await self._modify(account_id, **update.changes())

    async def set_banned(
        self,
        account_id: str,
        banned: bool,
    ) -> Result[Optional[Account], StorageError]:
        return await self._modify(account_id, banned=banned)

    async def mark_migrated(
        self,
        account_id: str,
        target_id: str,
    ) -> Result[bool, StorageError]:
        result = await self._modify(account_id, migrated_to=target_id)
        return result.map(lambda account: account is not None)

    async def _modify(self, account_id: str, **changes) -> Result[Optional[Account], StorageError]:
        async with self._lock:
            account = self._accounts.get(account_id)
            if account is None:
                return Ok(None)
            updated = replace(account, updated_at=Timestamp.now(), **changes)
            self._accounts[account_id] = updated
            return Ok(updated)

    async def delete(self, account_id: str) -> Result[bool, StorageError]:
        async with self._lock:
            return Ok(self._accounts.pop(account_id, None) is not None)

    async def list_accounts(
        self,
        limit: int,
        offset: int = 0,
    ) -> Result[list[Account], StorageError]:
        async with self._lock:
            ordered = sorted(
                self._accounts.values(),
                key=lambda a: (a.created_at, a.id),
                reverse=True,
            )
            return Ok(ordered[offset:offset + limit])

    async def close(self) -> None:
        self._closed = True

    def __len__(self) -> int:
        return len(self._accounts)


# =============================================================================
# RELATIONSHIP PARTITION
# =============================================================================
class InMemoryRelationshipPartition:
    """
    Conversations and messages held in dicts.

    A secondary index maps pair key to conversation id and enforces the
    one-conversation-per-pair invariant on insert.
    """

    __slots__ = ("_conversations", "_pairs", "_messages", "_lock", "_closed")

    def __init__(self) -> None:
        self._conversations: dict[str, Conversation] = {}
        self._pairs: dict[str, str] = {}
        self._messages: dict[str, Message] = {}
        self._lock = asyncio.Lock()
        self._closed = False

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
        async with self._lock:
            return Ok(self._conversations.get(conversation_id))

    async def find_conversation_by_pair(
        self,
        key: str,
    ) -> Result[Optional[Conversation], StorageError]:
        async with self._lock:
            conversation_id = self._pairs.get(key)
            if conversation_id is None:
                return Ok(None)
            return Ok(self._conversations.get(conversation_id))

    async def insert_conversation(
        self,
        conversation: Conversation,
    ) -> Result[Conversation, StorageError]:
        async with self._lock:
            key = conversation.pair_key
            if key in self._pairs:
                return Err(StorageError.duplicate_key(
                    partition=self.name.value,
                    table="conversations",
                    key=key,
                ))
            self._conversations[conversation.id] = conversation
            self._pairs[key] = conversation.id
            return Ok(conversation)

    async def list_conversations_for(
        self,
        account_id: str,
    ) -> Result[list[Conversation], StorageError]:
        async with self._lock:
            visible = [
                c for c in self._conversations.values()
                if c.is_visible_to(account_id)
            ]
        return Ok(sorted(visible, key=lambda c: (c.updated_at, c.id), reverse=True))

    async def list_all_conversations(self) -> Result[list[Conversation], StorageError]:
        async with self._lock:
            every = list(self._conversations.values())
        return Ok(sorted(every, key=lambda c: (c.updated_at, c.id), reverse=True))

    async def add_deleted_for(
        self,
        conversation_id: str,
        account_id: str,
    ) -> Result[bool, StorageError]:
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None or account_id in conversation.deleted_for:
                return Ok(False)
            self._conversations[conversation_id] = replace(
                conversation,
                deleted_for=conversation.deleted_for | {account_id},
            )
            return Ok(True)

    async def touch_conversation(
        self,
        conversation_id: str,
        preview: str,
        updated_at: Timestamp,
    ) -> Result[bool, StorageError]:
        async with self._lock:
            conversation = self._conversations.get(conversation_id)
            if conversation is None or conversation.updated_at > updated_at:
                return Ok(False)
            self._conversations[conversation_id] = replace(
                conversation,
                last_message_preview=preview,
                updated_at=updated_at,
            )
            return Ok(True)

    async def delete_conversation(
        self,
        conversation_id: str,
    ) -> Result[int, StorageError]:
        async with self._lock:
            removed = self._drop_messages(conversation_id)
            conversation = self._conversations.pop(conversation_id, None)
            if conversation is not None:
                self._pairs.pop(conversation.pair_key, None)
            return Ok(removed)

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------
    async def insert_message(self, message: Message) -> Result[Message, StorageError]:
        async with self._lock:
            if message.id in self._messages:
                return Err(StorageError.duplicate_key(
                    partition=self.name.value,
                    table="messages",
                    key=message.id,
                ))
            self._messages[message.id] = message
            return Ok(message)

    async def list_messages(
        self,
        conversation_id: str,
    ) -> Result[list[Message], StorageError]:
        async with self._lock:
            found = [
                m for m in self._messages.values()
                if m.conversation_id == conversation_id
            ]
        return Ok(sorted(found, key=lambda m: m.sort_key))

    async def mark_read(
        self,
        conversation_id: str,
        receiver_id: str,
    ) -> Result[int, StorageError]:
        async with self._lock:
            changed = 0
            for message in list(self._messages.values()):
                if (
                    message.conversation_id == conversation_id
                    and message.receiver_id == receiver_id
                    and not message.is_read
                ):
                    self._messages[message.id] = replace(message, is_read=True)
                    changed += 1
            return Ok(changed)

    # -------------------------------------------------------------------------
    # Reference rewriting
    # -------------------------------------------------------------------------
    async def rewrite_participant(
        self,
        old_id: str,
        new_id: str,
        new_partition: PartitionName,
    ) -> Result[int, StorageError]:
        async with self._lock:
            changed = 0
            for conversation in list(self._conversations.values()):
                if old_id not in conversation.participant_ids:
                    continue
                changed += 1
                self._pairs.pop(conversation.pair_key, None)

                if conversation.other_participant(old_id) == new_id:
                    # Old and new identity of one account talking to itself
                    del self._conversations[conversation.id]
                    self._drop_messages(conversation.id)
                    continue

                updated = conversation.with_participant_replaced(old_id, new_id, new_partition)
                survivor_id = self._pairs.get(updated.pair_key)
                if survivor_id is None:
                    self._pairs[updated.pair_key] = updated.id
                    self._conversations[updated.id] = updated
                    continue

                # The new id already has a thread with this partner
                survivor = self._conversations[survivor_id]
                self._conversations[survivor_id] = survivor.absorb(updated)
                del self._conversations[conversation.id]
                for message in list(self._messages.values()):
                    if message.conversation_id == conversation.id:
                        self._messages[message.id] = replace(message, conversation_id=survivor_id)
                logger.info(
                    "Merged conversation into existing thread for pair",
                    extra={"conversation_id": conversation.id, "survivor_id": survivor_id},
                )
            return Ok(changed)

    def _drop_messages(self, conversation_id: str) -> int:
        doomed = [m.id for m in self._messages.values() if m.conversation_id == conversation_id]
        for message_id in doomed:
            del self._messages[message_id]
        return len(doomed)

    async def rewrite_message_party(
        self,
        old_id: str,
        new_id: str,
    ) -> Result[int, StorageError]:
        async with self._lock:
            changed = 0
            for message in list(self._messages.values()):
                if old_id not in (message.sender_id, message.receiver_id):
                    continue
                self._messages[message.id] = replace(
                    message,
                    sender_id=new_id if message.sender_id == old_id else message.sender_id,
                    receiver_id=new_id if message.receiver_id == old_id else message.receiver_id,
                )
                changed += 1
            return Ok(changed)

    async def count_references(self, account_id: str) -> Result[int, StorageError]:
        async with self._lock:
            conversations = sum(
                1 for c in self._conversations.values()
                if account_id in c.participant_ids
            )
            messages = sum(
                1 for m in self._messages.values()
                if account_id in (m.sender_id, m.receiver_id)
            )
            return Ok(conversations + messages)

    async def close(self) -> None:
        self._closed = True
