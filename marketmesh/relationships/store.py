"""
Relationship Store: Conversations and Messages in the Shared Partition

Owns the conversation and message lifecycle. Participants are opaque
account identifiers from any account partition; there is no foreign key
to check them against, so the store asks the identity resolver instead.

Invariants:
- at most one conversation per unordered participant pair; defended by a
  re-check right before insert AND by the partition's unique pair key
  (a losing concurrent insert re-reads and returns the winner)
- a message is written before the conversation's preview/updated_at
- listing order: conversations by updated_at desc, messages by
  (created_at, id) asc
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional

from marketmesh.core.config import RelationshipConfig
from marketmesh.core.errors import (
    ErrorCode,
    MarketMeshError,
    QueryError,
    SecurityError,
    ValidationError,
)
from marketmesh.core.models import Conversation, Message
from marketmesh.core.types import Err, Ok, PartitionName, Result, Timestamp, new_id, pair_key
from marketmesh.identity.models import ResolvedIdentity
from marketmesh.identity.resolver import IdentityResolver
from marketmesh.observability.metrics import MeshMetrics
from marketmesh.reliability.timeout import guarded_call
from marketmesh.relationships.models import ConversationView, MessageView, RewriteReport
from marketmesh.storage.partition_store import PartitionStore
from marketmesh.storage.protocols import RelationshipPartition

logger = logging.getLogger(__name__)

RELATIONSHIP = PartitionName.RELATIONSHIP.value


class RelationshipStore:
    """
    Conversation and message operations.

    Principal checks that depend only on participation (participant,
    not soft-deleted) happen here; role checks (admin) belong to the
    caller.
    """

    __slots__ = ("_partitions", "_resolver", "_config", "_metrics")

    def __init__(
        self,
        partitions: PartitionStore,
        resolver: IdentityResolver,
        config: Optional[RelationshipConfig] = None,
        metrics: Optional[MeshMetrics] = None,
    ) -> None:
        self._partitions = partitions
        self._resolver = resolver
        self._config = config or RelationshipConfig()
        self._metrics = metrics or MeshMetrics()

    async def _call(
        self,
        operation: str,
        factory: Callable[[RelationshipPartition], Awaitable[Result[Any, MarketMeshError]]],
    ) -> Result[Any, MarketMeshError]:
        timeout_ms = self._config.operation_timeout_ms
        with self._metrics.relationship_latency.time(operation=operation):
            connected = await guarded_call(
                RELATIONSHIP, "connect", self._partitions.relationships(), timeout_ms
            )
            if connected.is_err():
                return connected
            return await guarded_call(
                RELATIONSHIP, operation, factory(connected.unwrap()), timeout_ms
            )

    async def _load(self, conversation_id: str) -> Result[Conversation, MarketMeshError]:
        result = await self._call(
            "get_conversation", lambda rel: rel.get_conversation(conversation_id)
        )
        if result.is_err():
            return result
        conversation = result.unwrap()
        if conversation is None:
            return Err(QueryError.not_found("Conversation", conversation_id))
        return Ok(conversation)

    async def _load_visible(
        self,
        conversation_id: str,
        account_id: str,
        action: str,
    ) -> Result[Conversation, MarketMeshError]:
        loaded = await self._load(conversation_id)
        if loaded.is_err():
            return loaded
        conversation = loaded.unwrap()
        if not conversation.is_visible_to(account_id):
            return Err(SecurityError.unauthorized(
                account_id, f"conversation {conversation_id}", action
            ))
        return loaded

    # =========================================================================
    # CONVERSATIONS
    # =========================================================================
    async def find_or_create_conversation(
        self,
        account_a: str,
        account_b: str,
    ) -> Result[Conversation, MarketMeshError]:
        """
        Return the conversation between two accounts, creating it if needed.

        Idempotent and order-independent. Refuses self-conversations and
        partners that resolve nowhere.
        """
        if account_a == account_b:
            return Err(ValidationError.invalid_operand(
                "other_account_id", account_b, "cannot start a conversation with yourself"
            ))

        key = pair_key(account_a, account_b)
        existing = await self._find_by_pair(key)
        if existing.is_err() or existing.unwrap() is not None:
            return existing

        identity_a, identity_b = await asyncio.gather(
            self._resolver.resolve(account_a),
            self._resolver.resolve(account_b),
        )
        if not identity_b.is_known:
            return Err(QueryError.not_found("Account", account_b))

        # Another caller may have created it while we resolved
        existing = await self._find_by_pair(key)
        if existing.is_err() or existing.unwrap() is not None:
            return existing

        now = Timestamp.now()
        conversation = Conversation(
            id=new_id(),
            participant_ids=(account_a, account_b),
            participant_partitions=(identity_a.partition, identity_b.partition),
            created_at=now,
            updated_at=now,
        )
        inserted = await self._call(
            "insert_conversation", lambda rel: rel.insert_conversation(conversation)
        )
        if inserted.is_ok():
            logger.info(
                "Conversation created",
                extra={"conversation_id": conversation.id, "pair_key": key},
            )
            return inserted

        if inserted.error.code is ErrorCode.STORAGE_DUPLICATE_KEY:
            logger.info("Lost conversation creation race; re-reading", extra={"pair_key": key})
            winner = await self._find_by_pair(key)
            if winner.is_err() or winner.unwrap() is not None:
                return winner
        return inserted

    async def _find_by_pair(self, key: str) -> Result[Optional[Conversation], MarketMeshError]:
        return await self._call(
            "find_conversation_by_pair", lambda rel: rel.find_conversation_by_pair(key)
        )

    async def get_conversation(
        self,
        conversation_id: str,
        account_id: str,
    ) -> Result[Conversation, MarketMeshError]:
        return await self._load_visible(conversation_id, account_id, "read")

    async def list_conversations(self, account_id: str) -> Result[list[Conversation], MarketMeshError]:
        """Conversations the account takes part in and has not soft-deleted."""
        return await self._call(
            "list_conversations", lambda rel: rel.list_conversations_for(account_id)
        )

    async def soft_delete(self, conversation_id: str, account_id: str) -> Result[None, MarketMeshError]:
        """Hide a conversation for one participant; idempotent."""
        loaded = await self._load(conversation_id)
        if loaded.is_err():
            return loaded
        if not loaded.unwrap().has_participant(account_id):
            return Err(SecurityError.unauthorized(
                account_id, f"conversation {conversation_id}", "delete"
            ))

        result = await self._call(
            "soft_delete", lambda rel: rel.add_deleted_for(conversation_id, account_id)
        )
        if result.is_err():
            return result
        logger.info(
            "Conversation hidden for participant",
            extra={
                "conversation_id": conversation_id,
                "account_id": account_id,
                "changed": result.unwrap(),
            },
        )
        return Ok(None)

    async def admin_delete_conversation(self, conversation_id: str) -> Result[int, MarketMeshError]:
        """Hard delete a conversation and its messages; returns messages removed."""
        loaded = await self._load(conversation_id)
        if loaded.is_err():
            return loaded
        result = await self._call(
            "admin_delete", lambda rel: rel.delete_conversation(conversation_id)
        )
        if result.is_ok():
            logger.warning(
                "Conversation hard-deleted",
                extra={"conversation_id": conversation_id, "messages": result.unwrap()},
            )
        return result

    async def admin_list_conversations(self) -> Result[list[Conversation], MarketMeshError]:
        return await self._call("admin_list", lambda rel: rel.list_all_conversations())

    # =========================================================================
    # MESSAGES
    # =========================================================================
    async def append_message(
        self,
        conversation_id: str,
        sender_id: str,
        content: str,
    ) -> Result[Message, MarketMeshError]:
        """
        Append a message from a participant.

        The message is committed before the conversation is touched. A
        failed touch is logged and the committed message is still returned;
        retrying would duplicate it.
        """
        text = (content or "").strip()
        if not text:
            return Err(ValidationError.invalid_operand("content", content, "must not be empty"))
        if len(text) > self._config.max_message_chars:
            return Err(ValidationError.invalid_operand(
                "content", text[:20], f"longer than {self._config.max_message_chars} characters"
            ))

        loaded = await self._load_visible(conversation_id, sender_id, "send to")
        if loaded.is_err():
            return loaded
        conversation = loaded.unwrap()

        message = Message(
            id=new_id(),
            conversation_id=conversation.id,
            sender_id=sender_id,
            receiver_id=conversation.other_participant(sender_id),
            content=text,
            created_at=Timestamp.now(),
        )
        inserted = await self._call("insert_message", lambda rel: rel.insert_message(message))
        if inserted.is_err():
            return inserted

        preview = text[: self._config.preview_chars]
        touched = await self._call(
            "touch_conversation",
            lambda rel: rel.touch_conversation(conversation.id, preview, message.created_at),
        )
        if touched.is_err():
            logger.warning(
                "Message stored but conversation preview not updated",
                extra={
                    "conversation_id": conversation.id,
                    "message_id": message.id,
                    "error_code": touched.error.code.name,
                },
            )
        return inserted

    async def list_messages(
        self,
        conversation_id: str,
        account_id: str,
    ) -> Result[list[Message], MarketMeshError]:
        loaded = await self._load_visible(conversation_id, account_id, "read")
        if loaded.is_err():
            return loaded
        return await self._call("list_messages", lambda rel: rel.list_messages(conversation_id))

    async def mark_read(self, conversation_id: str, account_id: str) -> Result[int, MarketMeshError]:
        """Mark every message the account received in the conversation as read."""
        loaded = await self._load_visible(conversation_id, account_id, "read")
        if loaded.is_err():
            return loaded
        return await self._call(
            "mark_read", lambda rel: rel.mark_read(conversation_id, account_id)
        )

    # =========================================================================
    # DECORATED VIEWS
    # =========================================================================
    async def _identities_for(
        self,
        conversations: list[Conversation],
    ) -> dict[str, ResolvedIdentity]:
        refs = {
            pid: hint
            for conversation in conversations
            for pid, hint in zip(conversation.participant_ids, conversation.participant_partitions)
        }
        return await self._resolver.resolve_refs(list(refs.items()))

    def _view(
        self,
        conversation: Conversation,
        identities: dict[str, ResolvedIdentity],
    ) -> ConversationView:
        first, second = conversation.participant_ids
        return ConversationView(
            conversation=conversation,
            participants=(
                identities.get(first) or ResolvedIdentity.unknown(first),
                identities.get(second) or ResolvedIdentity.unknown(second),
            ),
        )

    async def list_conversation_views(
        self,
        account_id: str,
    ) -> Result[list[ConversationView], MarketMeshError]:
        listed = await self.list_conversations(account_id)
        if listed.is_err():
            return listed
        conversations = listed.unwrap()
        identities = await self._identities_for(conversations)
        return Ok([self._view(c, identities) for c in conversations])

    async def admin_list_conversation_views(self) -> Result[list[ConversationView], MarketMeshError]:
        listed = await self.admin_list_conversations()
        if listed.is_err():
            return listed
        conversations = listed.unwrap()
        identities = await self._identities_for(conversations)
        return Ok([self._view(c, identities) for c in conversations])

    async def list_message_views(
        self,
        conversation_id: str,
        account_id: str,
    ) -> Result[list[MessageView], MarketMeshError]:
        loaded = await self._load_visible(conversation_id, account_id, "read")
        if loaded.is_err():
            return loaded
        conversation = loaded.unwrap()
        listed = await self._call("list_messages", lambda rel: rel.list_messages(conversation_id))
        if listed.is_err():
            return listed

        identities = await self._identities_for([conversation])
        views = []
        for message in listed.unwrap():
            sender = identities.get(message.sender_id) or ResolvedIdentity.unknown(message.sender_id)
            receiver = identities.get(message.receiver_id) or ResolvedIdentity.unknown(message.receiver_id)
            views.append(MessageView(message=message, sender=sender, receiver=receiver))
        return Ok(views)

    # =========================================================================
    # REFERENCE REWRITING
    # =========================================================================
    async def rewrite_references(
        self,
        old_id: str,
        new_id: str,
        new_partition: PartitionName,
    ) -> Result[RewriteReport, MarketMeshError]:
        """
        Replace every reference to old_id with new_id, then recount.

        Each rewrite is a conditional "replace if still old", so repeating
        the call with the same pair changes nothing further.
        """
        conversations = await self._call(
            "rewrite_participant",
            lambda rel: rel.rewrite_participant(old_id, new_id, new_partition),
        )
        if conversations.is_err():
            return conversations
        messages = await self._call(
            "rewrite_message_party", lambda rel: rel.rewrite_message_party(old_id, new_id)
        )
        if messages.is_err():
            return messages
        remaining = await self.count_references(old_id)
        if remaining.is_err():
            return remaining

        report = RewriteReport(
            conversations_rewritten=conversations.unwrap(),
            messages_rewritten=messages.unwrap(),
            remaining_references=remaining.unwrap(),
        )
        logger.info(
            "References rewritten",
            extra={
                "old_id": old_id,
                "new_id": new_id,
                "conversations": report.conversations_rewritten,
                "messages": report.messages_rewritten,
                "remaining": report.remaining_references,
            },
        )
        return Ok(report)

    async def count_references(self, account_id: str) -> Result[int, MarketMeshError]:
        return await self._call(
            "count_references", lambda rel: rel.count_references(account_id)
        )
