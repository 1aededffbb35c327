"""
Relationship views: entities decorated with resolved participant data.

Only identifiers persist; display data is resolved at read time and
never written back.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from marketmesh.core.models import Conversation, Message
from marketmesh.identity.models import ResolvedIdentity


@dataclass(frozen=True, slots=True)
class ConversationView:
    conversation: Conversation
    participants: tuple[ResolvedIdentity, ResolvedIdentity]

    def other(self, account_id: str) -> ResolvedIdentity:
        first, second = self.participants
        return second if first.account_id == account_id else first

    def to_dict(self) -> dict[str, Any]:
        data = self.conversation.to_dict()
        data["participants"] = [p.to_dict() for p in self.participants]
        return data


@dataclass(frozen=True, slots=True)
class MessageView:
    message: Message
    sender: ResolvedIdentity
    receiver: ResolvedIdentity

    def to_dict(self) -> dict[str, Any]:
        data = self.message.to_dict()
        data["sender"] = self.sender.to_dict()
        data["receiver"] = self.receiver.to_dict()
        return data


@dataclass(frozen=True, slots=True)
class RewriteReport:
    """Outcome of one reference-rewriting pass."""

    conversations_rewritten: int
    messages_rewritten: int
    remaining_references: int

    @property
    def complete(self) -> bool:
        return self.remaining_references == 0
