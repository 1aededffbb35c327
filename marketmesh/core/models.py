"""
Entity Models: Account, Conversation, Message

Persisted shapes shared by every partition backend. All models are
immutable; backends produce updated copies with dataclasses.replace.

Cross-partition references are plain identifier strings. A conversation
additionally records which partition each participant lived in when the
reference was written (a hint, never authoritative).
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Optional

from marketmesh.core.types import PartitionName, Role, Timestamp, pair_key


# =============================================================================
# ACCOUNT
# =============================================================================
@dataclass(frozen=True, slots=True)
class AccountDraft:
    """Fields supplied by the caller when creating an account."""

    role: Role
    display_name: str
    contact_email: str
    credential_hash: str
    contact_phone: str = ""
    city: str = ""


@dataclass(frozen=True, slots=True)
class Account:
    """
    A user account; lives in exactly one account partition.

    `migrated_to` is set only on a source record whose deletion failed at
    the end of a migration. Such a record is a stub: it cannot log in and
    does not resolve.
    """

    id: str
    role: Role
    display_name: str
    contact_email: str
    credential_hash: str
    contact_phone: str = ""
    city: str = ""
    banned: bool = False
    created_at: Timestamp = field(default_factory=Timestamp.now)
    updated_at: Timestamp = field(default_factory=Timestamp.now)
    migrated_to: Optional[str] = None

    @property
    def partition(self) -> PartitionName:
        return self.role.partition

    @property
    def is_migrated(self) -> bool:
        return self.migrated_to is not None

    @classmethod
    def from_draft(cls, account_id: str, draft: AccountDraft) -> Account:
        now = Timestamp.now()
        return cls(
            id=account_id,
            role=draft.role,
            display_name=draft.display_name,
            contact_email=draft.contact_email,
            credential_hash=draft.credential_hash,
            contact_phone=draft.contact_phone,
            city=draft.city,
            created_at=now,
            updated_at=now,
        )

    def to_public_dict(self) -> dict[str, Any]:
        """Serializable view without the credential hash."""
        return {
            "id": self.id,
            "role": self.role.value,
            "display_name": self.display_name,
            "contact_email": self.contact_email,
            "contact_phone": self.contact_phone,
            "city": self.city,
            "banned": self.banned,
            "migrated_to": self.migrated_to,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True, slots=True)
class ProfileUpdate:
    """Partial profile change; None leaves a field untouched."""

    display_name: Optional[str] = None
    contact_email: Optional[str] = None
    contact_phone: Optional[str] = None
    city: Optional[str] = None

    def changes(self) -> dict[str, str]:
        return {
            name: value
            for name, value in (
                ("display_name", self.display_name),
                ("contact_email", self.contact_email),
                ("contact_phone", self.contact_phone),
                ("city", self.city),
            )
            if value is not None
        }

    def is_empty(self) -> bool:
        return not self.changes()


# =============================================================================
# CONVERSATION
# =============================================================================
@dataclass(frozen=True, slots=True)
class Conversation:
    """
    A 1:1 messaging thread between two accounts.

    participant_ids and participant_partitions are aligned tuples. The
    pair key is derived from the ids, so it follows them through a
    migration rewrite.
    """

    id: str
    participant_ids: tuple[str, str]
    participant_partitions: tuple[Optional[PartitionName], Optional[PartitionName]] = (None, None)
    deleted_for: frozenset[str] = frozenset()
    last_message_preview: str = ""
    created_at: Timestamp = field(default_factory=Timestamp.now)
    updated_at: Timestamp = field(default_factory=Timestamp.now)

    @property
    def pair_key(self) -> str:
        return pair_key(*self.participant_ids)

    def has_participant(self, account_id: str) -> bool:
        return account_id in self.participant_ids

    def is_visible_to(self, account_id: str) -> bool:
        return self.has_participant(account_id) and account_id not in self.deleted_for

    def other_participant(self, account_id: str) -> str:
        first, second = self.participant_ids
        return second if account_id == first else first

    def partition_hint(self, account_id: str) -> Optional[PartitionName]:
        for pid, hint in zip(self.participant_ids, self.participant_partitions):
            if pid == account_id:
                return hint
        return None

    def with_participant_replaced(
        self,
        old_id: str,
        new_id: str,
        new_partition: PartitionName,
    ) -> Conversation:
        """Same thread with old_id swapped for new_id everywhere it appears."""
        return replace(
            self,
            participant_ids=tuple(
                new_id if pid == old_id else pid for pid in self.participant_ids
            ),
            participant_partitions=tuple(
                new_partition if pid == old_id else hint
                for pid, hint in zip(self.participant_ids, self.participant_partitions)
            ),
            deleted_for=frozenset(
                new_id if pid == old_id else pid for pid in self.deleted_for
            ),
        )

    def absorb(self, other: Conversation) -> Conversation:
        """
        Merge another thread for the same pair into this one.

        Hidden only for accounts that hid both threads; the preview comes
        from whichever thread saw the latest message.
        """
        latest = other if other.updated_at > self.updated_at else self
        return replace(
            self,
            deleted_for=self.deleted_for & other.deleted_for,
            last_message_preview=latest.last_message_preview,
            created_at=min(self.created_at, other.created_at),
            updated_at=latest.updated_at,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "participant_ids": list(self.participant_ids),
            "participant_partitions": [
                hint.value if hint else None for hint in self.participant_partitions
            ],
            "deleted_for": sorted(self.deleted_for),
            "last_message_preview": self.last_message_preview,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


# =============================================================================
# MESSAGE
# =============================================================================
@dataclass(frozen=True, slots=True)
class Message:
    """A message inside a conversation; only is_read ever changes."""

    id: str
    conversation_id: str
    sender_id: str
    receiver_id: str
    content: str
    is_read: bool = False
    created_at: Timestamp = field(default_factory=Timestamp.now)

    @property
    def sort_key(self) -> tuple[int, str]:
        return (self.created_at.nanos, self.id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "conversation_id": self.conversation_id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "content": self.content,
            "is_read": self.is_read,
            "created_at": self.created_at.isoformat(),
        }
