"""
Identity resolution results.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from marketmesh.core.constants import UNKNOWN_DISPLAY_NAME
from marketmesh.core.models import Account
from marketmesh.core.types import PartitionName, Role


@dataclass(frozen=True, slots=True)
class ResolvedIdentity:
    """
    An account identifier decorated with display data.

    An unresolved identifier is still a valid, renderable result: role
    UNKNOWN, no partition, the placeholder display name and empty email.
    """

    account_id: str
    role: Role
    partition: Optional[PartitionName]
    display_name: str
    contact_email: str

    @property
    def is_known(self) -> bool:
        return self.role is not Role.UNKNOWN

    @classmethod
    def unknown(cls, account_id: str) -> ResolvedIdentity:
        return cls(
            account_id=account_id,
            role=Role.UNKNOWN,
            partition=None,
            display_name=UNKNOWN_DISPLAY_NAME,
            contact_email="",
        )

    @classmethod
    def from_account(cls, account: Account, partition: PartitionName) -> ResolvedIdentity:
        # The partition decides the role, whatever the row claims
        return cls(
            account_id=account.id,
            role=partition.role,
            partition=partition,
            display_name=account.display_name,
            contact_email=account.contact_email,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "role": self.role.value,
            "partition": self.partition.value if self.partition else None,
            "display_name": self.display_name,
            "contact_email": self.contact_email,
        }
