"""
Account Directory: Role-Partitioned Account Management

Places every account in the partition matching its role and answers the
account questions the session layer asks:
- registration into the role's partition
- profile update and ban/unban, wherever the account lives
- cross-partition listing for the admin console
- login eligibility (banned accounts and migrated stubs are refused)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

from marketmesh.core.config import RelationshipConfig
from marketmesh.core import constants as C
from marketmesh.core.errors import MarketMeshError, QueryError, ValidationError
from marketmesh.core.models import Account, AccountDraft, ProfileUpdate
from marketmesh.core.types import Err, Ok, PartitionName, Result, Role
from marketmesh.identity.resolver import IdentityResolver
from marketmesh.reliability.timeout import guarded_call
from marketmesh.storage.partition_store import PartitionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class LocatedAccount:
    """An account together with the partition it was read from."""

    account: Account
    partition: PartitionName


class AccountDirectory:
    """
    Account registration and maintenance across the account partitions.

    Lookups that must find the account wherever it lives (ban, profile
    update) use the resolver's probe order.
    """

    __slots__ = ("_partitions", "_resolver", "_timeout_ms")

    def __init__(
        self,
        partitions: PartitionStore,
        resolver: IdentityResolver,
        config: Optional[RelationshipConfig] = None,
    ) -> None:
        self._partitions = partitions
        self._resolver = resolver
        self._timeout_ms = (config or RelationshipConfig()).operation_timeout_ms

    async def _call(self, name: PartitionName, operation: str, factory) -> Result:
        connected = await self._partitions.accounts(name)
        if connected.is_err():
            return connected
        return await guarded_call(
            name.value, operation, factory(connected.unwrap()), self._timeout_ms
        )

    async def register(self, draft: AccountDraft) -> Result[Account, MarketMeshError]:
        """Create an account in the partition its role selects."""
        if draft.role is Role.UNKNOWN:
            return Err(ValidationError.invalid_operand("role", draft.role.value, "unassignable"))
        for field_name in ("display_name", "contact_email", "credential_hash"):
            if not getattr(draft, field_name).strip():
                return Err(ValidationError.invalid_operand(field_name, "", "required"))

        name = draft.role.partition
        result = await self._call(name, "register", lambda part: part.insert(draft))
        if result.is_ok():
            logger.info(
                "Account registered",
                extra={"account_id": result.unwrap().id, "partition": name.value},
            )
        return result

    async def locate(self, account_id: str) -> Result[LocatedAccount, MarketMeshError]:
        """
        Find an account in probe order, including migrated stubs.

        Unlike identity resolution, a failing partition is an error here:
        the caller is about to write.
        """
        for name in self._resolver.probe_order:
            result = await self._call(name, "locate", lambda part: part.get(account_id))
            if result.is_err():
                return result
            account = result.unwrap()
            if account is not None:
                return Ok(LocatedAccount(account=account, partition=name))
        return Err(QueryError.not_found("Account", account_id))

    async def get(self, account_id: str) -> Result[Account, MarketMeshError]:
        return (await self.locate(account_id)).map(lambda located: located.account)

    async def update_profile(
        self,
        account_id: str,
        update: ProfileUpdate,
    ) -> Result[Account, MarketMeshError]:
        if update.display_name is not None and not update.display_name.strip():
            return Err(ValidationError.invalid_operand("display_name", "", "must not be blank"))
        return await self._modify(
            account_id, "update_profile", lambda part: part.update_profile(account_id, update)
        )

    async def set_banned(self, account_id: str, banned: bool) -> Result[Account, MarketMeshError]:
        result = await self._modify(
            account_id, "set_banned", lambda part: part.set_banned(account_id, banned)
        )
        if result.is_ok():
            logger.info(
                "Account ban state changed",
                extra={"account_id": account_id, "banned": banned},
            )
        return result

    async def _modify(self, account_id: str, operation: str, factory) -> Result[Account, MarketMeshError]:
        located = await self.locate(account_id)
        if located.is_err():
            return located
        name = located.unwrap().partition
        result = await self._call(name, operation, factory)
        if result.is_err():
            return result
        account = result.unwrap()
        if account is None:
            # Deleted between locate and write, e.g. by a migration
            return Err(QueryError.not_found("Account", account_id))
        return Ok(account)

    async def list_accounts(
        self,
        role: Optional[Role] = None,
        limit: int = C.DEFAULT_PAGE_SIZE,
    ) -> Result[list[Account], MarketMeshError]:
        """
        Accounts for the admin console, newest first.

        Without a role every account partition is read concurrently and the
        pages are merged.
        """
        limit = max(1, min(limit, C.MAX_PAGE_SIZE))
        if role is not None and role is not Role.UNKNOWN:
            names = [role.partition]
        else:
            names = list(self._resolver.probe_order)

        results = await asyncio.gather(*(
            self._call(name, "list_accounts", lambda part: part.list_accounts(limit))
            for name in names
        ))
        merged: list[Account] = []
        for result in results:
            if result.is_err():
                return result
            merged.extend(result.unwrap())
        merged.sort(key=lambda a: (a.created_at, a.id), reverse=True)
        return Ok(merged[:limit])

    async def can_authenticate(self, account_id: str) -> Result[bool, MarketMeshError]:
        """Login gate: the account must exist, not be banned, not be a migrated stub."""
        located = await self.locate(account_id)
        if located.is_err():
            if isinstance(located.error, QueryError):
                return Ok(False)
            return located
        account = located.unwrap().account
        return Ok(not account.banned and not account.is_migrated)
