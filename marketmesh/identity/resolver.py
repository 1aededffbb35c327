"""
Identity Resolver: Partition Probing for Opaque Account Identifiers

An identifier carries no partition information, so resolution probes the
account partitions in a fixed priority order: provider, customer, admin.

Protocol:
- probes fan out concurrently, one per partition
- results are consumed in priority order; the first hit wins and the
  lower-priority probes still in flight are cancelled
- a probe that fails, times out or cannot connect is a non-match
- a migrated stub (migrated_to set) is a non-match
- nothing found yields the UNKNOWN placeholder, never an error

Batch and hinted variants issue one query per partition instead of one
per identifier.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional, Sequence

from marketmesh.core.config import ResolverConfig
from marketmesh.core.models import Account
from marketmesh.core.types import PartitionName
from marketmesh.identity.models import ResolvedIdentity
from marketmesh.observability.metrics import MeshMetrics
from marketmesh.reliability.timeout import guarded_call
from marketmesh.storage.partition_store import PartitionStore

logger = logging.getLogger(__name__)

PartitionRef = tuple[str, Optional[PartitionName]]


class IdentityResolver:
    """
    Resolves account identifiers across the account partitions.

    Usage:
        resolver = IdentityResolver(partitions, ResolverConfig())
        identity = await resolver.resolve("65f0c2...")
        if identity.is_known:
            render(identity.display_name)
    """

    __slots__ = ("_partitions", "_order", "_timeout_ms", "_metrics")

    def __init__(
        self,
        partitions: PartitionStore,
        config: Optional[ResolverConfig] = None,
        metrics: Optional[MeshMetrics] = None,
    ) -> None:
        config = config or ResolverConfig()
        self._partitions = partitions
        self._order = tuple(PartitionName(name) for name in config.probe_order)
        self._timeout_ms = config.probe_timeout_ms
        self._metrics = metrics or MeshMetrics()

    @property
    def probe_order(self) -> tuple[PartitionName, ...]:
        return self._order

    # -------------------------------------------------------------------------
    # Single identifier
    # -------------------------------------------------------------------------
    async def resolve(self, account_id: str) -> ResolvedIdentity:
        """Resolve one identifier by probing every account partition."""
        probes = {
            name: asyncio.ensure_future(self._probe(name, account_id))
            for name in self._order
        }
        try:
            for name in self._order:
                account = await probes[name]
                if account is not None:
                    return ResolvedIdentity.from_account(account, name)
            return ResolvedIdentity.unknown(account_id)
        finally:
            for probe in probes.values():
                if not probe.done():
                    probe.cancel()

    async def _probe(self, name: PartitionName, account_id: str) -> Optional[Account]:
        connected = await guarded_call(
            name.value,
            "connect",
            self._partitions.accounts(name),
            self._timeout_ms,
        )
        if connected.is_err():
            self._record_failure(name, "connect", connected.error)
            return None

        result = await guarded_call(
            name.value,
            "probe",
            connected.unwrap().get(account_id),
            self._timeout_ms,
        )
        if result.is_err():
            self._record_failure(name, "probe", result.error)
            return None

        account = result.unwrap()
        if account is None or account.is_migrated:
            self._metrics.identity_probes.inc(partition=name.value, outcome="miss")
            return None

        self._metrics.identity_probes.inc(partition=name.value, outcome="hit")
        return account

    def _record_failure(self, name: PartitionName, stage: str, error) -> None:
        self._metrics.identity_probes.inc(partition=name.value, outcome="error")
        logger.warning(
            "Identity probe failed; counted as non-match",
            extra={
                "partition": name.value,
                "stage": stage,
                "error_code": error.code.name,
                "error_id": error.error_id,
            },
        )

    # -------------------------------------------------------------------------
    # Batches
    # -------------------------------------------------------------------------
    async def resolve_many(self, account_ids: Iterable[str]) -> dict[str, ResolvedIdentity]:
        """
        Resolve many identifiers with one query per account partition.

        Priority order decides between partitions exactly as resolve does.
        """
        wanted = list(dict.fromkeys(account_ids))
        if not wanted:
            return {}

        found = await asyncio.gather(*(
            self._fetch_many(name, wanted) for name in self._order
        ))

        resolved: dict[str, ResolvedIdentity] = {}
        for account_id in wanted:
            resolved[account_id] = ResolvedIdentity.unknown(account_id)
            for name, accounts in zip(self._order, found):
                account = accounts.get(account_id)
                if account is not None:
                    resolved[account_id] = ResolvedIdentity.from_account(account, name)
                    break
        return resolved

    async def resolve_refs(self, refs: Sequence[PartitionRef]) -> dict[str, ResolvedIdentity]:
        """
        Resolve identifiers carrying partition hints.

        Each hinted partition is read directly; identifiers whose hint is
        missing or stale fall back to resolve_many.
        """
        by_hint: dict[PartitionName, list[str]] = {}
        unhinted: list[str] = []
        for account_id, hint in refs:
            if hint is not None and hint.is_account_partition:
                by_hint.setdefault(hint, []).append(account_id)
            else:
                unhinted.append(account_id)

        hinted_names = list(by_hint)
        found = await asyncio.gather(*(
            self._fetch_many(name, by_hint[name]) for name in hinted_names
        ))

        resolved: dict[str, ResolvedIdentity] = {}
        for name, accounts in zip(hinted_names, found):
            for account_id in by_hint[name]:
                account = accounts.get(account_id)
                if account is not None:
                    resolved[account_id] = ResolvedIdentity.from_account(account, name)
                else:
                    unhinted.append(account_id)

        stale = [account_id for account_id in unhinted if account_id not in resolved]
        if stale:
            logger.debug(
                "Falling back to probing for unhinted identifiers",
                extra={"count": len(stale)},
            )
            resolved.update(await self.resolve_many(stale))
        return resolved

    async def _fetch_many(
        self,
        name: PartitionName,
        account_ids: list[str],
    ) -> dict[str, Account]:
        connected = await guarded_call(
            name.value,
            "connect",
            self._partitions.accounts(name),
            self._timeout_ms,
        )
        if connected.is_err():
            self._record_failure(name, "connect", connected.error)
            return {}

        result = await guarded_call(
            name.value,
            "probe_many",
            connected.unwrap().get_many(account_ids),
            self._timeout_ms,
        )
        if result.is_err():
            self._record_failure(name, "probe_many", result.error)
            return {}

        accounts = {
            account_id: account
            for account_id, account in result.unwrap().items()
            if not account.is_migrated
        }
        self._metrics.identity_probes.inc(
            float(len(accounts)), partition=name.value, outcome="hit"
        )
        return accounts
