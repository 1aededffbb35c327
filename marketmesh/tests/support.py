"""
Test support: deterministic identifiers, fault-injecting partition
wrappers and an in-memory world builder.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any, Callable, Optional

from marketmesh.core.config import MarketMeshConfig, PartitionConfig, ResolverConfig
from marketmesh.core.errors import MarketMeshError, StorageError
from marketmesh.core.models import AccountDraft
from marketmesh.core.types import Err, Ok, PartitionName, Role
from marketmesh.migration.journal import InMemoryMigrationJournal
from marketmesh.observability.metrics import MetricsCollector
from marketmesh.service import MarketMesh
from marketmesh.storage.memory import InMemoryAccountPartition, InMemoryRelationshipPartition


# =============================================================================
# TEST UTILITIES
# =============================================================================
def ids(*values: str) -> Callable[[], str]:
    """Identifier factory handing out the given ids in order."""
    iterator = iter(values)
    return lambda: next(iterator)


def assert_ok(result, message: str = "Expected Ok result"):
    if result.is_err():
        raise AssertionError(f"{message}: {result.error}")
    return result.unwrap()


def assert_err(result, message: str = "Expected Err result") -> MarketMeshError:
    if result.is_ok():
        raise AssertionError(f"{message}: Got Ok({result.unwrap()})")
    return result.error


def static_connector(handle: Any, calls: Optional[list] = None):
    async def connect(name: PartitionName, config: PartitionConfig):
        if calls is not None:
            calls.append(name)
        return Ok(handle)
    return connect


class FaultInjector:
    """
    Wraps a partition handle; named methods can be made to fail, raise or
    stall a given number of times.
    """

    def __init__(self, inner: Any) -> None:
        self.inner = inner
        self._failures: dict[str, int] = {}
        self._raises: dict[str, int] = {}
        self._delays: dict[str, float] = {}

    def fail(self, method: str, times: int = 1) -> None:
        self._failures[method] = times

    def raise_on(self, method: str, times: int = 1) -> None:
        self._raises[method] = times

    def stall(self, method: str, seconds: float) -> None:
        self._delays[method] = seconds

    def __len__(self) -> int:
        return len(self.inner)

    def __getattr__(self, attr: str) -> Any:
        target = getattr(self.inner, attr)
        if attr not in self._failures and attr not in self._raises and attr not in self._delays:
            return target

        async def wrapped(*args: Any, **kwargs: Any) -> Any:
            delay = self._delays.get(attr)
            if delay:
                await asyncio.sleep(delay)
            if self._raises.get(attr, 0) > 0:
                self._raises[attr] -= 1
                raise ConnectionError(f"injected failure in {attr}")
            if self._failures.get(attr, 0) > 0:
                self._failures[attr] -= 1
                return Err(StorageError.partition_unavailable(self.inner.name.value, attr))
            return await target(*args, **kwargs)

        return wrapped


@dataclass
class World:
    """A mesh plus direct handles on its partitions."""

    mesh: MarketMesh
    customers: FaultInjector
    providers: FaultInjector
    admins: FaultInjector
    relationship: FaultInjector
    journal: InMemoryMigrationJournal
    connects: list

    def partition(self, name: PartitionName) -> FaultInjector:
        return {
            PartitionName.CUSTOMER: self.customers,
            PartitionName.PROVIDER: self.providers,
            PartitionName.ADMIN: self.admins,
            PartitionName.RELATIONSHIP: self.relationship,
        }[name]


def build_world(
    customer_ids: tuple[str, ...] = ("c1", "c2", "c3", "c4"),
    provider_ids: tuple[str, ...] = ("p1", "p2", "p3", "p4"),
    admin_ids: tuple[str, ...] = ("a1", "a2"),
    config: Optional[MarketMeshConfig] = None,
) -> World:
    customers = FaultInjector(InMemoryAccountPartition(PartitionName.CUSTOMER, ids(*customer_ids)))
    providers = FaultInjector(InMemoryAccountPartition(PartitionName.PROVIDER, ids(*provider_ids)))
    admins = FaultInjector(InMemoryAccountPartition(PartitionName.ADMIN, ids(*admin_ids)))
    relationship = FaultInjector(InMemoryRelationshipPartition())
    journal = InMemoryMigrationJournal()
    connects: list = []

    connectors = {
        PartitionName.CUSTOMER: static_connector(customers, connects),
        PartitionName.PROVIDER: static_connector(providers, connects),
        PartitionName.ADMIN: static_connector(admins, connects),
        PartitionName.RELATIONSHIP: static_connector(relationship, connects),
    }
    mesh = assert_ok(MarketMesh.create(
        config or fast_config(),
        connectors=connectors,
        journal=journal,
        collector=MetricsCollector(),
    ))
    return World(mesh, customers, providers, admins, relationship, journal, connects)


def fast_config(probe_timeout_ms: int = 200) -> MarketMeshConfig:
    return MarketMeshConfig(resolver=ResolverConfig(probe_timeout_ms=probe_timeout_ms))


def customer(name: str) -> AccountDraft:
    slug = name.lower()
    return AccountDraft(Role.CUSTOMER, name, f"{slug}@example.com", f"hash-{slug}", city="Leeds")


def provider(name: str) -> AccountDraft:
    slug = name.lower()
    return AccountDraft(Role.PROVIDER, name, f"{slug}@example.com", f"hash-{slug}")


def admin(name: str) -> AccountDraft:
    slug = name.lower()
    return AccountDraft(Role.ADMIN, name, f"{slug}@example.com", f"hash-{slug}")


