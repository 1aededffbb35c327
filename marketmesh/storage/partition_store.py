"""
Partition Store: Lazily Connected, Single-Flight Partition Handles

One handle per partition name (customer, provider, admin, relationship).
The store is built once at process start and passed to its users.

Connection semantics:
- connection(name) returns the cached handle when one exists
- concurrent first callers share one in-flight connection attempt
- the attempt is bounded by the partition's connect timeout
- on failure every waiter receives the same PARTITION_UNAVAILABLE error;
  nothing is cached, so the next call starts a fresh attempt
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Mapping, Optional

from marketmesh.core.config import MarketMeshConfig, PartitionConfig
from marketmesh.core.errors import StorageError
from marketmesh.core.types import Err, Ok, PartitionName, Result
from marketmesh.observability.metrics import MeshMetrics
from marketmesh.storage.memory import InMemoryAccountPartition, InMemoryRelationshipPartition
from marketmesh.storage.postgres import (
    PostgresAccountPartition,
    PostgresEngine,
    PostgresRelationshipPartition,
)
from marketmesh.storage.protocols import AccountPartition, RelationshipPartition
from marketmesh.storage.schema import PartitionSchema

logger = logging.getLogger(__name__)

Connector = Callable[[PartitionName, PartitionConfig], Awaitable[Result[Any, StorageError]]]


# =============================================================================
# CONNECTORS
# =============================================================================
async def connect_memory(
    name: PartitionName,
    config: PartitionConfig,
) -> Result[Any, StorageError]:
    if name.is_account_partition:
        return Ok(InMemoryAccountPartition(name))
    return Ok(InMemoryRelationshipPartition())


async def connect_postgres(
    name: PartitionName,
    config: PartitionConfig,
) -> Result[Any, StorageError]:
    """Create the pool, ensure the schema and wrap it in a partition handle."""
    created = await PostgresEngine.create(name, config)
    if created.is_err():
        return created
    engine = created.unwrap()

    ensured = await PartitionSchema.ensure(engine, name)
    if ensured.is_err():
        await engine.close()
        return ensured

    if name.is_account_partition:
        return Ok(PostgresAccountPartition(engine))
    return Ok(PostgresRelationshipPartition(engine))


BACKEND_CONNECTORS: dict[str, Connector] = {
    "memory": connect_memory,
    "postgres": connect_postgres,
}


# =============================================================================
# PARTITION STORE
# =============================================================================
class PartitionStore:
    """
    Keyed set of independent partition handles.

    Args:
        config: Root configuration; selects backend and timeouts per partition
        connectors: Optional per-partition connector overrides (tests inject
            fakes here)
        metrics: Shared metric handles

    Usage:
        store = PartitionStore(config)
        result = await store.accounts(PartitionName.PROVIDER)
    """

    __slots__ = ("_config", "_connectors", "_handles", "_inflight", "_metrics", "_closed")

    def __init__(
        self,
        config: MarketMeshConfig,
        connectors: Optional[Mapping[PartitionName, Connector]] = None,
        metrics: Optional[MeshMetrics] = None,
    ) -> None:
        self._config = config
        self._connectors = dict(connectors or {})
        self._handles: dict[PartitionName, Any] = {}
        self._inflight: dict[PartitionName, asyncio.Task] = {}
        self._metrics = metrics or MeshMetrics()
        self._closed = False

    @property
    def connected(self) -> list[PartitionName]:
        """Partitions with an established handle."""
        return list(self._handles)

    async def connection(self, name: PartitionName) -> Result[Any, StorageError]:
        """
        Return the handle for a partition, connecting on first use.

        Cancelling one waiter does not cancel the shared attempt.
        """
        if self._closed:
            return Err(StorageError.partition_unavailable(
                partition=name.value,
                operation="connect on closed store",
            ))

        handle = self._handles.get(name)
        if handle is not None:
            return Ok(handle)

        task = self._inflight.get(name)
        if task is None:
            task = asyncio.ensure_future(self._connect(name))
            self._inflight[name] = task
        return await asyncio.shield(task)

    async def accounts(self, name: PartitionName) -> Result[AccountPartition, StorageError]:
        if not name.is_account_partition:
            raise ValueError(f"{name.value} is not an account partition")
        return await self.connection(name)

    async def relationships(self) -> Result[RelationshipPartition, StorageError]:
        return await self.connection(PartitionName.RELATIONSHIP)

    async def _connect(self, name: PartitionName) -> Result[Any, StorageError]:
        part_config = self._config.partition(name)
        connector = self._connectors.get(name) or BACKEND_CONNECTORS[part_config.backend]
        timeout_ms = part_config.connect_timeout_ms

        try:
            result = await asyncio.wait_for(
                connector(name, part_config),
                timeout=timeout_ms / 1000,
            )
        except asyncio.TimeoutError as e:
            result = Err(StorageError.timeout(
                partition=name.value,
                operation="connect",
                duration_ms=timeout_ms,
                cause=e,
            ))
        except (OSError, RuntimeError, ValueError) as e:
            result = Err(StorageError.partition_unavailable(
                partition=name.value,
                operation="connect",
                cause=e,
            ))
        finally:
            self._inflight.pop(name, None)

        if result.is_ok():
            self._handles[name] = result.unwrap()
            self._metrics.partition_connects.inc(partition=name.value, outcome="ok")
            logger.info(
                "Partition connected",
                extra={"partition": name.value, "backend": part_config.backend},
            )
        else:
            self._metrics.partition_connects.inc(partition=name.value, outcome="error")
            logger.error(
                "Partition connection failed",
                extra={"partition": name.value, "error": result.error.to_dict()},
            )
        return result

    async def close(self) -> None:
        """Close every established handle and abandon in-flight attempts."""
        self._closed = True
        for task in list(self._inflight.values()):
            task.cancel()
        self._inflight.clear()

        handles, self._handles = self._handles, {}
        for name, handle in handles.items():
            await handle.close()
            logger.info("Partition closed", extra={"partition": name.value})
