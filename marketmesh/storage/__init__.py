"""
Storage module: partition protocols, backends and the partition store.

- protocols: AccountPartition / RelationshipPartition structural types
- memory: in-memory backends for development and tests
- postgres: asyncpg-backed partitions, one database per partition
- schema: DDL for the PostgreSQL partitions
- partition_store: lazily connected single-flight handle registry
"""

from marketmesh.storage.protocols import AccountPartition, RelationshipPartition
from marketmesh.storage.memory import InMemoryAccountPartition, InMemoryRelationshipPartition
from marketmesh.storage.partition_store import Connector, PartitionStore

__all__ = [
    "AccountPartition",
    "RelationshipPartition",
    "InMemoryAccountPartition",
    "InMemoryRelationshipPartition",
    "Connector",
    "PartitionStore",
]
