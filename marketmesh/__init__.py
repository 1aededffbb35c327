"""
Marketplace Partition Mesh

Accounts live in role-partitioned stores (customer, provider, admin);
conversations and messages live in a shared relationship partition and
reference accounts by opaque identifier only:
- Partition Store: lazily connected, single-flight partition handles
- Identity Resolver: priority-ordered concurrent probes across partitions
- Relationship Store: deduplicated conversations, messages, soft delete
- Migration Coordinator: journaled customer-to-provider migration
"""

__version__ = "1.0.0"

# =============================================================================
# PUBLIC API EXPORTS
# =============================================================================
from marketmesh.core.types import (
    Result,
    Ok,
    Err,
    PartitionName,
    Role,
    Timestamp,
)
from marketmesh.core.errors import (
    ErrorCode,
    MarketMeshError,
    StorageError,
    QueryError,
    ValidationError,
    SecurityError,
    MigrationError,
)
from marketmesh.core.config import MarketMeshConfig
from marketmesh.core.models import Account, AccountDraft, Conversation, Message, ProfileUpdate
from marketmesh.identity import IdentityResolver, ResolvedIdentity
from marketmesh.migration import MigrationCoordinator, MigrationState, ProviderOverrides
from marketmesh.relationships import RelationshipStore
from marketmesh.service import MarketMesh, Principal
from marketmesh.storage import PartitionStore

__all__ = [
    # Version
    "__version__",
    # Result monad
    "Result",
    "Ok",
    "Err",
    # Vocabulary
    "PartitionName",
    "Role",
    "Timestamp",
    # Errors
    "ErrorCode",
    "MarketMeshError",
    "StorageError",
    "QueryError",
    "ValidationError",
    "SecurityError",
    "MigrationError",
    # Config
    "MarketMeshConfig",
    # Entities
    "Account",
    "AccountDraft",
    "Conversation",
    "Message",
    "ProfileUpdate",
    # Components
    "PartitionStore",
    "IdentityResolver",
    "ResolvedIdentity",
    "RelationshipStore",
    "MigrationCoordinator",
    "MigrationState",
    "ProviderOverrides",
    # Facade
    "MarketMesh",
    "Principal",
]
