"""
MarketMesh: the operations offered to the API-handler layer.

Builds every component once from configuration and passes the shared
partition store into each of them. Handlers authenticate a principal
and call the methods below; participant checks happen in the
relationship store, role checks (admin, self) happen here.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

from marketmesh.core.config import MarketMeshConfig
from marketmesh.core.constants import DEFAULT_PAGE_SIZE
from marketmesh.core.errors import ConfigurationError, MarketMeshError, SecurityError
from marketmesh.core.models import Account, AccountDraft, Conversation, Message, ProfileUpdate
from marketmesh.core.types import Err, Ok, PartitionName, Result, Role
from marketmesh.identity.directory import AccountDirectory
from marketmesh.identity.models import ResolvedIdentity
from marketmesh.identity.resolver import IdentityResolver
from marketmesh.migration.coordinator import MigrationCoordinator, RecoveryOutcome
from marketmesh.migration.journal import MigrationJournal, ProviderOverrides, create_journal
from marketmesh.observability.metrics import MeshMetrics, MetricsCollector
from marketmesh.relationships.models import ConversationView, MessageView
from marketmesh.relationships.store import RelationshipStore
from marketmesh.reliability.retry import RetryPolicy
from marketmesh.storage.partition_store import Connector, PartitionStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class Principal:
    """The authenticated caller, as yielded by the session layer."""

    account_id: str
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role is Role.ADMIN


class MarketMesh:
    """
    Facade over the partition mesh.

    Usage:
        mesh = MarketMesh.create(config).unwrap()
        conv = await mesh.find_or_create_conversation(principal, "p1")
        await mesh.close()
    """

    __slots__ = (
        "config",
        "metrics",
        "partitions",
        "resolver",
        "directory",
        "relationships",
        "journal",
        "migrations",
    )

    def __init__(
        self,
        config: MarketMeshConfig,
        partitions: PartitionStore,
        journal: MigrationJournal,
        metrics: MeshMetrics,
    ) -> None:
        self.config = config
        self.metrics = metrics
        self.partitions = partitions
        self.journal = journal
        self.resolver = IdentityResolver(partitions, config.resolver, metrics)
        self.directory = AccountDirectory(partitions, self.resolver, config.relationships)
        self.relationships = RelationshipStore(
            partitions, self.resolver, config.relationships, metrics
        )
        self.migrations = MigrationCoordinator(
            partitions, self.relationships, journal, config.migration, metrics
        )

    @classmethod
    def create(
        cls,
        config: Optional[MarketMeshConfig] = None,
        connectors: Optional[dict[PartitionName, Connector]] = None,
        journal: Optional[MigrationJournal] = None,
        collector: Optional[MetricsCollector] = None,
    ) -> Result[MarketMesh, ConfigurationError]:
        """
        Validate configuration and wire the components.

        Partitions connect lazily on first use, so this never touches the
        network.
        """
        config = config or MarketMeshConfig()
        validation = config.validate()
        if validation.is_err():
            return Err(ConfigurationError.invalid(validation.error))

        metrics = MeshMetrics(collector)
        partitions = PartitionStore(config, connectors, metrics)
        mesh = cls(
            config=config,
            partitions=partitions,
            journal=journal or create_journal(config.migration),
            metrics=metrics,
        )
        logger.info(
            "MarketMesh created",
            extra={
                "backends": {
                    name.value: config.partition(name).backend for name in PartitionName
                },
                "journal": config.migration.journal_backend,
            },
        )
        return Ok(mesh)

    async def close(self) -> None:
        await self.partitions.close()
        await self.journal.close()

    async def __aenter__(self) -> MarketMesh:
        return self

    async def __aexit__(self, *args: Any) -> None:
        await self.close()

    # =========================================================================
    # IDENTITY
    # =========================================================================
    async def resolve_identity(self, account_id: str) -> ResolvedIdentity:
        """Never fails; an unresolvable id comes back as the Unknown placeholder."""
        return await self.resolver.resolve(account_id)

    # =========================================================================
    # CONVERSATIONS
    # =========================================================================
    async def find_or_create_conversation(
        self,
        principal: Principal,
        other_account_id: str,
    ) -> Result[Conversation, MarketMeshError]:
        return await self.relationships.find_or_create_conversation(
            principal.account_id, other_account_id
        )

    async def list_conversations(self, principal: Principal) -> Result[list[Conversation], MarketMeshError]:
        return await self.relationships.list_conversations(principal.account_id)

    async def list_conversation_views(
        self,
        principal: Principal,
    ) -> Result[list[ConversationView], MarketMeshError]:
        return await self.relationships.list_conversation_views(principal.account_id)

    async def soft_delete_conversation(
        self,
        conversation_id: str,
        principal: Principal,
    ) -> Result[None, MarketMeshError]:
        return await self.relationships.soft_delete(conversation_id, principal.account_id)

    async def admin_delete_conversation(
        self,
        conversation_id: str,
        principal: Principal,
    ) -> Result[None, MarketMeshError]:
        denied = self._require_admin(principal, f"conversation {conversation_id}", "delete")
        if denied is not None:
            return denied
        deleted = await self.relationships.admin_delete_conversation(conversation_id)
        if deleted.is_err():
            return deleted
        logger.info(
            "Conversation deleted by admin",
            extra={
                "conversation_id": conversation_id,
                "admin_id": principal.account_id,
                "messages_removed": deleted.unwrap(),
            },
        )
        return Ok(None)

    async def admin_list_conversations(
        self,
        principal: Principal,
    ) -> Result[list[ConversationView], MarketMeshError]:
        denied = self._require_admin(principal, "conversations", "list")
        if denied is not None:
            return denied
        return await self.relationships.admin_list_conversation_views()

    # =========================================================================
    # MESSAGES
    # =========================================================================
    async def append_message(
        self,
        conversation_id: str,
        principal: Principal,
        content: str,
    ) -> Result[Message, MarketMeshError]:
        return await self.relationships.append_message(
            conversation_id, principal.account_id, content
        )

    async def list_messages(
        self,
        conversation_id: str,
        principal: Principal,
    ) -> Result[list[Message], MarketMeshError]:
        return await self.relationships.list_messages(conversation_id, principal.account_id)

    async def list_message_views(
        self,
        conversation_id: str,
        principal: Principal,
    ) -> Result[list[MessageView], MarketMeshError]:
        return await self.relationships.list_message_views(conversation_id, principal.account_id)

    async def mark_read(self, conversation_id: str, principal: Principal) -> Result[int, MarketMeshError]:
        return await self.relationships.mark_read(conversation_id, principal.account_id)

    # =========================================================================
    # ACCOUNTS
    # =========================================================================
    async def register_account(self, draft: AccountDraft) -> Result[Account, MarketMeshError]:
        return await self.directory.register(draft)

    async def update_profile(
        self,
        principal: Principal,
        account_id: str,
        update: ProfileUpdate,
    ) -> Result[Account, MarketMeshError]:
        if principal.account_id != account_id and not principal.is_admin:
            return Err(SecurityError.unauthorized(
                principal.account_id, f"account {account_id}", "update"
            ))
        return await self.directory.update_profile(account_id, update)

    async def set_banned(
        self,
        principal: Principal,
        account_id: str,
        banned: bool,
    ) -> Result[Account, MarketMeshError]:
        denied = self._require_admin(principal, f"account {account_id}", "ban")
        if denied is not None:
            return denied
        return await self.directory.set_banned(account_id, banned)

    async def list_accounts(
        self,
        principal: Principal,
        role: Optional[Role] = None,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Result[list[Account], MarketMeshError]:
        denied = self._require_admin(principal, "accounts", "list")
        if denied is not None:
            return denied
        return await self.directory.list_accounts(role, limit)

    async def can_authenticate(self, account_id: str) -> Result[bool, MarketMeshError]:
        return await self.directory.can_authenticate(account_id)

    # =========================================================================
    # MIGRATION
    # =========================================================================
    async def migrate_account_to_provider(
        self,
        account_id: str,
        overrides: Optional[ProviderOverrides] = None,
    ) -> Result[str, MarketMeshError]:
        return await self.migrations.migrate_account_to_provider(account_id, overrides)

    async def recover_migrations(
        self,
        policy: Optional[RetryPolicy] = None,
    ) -> Result[list[RecoveryOutcome], MarketMeshError]:
        return await self.migrations.recover_pending(policy)

    @staticmethod
    def _require_admin(
        principal: Principal,
        resource: str,
        action: str,
    ) -> Optional[Err]:
        if principal.is_admin:
            return None
        logger.warning(
            "Admin operation refused",
            extra={"principal_id": principal.account_id, "resource": resource, "action": action},
        )
        return Err(SecurityError.unauthorized(principal.account_id, resource, action))
