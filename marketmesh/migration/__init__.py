"""
Migration module: journaled customer-to-provider account migration.
"""

from marketmesh.migration.coordinator import MigrationCoordinator, RecoveryOutcome
from marketmesh.migration.journal import (
    InMemoryMigrationJournal,
    MigrationJournal,
    MigrationRecord,
    MigrationState,
    ProviderOverrides,
    RedisMigrationJournal,
    VALID_TRANSITIONS,
    create_journal,
)

__all__ = [
    "MigrationCoordinator",
    "RecoveryOutcome",
    "InMemoryMigrationJournal",
    "MigrationJournal",
    "MigrationRecord",
    "MigrationState",
    "ProviderOverrides",
    "RedisMigrationJournal",
    "VALID_TRANSITIONS",
    "create_journal",
]
