"""
Configuration Management for the Marketplace Partition Mesh

Provides validated configuration with sensible defaults and
environment variable overrides.

Design:
- Immutable after validation
- Fail-fast on invalid configuration
- Type-safe with dataclasses
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional

from marketmesh.core import constants as C
from marketmesh.core.types import Err, Ok, PartitionName, Result

ENV_PREFIX = "MARKETMESH_"

BACKENDS = frozenset({"memory", "postgres"})
JOURNAL_BACKENDS = frozenset({"memory", "redis"})


@dataclass(frozen=True)
class PartitionConfig:
    """Connection settings for one partition."""

    backend: str = "memory"  # "memory" or "postgres"
    dsn: Optional[str] = None
    pool_min: int = C.PG_POOL_MIN
    pool_max: int = C.PG_POOL_MAX
    connect_timeout_ms: int = C.PARTITION_CONNECT_TIMEOUT_MS
    query_timeout_ms: int = C.PARTITION_QUERY_TIMEOUT_MS


def _default_partitions() -> dict[PartitionName, PartitionConfig]:
    return {name: PartitionConfig() for name in PartitionName}


@dataclass(frozen=True)
class ResolverConfig:
    """Identity resolution settings."""

    probe_timeout_ms: int = C.PROBE_TIMEOUT_MS
    probe_order: tuple[str, ...] = C.PROBE_ORDER


@dataclass(frozen=True)
class RelationshipConfig:
    """Conversation and message settings."""

    operation_timeout_ms: int = C.RELATIONSHIP_TIMEOUT_MS
    preview_chars: int = C.LAST_MESSAGE_PREVIEW_CHARS
    max_message_chars: int = C.MAX_MESSAGE_CHARS


@dataclass(frozen=True)
class MigrationConfig:
    """Migration journal and recovery settings."""

    journal_backend: str = "memory"  # "memory" or "redis"
    redis_url: str = "redis://localhost:6379/0"
    key_prefix: str = C.MIGRATION_KEY_PREFIX
    step_timeout_ms: int = C.MIGRATION_STEP_TIMEOUT_MS
    recovery_attempts: int = C.MIGRATION_RECOVERY_ATTEMPTS
    retry_base_ms: int = C.RETRY_BASE_MS
    retry_max_ms: int = C.RETRY_MAX_MS


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging and metrics configuration."""

    metrics_enabled: bool = True
    log_level: str = "INFO"
    log_json: bool = True


@dataclass(frozen=True)
class MarketMeshConfig:
    """Root configuration for the mesh."""

    partitions: dict[PartitionName, PartitionConfig] = field(
        default_factory=_default_partitions
    )
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    relationships: RelationshipConfig = field(default_factory=RelationshipConfig)
    migration: MigrationConfig = field(default_factory=MigrationConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    def partition(self, name: PartitionName) -> PartitionConfig:
        return self.partitions.get(name, PartitionConfig())

    @classmethod
    def from_env(cls) -> Result[MarketMeshConfig, str]:
        """
        Load configuration from environment variables.

        Environment variables are prefixed with MARKETMESH_.
        Example: MARKETMESH_PROVIDER_BACKEND=postgres,
                 MARKETMESH_PROVIDER_DSN=postgresql://...,
                 MARKETMESH_JOURNAL_BACKEND=redis
        """
        try:
            partitions = {}
            for name in PartitionName:
                key = f"{ENV_PREFIX}{name.name}_"
                partitions[name] = PartitionConfig(
                    backend=os.getenv(key + "BACKEND", "memory"),
                    dsn=os.getenv(key + "DSN"),
                    pool_min=int(os.getenv(key + "POOL_MIN", str(C.PG_POOL_MIN))),
                    pool_max=int(os.getenv(key + "POOL_MAX", str(C.PG_POOL_MAX))),
                    connect_timeout_ms=int(os.getenv(
                        key + "CONNECT_TIMEOUT_MS",
                        str(C.PARTITION_CONNECT_TIMEOUT_MS),
                    )),
                    query_timeout_ms=int(os.getenv(
                        key + "QUERY_TIMEOUT_MS",
                        str(C.PARTITION_QUERY_TIMEOUT_MS),
                    )),
                )

            resolver = ResolverConfig(
                probe_timeout_ms=int(os.getenv(
                    f"{ENV_PREFIX}PROBE_TIMEOUT_MS", str(C.PROBE_TIMEOUT_MS)
                )),
            )

            migration = MigrationConfig(
                journal_backend=os.getenv(f"{ENV_PREFIX}JOURNAL_BACKEND", "memory"),
                redis_url=os.getenv(
                    f"{ENV_PREFIX}REDIS_URL", "redis://localhost:6379/0"
                ),
                recovery_attempts=int(os.getenv(
                    f"{ENV_PREFIX}RECOVERY_ATTEMPTS",
                    str(C.MIGRATION_RECOVERY_ATTEMPTS),
                )),
            )

            observability = ObservabilityConfig(
                log_level=os.getenv(f"{ENV_PREFIX}LOG_LEVEL", "INFO"),
                log_json=os.getenv(f"{ENV_PREFIX}LOG_JSON", "true").lower()
                in ("1", "true", "yes"),
            )

            return Ok(cls(
                partitions=partitions,
                resolver=resolver,
                migration=migration,
                observability=observability,
            ))
        except (ValueError, TypeError) as e:
            return Err(f"Configuration error: {e}")

    def validate(self) -> Result[None, str]:
        """Validate configuration invariants."""
        for name, part in self.partitions.items():
            if part.backend not in BACKENDS:
                return Err(f"{name.value}: unknown backend '{part.backend}'")
            if part.backend == "postgres" and not part.dsn:
                return Err(f"{name.value}: postgres backend requires a DSN")
            if part.pool_min > part.pool_max:
                return Err(f"{name.value}: pool_min cannot exceed pool_max")
            if part.connect_timeout_ms <= 0 or part.query_timeout_ms <= 0:
                return Err(f"{name.value}: timeouts must be positive")

        if sorted(self.resolver.probe_order) != sorted(C.PROBE_ORDER):
            return Err("probe_order must list each account partition once")
        if self.resolver.probe_timeout_ms <= 0:
            return Err("probe_timeout_ms must be positive")
        if self.relationships.preview_chars < 1:
            return Err("preview_chars must be >= 1")
        if self.migration.journal_backend not in JOURNAL_BACKENDS:
            return Err(
                f"unknown journal backend '{self.migration.journal_backend}'"
            )
        if self.migration.step_timeout_ms <= 0:
            return Err("step_timeout_ms must be positive")
        if self.migration.recovery_attempts < 1:
            return Err("recovery_attempts must be >= 1")
        return Ok(None)
