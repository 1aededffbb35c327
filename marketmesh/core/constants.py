"""
System-Wide Constants for the Marketplace Partition Mesh

All magic numbers and configuration defaults centralized here.
"""

from typing import Final

# =============================================================================
# TIME UNITS
# =============================================================================
SECOND_MS: Final[int] = 1000
MINUTE_MS: Final[int] = 60 * SECOND_MS

# =============================================================================
# PARTITION CONNECTIONS
# =============================================================================
PARTITION_CONNECT_TIMEOUT_MS: Final[int] = 5 * SECOND_MS
PARTITION_QUERY_TIMEOUT_MS: Final[int] = 10 * SECOND_MS
PG_POOL_MIN: Final[int] = 2
PG_POOL_MAX: Final[int] = 20

# =============================================================================
# IDENTITY RESOLUTION
# =============================================================================
# Priority order of account partitions when probing an unknown identifier.
PROBE_ORDER: Final[tuple[str, ...]] = ("provider", "customer", "admin")
PROBE_TIMEOUT_MS: Final[int] = 2 * SECOND_MS

UNKNOWN_DISPLAY_NAME: Final[str] = "Unknown User"

# =============================================================================
# RELATIONSHIPS
# =============================================================================
RELATIONSHIP_TIMEOUT_MS: Final[int] = 5 * SECOND_MS
LAST_MESSAGE_PREVIEW_CHARS: Final[int] = 200
MAX_MESSAGE_CHARS: Final[int] = 10_000

# =============================================================================
# MIGRATION
# =============================================================================
MIGRATION_KEY_PREFIX: Final[str] = "marketmesh:migration"
MIGRATION_RECOVERY_ATTEMPTS: Final[int] = 3
MIGRATION_STEP_TIMEOUT_MS: Final[int] = 10 * SECOND_MS
RETRY_BASE_MS: Final[int] = 100
RETRY_MAX_MS: Final[int] = 5 * SECOND_MS

# =============================================================================
# PAGINATION
# =============================================================================
DEFAULT_PAGE_SIZE: Final[int] = 100
MAX_PAGE_SIZE: Final[int] = 1000
