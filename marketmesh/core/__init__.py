"""
Core module: Type definitions, error hierarchy, and configuration.

This module provides the foundational abstractions for the mesh:
- Result/Either monads for exception-free control flow
- Role and partition vocabulary shared by every component
- Error hierarchy with stable codes
- Configuration management with validation
"""

from marketmesh.core.types import (
    Result,
    Ok,
    Err,
    PartitionName,
    Role,
    Timestamp,
    new_id,
    pair_key,
)
from marketmesh.core.errors import (
    ErrorCode,
    MarketMeshError,
    StorageError,
    QueryError,
    ValidationError,
    SecurityError,
    MigrationError,
    ConfigurationError,
)
from marketmesh.core.config import MarketMeshConfig

__all__ = [
    "Result",
    "Ok",
    "Err",
    "PartitionName",
    "Role",
    "Timestamp",
    "new_id",
    "pair_key",
    "ErrorCode",
    "MarketMeshError",
    "StorageError",
    "QueryError",
    "ValidationError",
    "SecurityError",
    "MigrationError",
    "ConfigurationError",
    "MarketMeshConfig",
]
