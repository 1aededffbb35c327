"""
Bounded Partition Calls

Every call into a partition handle goes through guarded_call, which:
- applies the per-call time bound
- converts a timeout into a retryable StorageError
- converts unexpected backend exceptions into PARTITION_UNAVAILABLE

Handles return Result values for expected failures (not found, duplicate
key); guarded_call passes those through untouched.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, TypeVar

from marketmesh.core.errors import MarketMeshError, StorageError
from marketmesh.core.types import Err, Result, Timestamp

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def guarded_call(
    partition: str,
    operation: str,
    call: Awaitable[Result[T, MarketMeshError]],
    timeout_ms: int,
) -> Result[T, MarketMeshError]:
    """
    Await a partition call under a time bound.

    Cancellation of the caller propagates; it is not converted to an error.
    """
    start = Timestamp.now()
    try:
        return await asyncio.wait_for(call, timeout=timeout_ms / 1000)
    except asyncio.TimeoutError as e:
        logger.warning(
            "Partition call timed out",
            extra={
                "partition": partition,
                "operation": operation,
                "timeout_ms": timeout_ms,
            },
        )
        return Err(StorageError.timeout(
            partition=partition,
            operation=operation,
            duration_ms=(Timestamp.now() - start) // Timestamp.NANOS_PER_MILLI,
            cause=e,
        ))
    except MarketMeshError as e:
        return Err(e)
    except Exception as e:
        logger.warning(
            "Partition call failed",
            extra={
                "partition": partition,
                "operation": operation,
                "error_type": type(e).__name__,
            },
        )
        return Err(StorageError.partition_unavailable(
            partition=partition,
            operation=operation,
            cause=e,
        ))
