"""
Retry Policy: Exponential Backoff with Jitter

Used by migration recovery to resume pending sagas:
- delay for retry n is random(0, min(max_delay, base * 2^n))
- only errors whose `retryable` flag is set are retried

Operations return Result values, so a failed attempt is an Err rather
than an exception.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

from marketmesh.core import constants as C
from marketmesh.core.config import MigrationConfig
from marketmesh.core.errors import MarketMeshError
from marketmesh.core.types import Result

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration; `max_retries` excludes the first attempt."""

    max_retries: int = C.MIGRATION_RECOVERY_ATTEMPTS - 1
    base_delay_ms: int = C.RETRY_BASE_MS
    max_delay_ms: int = C.RETRY_MAX_MS
    jitter: bool = True

    @classmethod
    def from_config(cls, config: MigrationConfig) -> RetryPolicy:
        return cls(
            max_retries=config.recovery_attempts - 1,
            base_delay_ms=config.retry_base_ms,
            max_delay_ms=config.retry_max_ms,
        )

    def delay_ms(self, retry: int) -> float:
        delay = min(self.max_delay_ms, self.base_delay_ms * (2 ** retry))
        return random.uniform(0, delay) if self.jitter else float(delay)


async def retry_with_backoff(
    func: Callable[[], Awaitable[Result[T, MarketMeshError]]],
    policy: RetryPolicy,
) -> Result[T, MarketMeshError]:
    """
    Run a Result-returning coroutine factory until it succeeds, fails
    with a non-retryable error, or runs out of retries.

    Args:
        func: Zero-argument factory producing a fresh awaitable per attempt
        policy: Retry configuration

    Returns:
        The last Result produced
    """
    retry = 0
    while True:
        result = await func()
        if result.is_ok():
            return result

        error = result.error
        if not error.retryable or retry >= policy.max_retries:
            return result

        delay = policy.delay_ms(retry)
        logger.debug(
            "Retrying after retryable error",
            extra={
                "attempt": retry + 2,
                "delay_ms": round(delay, 1),
                "error_code": error.code.name,
            },
        )
        await asyncio.sleep(delay / 1000)
        retry += 1
