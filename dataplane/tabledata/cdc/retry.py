"""
Retry wrapper for store contention.

Only AlreadyExistsError and OptimisticLockingError are retried; both mean
another writer got there first and a fresh read may succeed. Everything
else propagates on the first attempt.

Backoff is linear: the wait before attempt ``i + 1`` is
``(i + 1) * base_delay_ms``. There is no wait after the final attempt.

Invariants:
    - At most max_attempts calls of the operation
    - The error of the final attempt is re-raised unchanged
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Optional, TypeVar

from ..errors import is_contention_error

if TYPE_CHECKING:
    from ..config import RetryConfig
    from ..telemetry import Telemetry

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_BASE_DELAY_MS = 2000

Sleep = Callable[[float], Awaitable[None]]


async def retry(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS,
    sleep: Sleep = asyncio.sleep,
    telemetry: Optional[Telemetry] = None,
) -> T:
    """Run ``operation`` until it succeeds or contention persists.

    Args:
        operation: Zero-argument coroutine function; called once per attempt
        max_attempts: Maximum number of calls
        base_delay_ms: Linear backoff step
        sleep: Awaitable sleep taking seconds
        telemetry: Wraps each attempt in a ``retry`` span when given

    Returns:
        The operation's return value

    Raises:
        Whatever the operation raised last
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    for attempt in range(max_attempts):
        try:
            if telemetry is not None:
                return await telemetry.capture_async_function(
                    "retry",
                    {"attempt": attempt, "total_attempts": max_attempts},
                    operation,
                )
            return await operation()
        except Exception as e:
            if not is_contention_error(e) or attempt == max_attempts - 1:
                raise
            delay_ms = (attempt + 1) * base_delay_ms
            logger.info(
                "Write contention, retrying",
                extra={
                    "attempt": attempt + 1,
                    "total_attempts": max_attempts,
                    "delay_ms": delay_ms,
                    "error_type": type(e).__name__,
                },
            )
            await sleep(delay_ms / 1000)

    raise AssertionError("unreachable")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings bound to a sleep function.

    Attributes:
        max_attempts: Maximum number of calls
        base_delay_ms: Linear backoff step
        sleep: Awaitable sleep taking seconds
    """

    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    base_delay_ms: int = DEFAULT_BASE_DELAY_MS
    sleep: Sleep = asyncio.sleep

    @classmethod
    def from_config(cls, config: RetryConfig) -> RetryPolicy:
        return cls(max_attempts=config.max_attempts, base_delay_ms=config.base_delay_ms)

    async def run(
        self,
        operation: Callable[[], Awaitable[T]],
        telemetry: Optional[Telemetry] = None,
    ) -> T:
        return await retry(
            operation,
            max_attempts=self.max_attempts,
            base_delay_ms=self.base_delay_ms,
            sleep=self.sleep,
            telemetry=telemetry,
        )
