# retry.py
"""
Airkeeper – Retry
=================
Bounds an asynchronous operation by a per-attempt timeout and a fixed
number of attempts. Every RPC read, API call and submission goes through
``with_retry``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import async_timeout

from airkeeper.constants import (
    DEFAULT_RETRY_ATTEMPTS,
    DEFAULT_RETRY_DELAY,
    DEFAULT_RETRY_TIMEOUT,
)
from airkeeper.exceptions import RetryExhausted
from airkeeper.loggingconfig import setup_logging

logger = setup_logging("Retry", level=logging.INFO)

T = TypeVar("T")


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int = DEFAULT_RETRY_ATTEMPTS,
    attempt_timeout: float = DEFAULT_RETRY_TIMEOUT,
    delay: float = DEFAULT_RETRY_DELAY,
    description: str = "operation",
) -> T:
    """
    Run ``operation`` until it succeeds or ``attempts`` is exhausted.

    Args:
        operation: Zero-argument callable returning a fresh awaitable per attempt.
        attempts: Total number of attempts (original call included).
        attempt_timeout: Seconds each attempt may take before it is abandoned.
        delay: Fixed pause between attempts.
        description: Human readable name used in logs and in the raised error.

    Raises:
        RetryExhausted: carrying the last underlying cause.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    last_error: Optional[BaseException] = None
    for attempt in range(1, attempts + 1):
        try:
            async with async_timeout.timeout(attempt_timeout):
                return await operation()
        except asyncio.TimeoutError as exc:
            last_error = exc
            logger.debug("%s timed out after %.2fs (attempt %d/%d)", description, attempt_timeout, attempt, attempts)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            last_error = exc
            logger.debug("%s failed (attempt %d/%d): %s", description, attempt, attempts, exc)

        if attempt < attempts and delay > 0:
            await asyncio.sleep(delay)

    raise RetryExhausted(description, attempts, last_error)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings threaded through every component that does I/O."""

    attempts: int = DEFAULT_RETRY_ATTEMPTS
    timeout: float = DEFAULT_RETRY_TIMEOUT
    delay: float = DEFAULT_RETRY_DELAY

    async def run(self, operation: Callable[[], Awaitable[T]], description: str = "operation") -> T:
        return await with_retry(
            operation,
            attempts=self.attempts,
            attempt_timeout=self.timeout,
            delay=self.delay,
            description=description,
        )
