"""Retry helpers for vendor and platform calls."""

import asyncio
import random
from typing import Awaitable, Callable, TypeVar

from loguru import logger

T = TypeVar("T")

PLATFORM_MAX_ATTEMPTS = 10


def backoff_s(base_ms: int, max_ms: int, attempt_index: int, exponential: bool = True) -> float:
    """Delay before the next attempt, with a little jitter on exponential growth."""
    if base_ms <= 0:
        return 0.0
    if not exponential:
        return base_ms / 1000.0
    raw = min(max_ms, base_ms * (2 ** max(0, attempt_index)))
    jitter = random.uniform(0, max(1, raw) * 0.2)
    return min(max_ms, raw + jitter) / 1000.0


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    base_ms: int = 1000,
    max_ms: int = 32000,
    exponential: bool = True,
    label: str = "operation",
) -> T:
    """
    Await ``fn()`` until it succeeds or attempts run out.

    Args:
        fn: Zero-argument coroutine factory.
        max_attempts: Total attempts including the first one.
        base_ms: Initial delay in milliseconds.
        max_ms: Upper bound on any single delay.
        exponential: Double the delay after each failure when True.
        label: Name used in log lines.

    Raises:
        The last exception raised by ``fn``.
    """
    attempts = max(1, max_attempts)
    for attempt_index in range(attempts - 1):
        try:
            return await fn()
        except Exception as e:
            delay = backoff_s(base_ms, max_ms, attempt_index, exponential)
            logger.warning(
                f"{label} failed (attempt {attempt_index + 1}/{attempts}): {e}; retrying in {delay:.2f}s"
            )
            await asyncio.sleep(delay)
    return await fn()


async def retry_llm(fn: Callable[[], Awaitable[T]], max_attempts: int = 3, delay_ms: int = 1000) -> T:
    """Vendor calls: a fixed number of attempts with a constant short delay."""
    return await retry_with_backoff(
        fn,
        max_attempts=max_attempts,
        base_ms=delay_ms,
        max_ms=delay_ms,
        exponential=False,
        label="LLM call",
    )


async def retry_platform(
    fn: Callable[[], Awaitable[T]],
    max_backoff_ms: int = 32000,
    max_attempts: int = PLATFORM_MAX_ATTEMPTS,
    base_ms: int = 1000,
) -> T:
    """Platform calls: exponential backoff from one second, capped."""
    return await retry_with_backoff(
        fn,
        max_attempts=max_attempts,
        base_ms=base_ms,
        max_ms=max_backoff_ms,
        exponential=True,
        label="Platform call",
    )
