"""Bounded exponential backoff for storage transfers."""

import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from reelrender.config import get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay_s: float) -> float:
    """Delay before the attempt after `attempt` (1-based): base * 2^(attempt-1)."""
    return base_delay_s * (2 ** (attempt - 1))


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    *,
    max_attempts: int | None = None,
    base_delay_s: float | None = None,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    description: str = "operation",
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run `operation` until it succeeds or attempts are exhausted.

    The last exception is re-raised unchanged after the final attempt.
    """
    settings = get_settings()
    attempts = max_attempts or settings.retry_max_attempts
    base = settings.retry_base_delay_ms / 1000 if base_delay_s is None else base_delay_s

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt == attempts:
                raise
            delay = backoff_delay(attempt, base)
            logger.warning(f"[RETRY] {description} attempt {attempt}/{attempts} failed, retrying in {delay:.2f}s: {e}")
            await sleep(delay)
    raise AssertionError("unreachable")
