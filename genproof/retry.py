"""
Bounded retry with exponential backoff.

delay(n) = base_delay * 2 ** (n - 1), slept between attempt n and n + 1.
No delay follows the final attempt.
"""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Tuple, Type, TypeVar

import structlog

from .errors import TransientIOError

logger = structlog.get_logger()

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[None]]


def backoff_delay(attempt: int, base_delay: float) -> float:
    """Delay to wait after a failed attempt (1-based)."""
    return base_delay * (2 ** (attempt - 1))


async def retry_async(
    operation: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    retry_on: Tuple[Type[BaseException], ...] = (TransientIOError,),
    sleep: Sleep = asyncio.sleep,
    label: str = "operation",
) -> T:
    """Run ``operation`` up to ``attempts`` times.

    Only exceptions listed in ``retry_on`` are retried; anything else
    propagates immediately. After the last attempt the final error is
    re-raised.
    """
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    for attempt in range(1, attempts + 1):
        try:
            return await operation()
        except retry_on as e:
            if attempt >= attempts:
                logger.warning(
                    "retry_exhausted", label=label, attempts=attempts, error=str(e)
                )
                raise
            delay = backoff_delay(attempt, base_delay)
            logger.info(
                "retry_scheduled",
                label=label,
                attempt=attempt,
                delay=delay,
                error=str(e),
            )
            await sleep(delay)

    raise AssertionError("unreachable")
