from __future__ import annotations

import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int, base: float = 1.5, jitter: float = 0.5) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt, base=base, jitter=jitter)
    await asyncio.sleep(delay)


async def call_with_retry(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    retries: int = 2,
    retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    base: float = 1.5,
    jitter: float = 0.5,
    **kwargs: Any,
) -> T:
    """Await ``func`` and retry on ``retry_on`` errors up to ``retries`` times.

    The last error is re-raised once the retries are used up.
    """
    attempt = 0
    while True:
        try:
            return await func(*args, **kwargs)
        except retry_on as exc:
            if attempt >= retries:
                raise
            attempt += 1
            logger.warning(
                f"{getattr(func, '__name__', func)} failed ({exc}), retry {attempt}/{retries}"
            )
            await schedule_retry(attempt, base=base, jitter=jitter)
