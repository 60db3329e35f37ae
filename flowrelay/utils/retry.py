from __future__ import annotations

import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from ..errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


def compute_backoff(attempt: int, base: float = 1.5, jitter: float = 0.5) -> float:
    """Compute exponential backoff with jitter."""
    delay = base ** attempt
    return delay + random.uniform(0, jitter)


async def schedule_retry(attempt: int) -> None:
    """Sleep for computed backoff delay before retrying."""
    delay = compute_backoff(attempt)
    await asyncio.sleep(delay)


async def retry_transient(
    operation: Callable[[], Awaitable[T]], attempts: int = 3
) -> T:
    """Run ``operation`` again while it fails with :class:`TransientError`.

    Any other error propagates on the first attempt. The last
    ``TransientError`` is re-raised once ``attempts`` is exhausted.
    """
    attempt = 0
    while True:
        try:
            return await operation()
        except TransientError as exc:
            attempt += 1
            if attempt >= attempts:
                raise
            logger.warning(f"Transient failure (attempt {attempt}/{attempts}): {exc}")
            await schedule_retry(attempt)
