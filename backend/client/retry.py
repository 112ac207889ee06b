# backend/client/retry.py
import asyncio
import logging
from typing import Awaitable, Callable, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_DELAYS = (0.25, 0.5, 1.0)


async def retry_with_backoff(
    operation: Callable[[], Awaitable[T]],
    max_attempts: int = 3,
    delays: Sequence[float] = DEFAULT_DELAYS,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """
    Run ``operation`` until it succeeds or ``max_attempts`` is reached.

    Only exceptions in ``retry_on`` are retried; the wait before attempt n+1
    is ``delays[n-1]`` (the last delay repeats). The final error propagates.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempt = 1
    while True:
        try:
            return await operation()
        except retry_on as e:
            if attempt >= max_attempts:
                raise
            delay = delays[min(attempt - 1, len(delays) - 1)] if delays else 0
            logger.info("Attempt %d/%d failed (%s), retrying in %.2fs", attempt, max_attempts, e, delay)
            await sleep(delay)
            attempt += 1
