"""Shared retry policy for DingTalk HTTP calls."""

import asyncio
from typing import Awaitable, Callable, TypeVar

import httpx
from loguru import logger

T = TypeVar("T")

RETRYABLE_STATUS = frozenset({401, 429})


def is_retryable(error: BaseException) -> bool:
    """401, 429 and 5xx responses are worth another try; everything else is not."""
    if not isinstance(error, httpx.HTTPStatusError):
        return False
    status = error.response.status_code
    return status in RETRYABLE_STATUS or status >= 500


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    max_retries: int = 3,
    base_delay: float = 0.1,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """Run *fn* with exponential backoff (``base_delay * 2**(attempt-1)``).

    The last error is re-raised unchanged once retries are exhausted or the
    failure is not retryable.
    """
    attempt = 1
    while True:
        try:
            return await fn()
        except Exception as e:
            if not is_retryable(e) or attempt >= max_retries:
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.debug("DingTalk retry attempt {}/{} after {:.3f}s", attempt, max_retries, delay)
            await sleep(delay)
            attempt += 1
