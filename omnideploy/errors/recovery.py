"""Retry strategy for transient RPC failures."""
import asyncio
import logging
import random
from typing import Awaitable, Callable, TypeVar

from omnideploy.errors.exceptions import TransientNetworkError

logger = logging.getLogger(__name__)

T = TypeVar('T')


def backoff_delay(base: float, attempt: int, max_delay: float = 30.0) -> float:
    """Exponential backoff with jitter."""
    delay = min(max_delay, base * (2 ** attempt))
    jitter = delay * 0.1 * random.random()
    return delay + jitter


async def retry_transient(
    func: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = 3,
    base_delay: float = 0.5,
    label: str = "rpc call",
) -> T:
    """Await ``func`` until it succeeds, retrying only TransientNetworkError.

    Any other exception propagates on the first occurrence.
    """
    last_error = None
    for attempt in range(max_attempts):
        try:
            return await func()
        except TransientNetworkError as e:
            last_error = e
            if attempt < max_attempts - 1:
                wait = e.retry_after if e.retry_after else backoff_delay(base_delay, attempt)
                logger.warning(f"{label}: attempt {attempt + 1}/{max_attempts} failed, retrying in {wait:.1f}s: {e}")
                await asyncio.sleep(wait)
    logger.error(f"{label}: giving up after {max_attempts} attempts: {last_error}")
    raise last_error
