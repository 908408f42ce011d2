"""Bounded exponential backoff for async calls."""

from __future__ import annotations
import asyncio
import functools
import logging
from typing import Awaitable, Callable, Optional, TypeVar

from futures_bot.core.errors import TransientNetworkError

logger = logging.getLogger("futures_bot.utils.retry")

T = TypeVar("T")


def backoff_delay(attempt: int, base_delay: float, max_delay: float) -> float:
    """Delay before retry number `attempt` (0-based): base * 2**attempt, capped."""
    return min(max_delay, base_delay * (2 ** attempt))


async def call_with_retry(
    fn: Callable[[], Awaitable[T]],
    max_retries: int = 4,
    base_delay: float = 0.5,
    max_delay: float = 8.0,
    what: str = "",
) -> T:
    """
    Await fn(); retry on TransientNetworkError up to max_retries attempts in
    total. The last error propagates.
    """
    last_exc: Optional[TransientNetworkError] = None
    for attempt in range(max_retries):
        try:
            return await fn()
        except TransientNetworkError as e:
            last_exc = e
            if attempt >= max_retries - 1:
                break
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning("%s failed (%s), retry in %.1fs (attempt %d/%d)",
                           what or "call", e, delay, attempt + 1, max_retries)
            await asyncio.sleep(delay)
    raise last_exc


def retry_transient(method):
    """
    Method decorator: retry on TransientNetworkError using the owner's
    max_retries / retry_base_delay / retry_max_delay attributes.
    """
    @functools.wraps(method)
    async def wrapped(self, *args, **kwargs):
        return await call_with_retry(
            lambda: method(self, *args, **kwargs),
            max_retries=self.max_retries,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
            what=method.__name__,
        )
    return wrapped
