"""Bounded retry with exponential backoff for idempotent read-only calls.

Only price and market fetches go through here. Fund-moving chain calls are
never retried within a tick.
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

from dca.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


async def fetch_with_retry(
    fetch_fn: Callable[..., Awaitable[T]],
    *args,
    max_retries: int = 3,
    base_delay: float = 1.0,
    timeout: float | None = None,
    **kwargs,
) -> T:
    """Await ``fetch_fn(*args, **kwargs)`` with per-attempt timeout and backoff.

    Delays between attempts are base_delay * 2**attempt (1s, 2s, 4s, ...).
    Re-raises the last error after ``max_retries`` attempts.
    """
    attempts = max(1, max_retries)
    name = getattr(fetch_fn, "__name__", repr(fetch_fn))

    for attempt in range(attempts):
        try:
            return await asyncio.wait_for(fetch_fn(*args, **kwargs), timeout=timeout)
        except Exception as e:
            if attempt == attempts - 1:
                logger.error(
                    "fetch_failed_permanently",
                    fetch=name,
                    error=str(e) or type(e).__name__,
                    attempts=attempts,
                )
                raise

            delay = base_delay * (2**attempt)
            logger.warning(
                "fetch_retry",
                fetch=name,
                attempt=attempt + 1,
                max_retries=attempts,
                delay=delay,
                error=str(e) or type(e).__name__,
            )
            await asyncio.sleep(delay)

    raise AssertionError("unreachable")
