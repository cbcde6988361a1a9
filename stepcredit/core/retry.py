"""Bounded retry for optimistic-concurrency collisions.

Only ``ConflictError`` is retried; business-rule errors (insufficient
credits, validation, ...) go straight back to the caller.
"""
from __future__ import annotations
import asyncio
import logging
import random
from typing import Any, Awaitable, Callable, TypeVar

from .errors import ConflictError

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRIES = 3
BASE_DELAY = 0.02  # seconds
MAX_DELAY = 0.5  # seconds
JITTER = 0.1  # 10% random jitter


def calculate_backoff(attempt: int) -> float:
    """Exponential backoff with +/-10% jitter: ~20ms, ~40ms, ~80ms ... capped at MAX_DELAY."""
    delay = min(BASE_DELAY * (2 ** attempt), MAX_DELAY)
    jitter_amount = random.uniform(-JITTER * delay, JITTER * delay)
    return max(delay + jitter_amount, 0.0)


async def retry_on_conflict(
    func: Callable[..., Awaitable[T]],
    *args: Any,
    max_retries: int = MAX_RETRIES,
    **kwargs: Any,
) -> T:
    """Call ``func`` and retry it up to ``max_retries`` times while it raises ConflictError."""
    for attempt in range(max_retries + 1):
        try:
            return await func(*args, **kwargs)
        except ConflictError:
            if attempt == max_retries:
                logger.warning(
                    "conflict retries exhausted for %s after %d attempts",
                    getattr(func, "__name__", repr(func)), attempt + 1,
                )
                raise
            backoff = calculate_backoff(attempt)
            logger.info(
                "conflict on %s, retry %d/%d in %.3fs",
                getattr(func, "__name__", repr(func)), attempt + 1, max_retries, backoff,
            )
            await asyncio.sleep(backoff)
    raise ConflictError()  # unreachable: loop either returns or raises
