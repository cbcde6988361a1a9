from __future__ import annotations
import asyncio
import logging
from contextlib import AbstractAsyncContextManager, asynccontextmanager
from typing import AsyncIterator, Protocol

import redis.asyncio as redis
from redis.exceptions import LockError

from .errors import ConflictError

logger = logging.getLogger(__name__)


class KeyLock(Protocol):
    """Mutual exclusion per string key, acquisition bounded by a timeout."""

    def hold(self, key: str) -> AbstractAsyncContextManager[None]:  # pragma: no cover - Protocol
        ...


class KeyedLock:
    """In-process lock per key.

    Locks are created on demand and dropped once nobody holds or waits on
    them, so the map only grows with the number of keys in flight.
    """

    def __init__(self, timeout: float = 5.0) -> None:
        self._timeout = timeout
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=self._timeout)
            except asyncio.TimeoutError:
                raise ConflictError(f"Timed out waiting for lock on {key}") from None
            try:
                yield
            finally:
                lock.release()
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)


class RedisKeyedLock:
    """Lock per key shared by every instance pointing at the same Redis."""

    def __init__(self, client: redis.Redis, timeout: float = 5.0, prefix: str = "lock:") -> None:
        self._client = client
        self._timeout = timeout
        self._prefix = prefix

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        # lease expires after twice the wait if the holder dies
        lock = self._client.lock(
            f"{self._prefix}{key}", timeout=self._timeout * 2, blocking_timeout=self._timeout
        )
        acquired = await lock.acquire()
        if not acquired:
            raise ConflictError(f"Timed out waiting for lock on {key}")
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                # lease expired while we held it; the work itself already completed
                logger.warning("lock %s expired before release", key)
