"""Concurrency guards: per-user serialization and ranking bucket locks."""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import AsyncIterator, Hashable
from contextlib import asynccontextmanager

from gamify.errors import AggregationInProgress

logger = logging.getLogger(__name__)

# Delete the lock only if we still own it.
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


class KeyedLock:
    """One asyncio.Lock per key, dropped when nobody holds or waits on it.

    Events for the same user queue behind each other in arrival order;
    events for different users never contend.
    """

    def __init__(self) -> None:
        self._locks: dict[Hashable, asyncio.Lock] = {}
        self._users: dict[Hashable, int] = {}

    @asynccontextmanager
    async def hold(self, key: Hashable) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]

    def __len__(self) -> int:
        return len(self._locks)


class BucketGuard:
    """Non-blocking exclusive guard for ranking bucket recomputation.

    Always guards within the process; when a Redis client is supplied
    the guard also takes a ``SET NX EX`` lock so separate workers
    cannot recompute the same bucket at once.
    """

    def __init__(self, redis: object | None = None, ttl_seconds: int = 300) -> None:
        self._redis = redis
        self._ttl_seconds = ttl_seconds
        self._active: set[str] = set()

    def is_held(self, key: str) -> bool:
        return key in self._active

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        if key in self._active:
            msg = f"Ranking bucket {key} is already being recomputed"
            raise AggregationInProgress(msg)
        self._active.add(key)
        token: str | None = None
        lock_key = f"ranking:lock:{key}"
        try:
            if self._redis is not None:
                candidate = uuid.uuid4().hex
                acquired = await self._redis.set(  # type: ignore[union-attr]
                    lock_key, candidate, nx=True, ex=self._ttl_seconds,
                )
                if not acquired:
                    msg = f"Ranking bucket {key} is locked by another worker"
                    raise AggregationInProgress(msg)
                token = candidate
            yield
        finally:
            self._active.discard(key)
            if token is not None:
                try:
                    await self._redis.eval(_RELEASE_SCRIPT, 1, lock_key, token)  # type: ignore[union-attr]
                except Exception:
                    logger.warning("Failed to release ranking lock %s", lock_key, exc_info=True)
