from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable
from typing import Protocol

from assetdesk.core.redis_client import await_if_needed, get_redis

logger = logging.getLogger(__name__)


class DispatchLockStore(Protocol):
    async def acquire_if_absent(self, key: str, ttl_seconds: int) -> bool: ...

    async def release(self, key: str) -> None: ...


class InMemoryLockStore:
    """Process-local set-if-absent store with per-key expiry.

    Only de-duplicates within one process; use RedisLockStore across workers.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._expires_at: dict[str, float] = {}
        self._mutex = threading.Lock()

    async def acquire_if_absent(self, key: str, ttl_seconds: int) -> bool:
        now = self._clock()
        with self._mutex:
            expires_at = self._expires_at.get(key)
            if expires_at is not None and expires_at > now:
                return False
            self._expires_at[key] = now + max(1, int(ttl_seconds))
            if len(self._expires_at) > 10_000:
                self._evict_expired(now)
            return True

    async def release(self, key: str) -> None:
        with self._mutex:
            self._expires_at.pop(key, None)

    def _evict_expired(self, now: float) -> None:
        for stale in [k for k, exp in self._expires_at.items() if exp <= now]:
            del self._expires_at[stale]

    def clear(self) -> None:
        with self._mutex:
            self._expires_at.clear()


class RedisLockStore:
    def __init__(self, redis) -> None:
        self._redis = redis

    async def acquire_if_absent(self, key: str, ttl_seconds: int) -> bool:
        result = await await_if_needed(self._redis.set(key, "1", nx=True, ex=max(1, int(ttl_seconds))))
        return bool(result)

    async def release(self, key: str) -> None:
        await await_if_needed(self._redis.delete(key))


_local_store = InMemoryLockStore()


def get_lock_store() -> DispatchLockStore:
    redis = get_redis()
    if redis is None:
        return _local_store
    return RedisLockStore(redis)


def page_render_lock_key(asset_id, version: int, page: int) -> str:
    return f"pdf:page-render:{asset_id}:v{int(version or 1)}:{int(page)}"
