from uuid import uuid4

import pytest

from assetdesk.services import dispatch_lock
from assetdesk.services.dispatch_lock import InMemoryLockStore, RedisLockStore, page_render_lock_key


class _RedisStub:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}
        self.calls: list[dict] = []

    async def set(self, key: str, value: str, *, nx: bool = False, ex: int | None = None):
        self.calls.append({"key": key, "nx": nx, "ex": ex})
        if nx and key in self.values:
            return None
        self.values[key] = value
        return True

    async def delete(self, key: str) -> int:
        return 1 if self.values.pop(key, None) is not None else 0


def test_page_render_lock_key_format() -> None:
    asset_id = uuid4()

    assert page_render_lock_key(asset_id, 3, 12) == f"pdf:page-render:{asset_id}:v3:12"


@pytest.mark.anyio
async def test_in_memory_store_holds_key_until_ttl_elapses() -> None:
    now = {"t": 50.0}
    store = InMemoryLockStore(clock=lambda: now["t"])

    assert await store.acquire_if_absent("k", 20) is True
    assert await store.acquire_if_absent("k", 20) is False
    assert await store.acquire_if_absent("other", 20) is True
    now["t"] += 20
    assert await store.acquire_if_absent("k", 20) is True


@pytest.mark.anyio
async def test_redis_store_uses_set_nx_with_expiry() -> None:
    redis = _RedisStub()
    store = RedisLockStore(redis)

    assert await store.acquire_if_absent("pdf:page-render:a:v1:1", 20) is True
    assert await store.acquire_if_absent("pdf:page-render:a:v1:1", 20) is False
    assert redis.calls[0] == {"key": "pdf:page-render:a:v1:1", "nx": True, "ex": 20}


def test_get_lock_store_prefers_redis_when_configured(monkeypatch: pytest.MonkeyPatch) -> None:
    redis = _RedisStub()
    monkeypatch.setattr(dispatch_lock, "get_redis", lambda: redis)

    assert isinstance(dispatch_lock.get_lock_store(), RedisLockStore)

    monkeypatch.setattr(dispatch_lock, "get_redis", lambda: None)
    assert dispatch_lock.get_lock_store() is dispatch_lock._local_store


@pytest.mark.anyio
async def test_released_key_can_be_acquired_again_before_ttl() -> None:
    store = InMemoryLockStore(clock=lambda: 10.0)

    assert await store.acquire_if_absent("k", 20) is True
    await store.release("k")
    await store.release("never-held")

    assert await store.acquire_if_absent("k", 20) is True


@pytest.mark.anyio
async def test_redis_store_release_deletes_key() -> None:
    redis = _RedisStub()
    store = RedisLockStore(redis)

    assert await store.acquire_if_absent("pdf:page-render:a:v1:2", 20) is True
    await store.release("pdf:page-render:a:v1:2")

    assert "pdf:page-render:a:v1:2" not in redis.values
    assert await store.acquire_if_absent("pdf:page-render:a:v1:2", 20) is True
