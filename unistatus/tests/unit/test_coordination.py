from __future__ import annotations

import pytest

from unistatus.services import coordination


class _FakeRedis:
    def __init__(self) -> None:
        self.values: dict[str, str] = {}

    async def set(self, key: str, value: str, *, nx: bool = False, ex: int | None = None) -> bool:
        if nx and key in self.values:
            return False
        self.values[key] = value
        return True

    async def get(self, key: str) -> str | None:
        return self.values.get(key)

    async def delete(self, key: str) -> None:
        self.values.pop(key, None)


@pytest.fixture
def backends(monkeypatch) -> dict:
    state = {"redis": _FakeRedis(), "up": True}

    async def fake_get_redis():
        if not state["up"]:
            raise ConnectionError("redis down")
        return state["redis"]

    monkeypatch.setattr(coordination, "get_redis", fake_get_redis)
    monkeypatch.setattr(coordination, "_local_locks", {})
    monkeypatch.setattr(coordination, "_local_holders", {})
    return state


@pytest.mark.asyncio
async def test_redis_release_leaves_local_holder_alone(backends) -> None:
    backends["up"] = False
    assert await coordination.acquire_lock("cycle", owner="a", ttl_s=30) is True
    assert await coordination.acquire_lock("cycle", owner="b", ttl_s=30) is False

    # Redis comes back and grants a different owner the same key.
    backends["up"] = True
    assert await coordination.acquire_lock("cycle", owner="c", ttl_s=30) is True
    await coordination.release_lock("cycle", owner="c")
    assert "cycle" not in backends["redis"].values
    assert coordination._local_locks["cycle"].locked()

    await coordination.release_lock("cycle", owner="a")
    assert not coordination._local_locks["cycle"].locked()


@pytest.mark.asyncio
async def test_only_the_redis_holder_releases(backends) -> None:
    assert await coordination.acquire_lock("cycle", owner="a", ttl_s=30) is True
    assert await coordination.acquire_lock("cycle", owner="b", ttl_s=30) is False
    await coordination.release_lock("cycle", owner="b")
    assert backends["redis"].values["cycle"] == "a"
    await coordination.release_lock("cycle", owner="a")
    assert "cycle" not in backends["redis"].values
