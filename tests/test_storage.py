from __future__ import annotations

import fnmatch

import pytest

from xfactor.storage import InMemoryKeyValueStore, KeyValueStore
from xfactor.storage_redis import RedisKeyValueStore


class _FakeRedis:
    """Just enough of ``redis.asyncio.Redis`` for the store."""

    def __init__(self) -> None:
        self.data: dict[str, str] = {}
        self.expiry: dict[str, int] = {}
        self.closed = False

    async def get(self, key):
        return self.data.get(key)

    async def set(self, key, value, ex=None, nx=False):
        if nx and key in self.data:
            return None
        self.data[key] = value
        if ex is not None:
            self.expiry[key] = ex
        return True

    async def incr(self, key, amount=1):
        self.data[key] = str(int(self.data.get(key, 0)) + amount)
        return int(self.data[key])

    async def delete(self, key):
        return 1 if self.data.pop(key, None) is not None else 0

    async def scan_iter(self, match="*"):
        for key in list(self.data):
            if fnmatch.fnmatchcase(key, match):
                yield key

    async def aclose(self):
        self.closed = True


@pytest.mark.asyncio
async def test_in_memory_store_copies_values() -> None:
    store = InMemoryKeyValueStore()
    assert isinstance(store, KeyValueStore)

    value = {"codes": ["A"]}
    await store.set("user_links:u1", value)
    value["codes"].append("B")

    fetched = await store.get("user_links:u1")
    assert fetched == {"codes": ["A"]}
    fetched["codes"].append("C")
    assert await store.get("user_links:u1") == {"codes": ["A"]}


@pytest.mark.asyncio
async def test_in_memory_delete_and_keys() -> None:
    store = InMemoryKeyValueStore()
    await store.set("link:AAA", 1)
    await store.set("link:BBB", 2)
    await store.set("ledger:u1", 3)

    assert sorted(await store.keys("link:*")) == ["link:AAA", "link:BBB"]
    assert await store.delete("link:AAA") is True
    assert await store.delete("link:AAA") is False
    assert await store.get("link:AAA") is None
    assert len(store) == 2


@pytest.mark.asyncio
async def test_redis_store_round_trips_json_under_prefix() -> None:
    client = _FakeRedis()
    store = RedisKeyValueStore(client=client)

    await store.set("link:ABC", {"clicks": 2, "subject": "álgebra"})

    assert client.data["xfactor:link:ABC"] == '{"clicks": 2, "subject": "álgebra"}'
    assert await store.get("link:ABC") == {"clicks": 2, "subject": "álgebra"}
    assert await store.get("link:missing") is None


@pytest.mark.asyncio
async def test_redis_store_ttl() -> None:
    client = _FakeRedis()
    store = RedisKeyValueStore(client=client, prefix="t:")

    await store.set("a", 1, ttl=0.4)
    await store.set("b", 1, ttl=90)
    await store.set("c", 1, ttl=0)

    assert client.expiry == {"t:a": 1, "t:b": 90}


@pytest.mark.asyncio
async def test_redis_store_delete_keys_and_close() -> None:
    client = _FakeRedis()
    store = RedisKeyValueStore(client=client)
    await store.set("link:A", 1)
    await store.set("link:B", 2)
    await store.set("clicks:A", [])

    assert sorted(await store.keys("link:*")) == ["link:A", "link:B"]
    assert await store.delete("link:A") is True
    assert await store.delete("link:A") is False

    await store.close()
    assert client.closed is True
    await store.close()


@pytest.mark.asyncio
async def test_in_memory_set_if_absent_and_incr() -> None:
    store = InMemoryKeyValueStore()

    assert await store.set_if_absent("fvm:A:u1", {"n": 1}) is True
    assert await store.set_if_absent("fvm:A:u1", {"n": 2}) is False
    assert await store.get("fvm:A:u1") == {"n": 1}

    assert await store.incr("link_click_count:A") == 1
    assert await store.incr("link_click_count:A", 2) == 3
    assert await store.get("link_click_count:A") == 3


@pytest.mark.asyncio
async def test_redis_store_set_if_absent_and_incr() -> None:
    client = _FakeRedis()
    store = RedisKeyValueStore(client=client, prefix="t:")

    assert await store.set_if_absent("join:A:u1", {"at": "now"}, ttl=30) is True
    assert await store.set_if_absent("join:A:u1", {"at": "later"}) is False
    assert await store.get("join:A:u1") == {"at": "now"}
    assert client.expiry == {"t:join:A:u1": 30}

    assert await store.incr("clicks:A") == 1
    assert await store.incr("clicks:A") == 2
    assert await store.get("clicks:A") == 2
