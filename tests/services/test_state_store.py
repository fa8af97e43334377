# tests/services/test_state_store.py
"""Unit tests for the in-memory state store and the per-key lock registry"""

import asyncio
import pytest

from sevaguard.services.state_store import KeyLocks, MemoryStateStore, MemoryStoreConfig


class TestMemoryStateStore:

    async def test_set_get(self, store):
        assert await store.set("session:abc", {"a": 1})
        assert await store.get("session:abc") == {"a": 1}
        assert store.is_initialized

    async def test_default_for_missing(self, store):
        assert await store.get("missing") is None
        assert await store.get("missing", {}) == {}

    async def test_values_are_copies(self, store):
        """Test callers never share mutable state with the store"""
        value = {"hits": [1]}
        await store.set("k", value)
        value["hits"].append(2)

        loaded = await store.get("k")
        loaded["hits"].append(3)
        assert await store.get("k") == {"hits": [1]}

    async def test_ttl(self, store, clock):
        await store.set("k", {"v": 1}, ttl=10)

        clock.advance(9)
        assert await store.get("k") == {"v": 1}
        clock.advance(1)
        assert await store.get("k") is None

    async def test_delete(self, store):
        await store.set("a", {})
        await store.set("b", {})

        assert await store.delete("a", "b", "c") == 2
        assert await store.get("a") is None

    async def test_keys_pattern(self, store, clock):
        await store.set("session:1", {})
        await store.set("session:2", {}, ttl=5)
        await store.set("csrf:1", {})
        clock.advance(5)

        assert await store.keys("session:*") == ["session:1"]
        assert sorted(await store.keys()) == ["csrf:1", "session:1"]

    async def test_purge_expired(self, store, clock):
        await store.set("a", {}, ttl=1)
        await store.set("b", {})
        clock.advance(2)

        assert store.purge_expired() == 1
        assert store.get_metrics()["keys"] == 1

    async def test_max_keys(self, clock):
        store = MemoryStateStore(MemoryStoreConfig(max_keys=2), clock=clock)
        assert await store.set("a", {})
        assert await store.set("b", {}, ttl=1)
        assert not await store.set("c", {})

        # Expired keys make room
        clock.advance(1)
        assert await store.set("c", {})
        # Overwriting an existing key is always allowed
        assert await store.set("a", {"x": 1})

    async def test_health_check(self, store):
        health = await store.health_check()
        assert health["healthy"]
        assert health["status"] == "in_memory"

    async def test_shutdown(self, store):
        await store.set("a", {})
        await store.shutdown()
        assert not store.is_initialized


class TestKeyLocks:

    async def test_lock_serializes_read_modify_write(self, store):
        """Test that interleaved updates under the lock never lose writes"""
        await store.set("counter", {"n": 0})

        async def increment():
            async with store.lock("counter"):
                value = await store.get("counter")
                await asyncio.sleep(0)
                await store.set("counter", {"n": value["n"] + 1})

        await asyncio.gather(*(increment() for _ in range(25)))
        assert await store.get("counter") == {"n": 25}

    async def test_registry_does_not_grow(self):
        locks = KeyLocks()

        async def use(key):
            async with locks.hold(key):
                await asyncio.sleep(0)

        await asyncio.gather(*(use(f"k{i % 3}") for i in range(12)))
        assert len(locks) == 0

    async def test_lock_released_on_error(self):
        locks = KeyLocks()

        with pytest.raises(RuntimeError):
            async with locks.hold("k"):
                raise RuntimeError("boom")

        assert len(locks) == 0
        async with locks.hold("k"):
            pass
