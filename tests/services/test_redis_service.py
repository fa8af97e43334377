# tests/services/test_redis_service.py
"""
Unit tests for the Redis state store.

Uses mock-first approach to test without requiring a real Redis instance.
"""
import json
import pytest
from unittest.mock import Mock, AsyncMock, patch
from redis.exceptions import LockError

from sevaguard.services.redis_service import (
    RedisStateStore,
    RedisConfig,
    create_redis_store,
)
from sevaguard.core.exceptions import RedisServiceError


def async_iter(items):
    async def _gen(*args, **kwargs):
        for item in items:
            yield item
    return _gen


@pytest.fixture
def mock_config():
    """Create a test configuration"""
    return RedisConfig(
        url="redis://localhost:6379/0",
        decode_responses=True,
        socket_timeout=5.0
    )


@pytest.fixture
def mock_lock():
    lock = Mock()
    lock.acquire = AsyncMock(return_value=True)
    lock.release = AsyncMock()
    return lock


@pytest.fixture
def mock_redis_client(mock_lock):
    """Create a mock Redis client"""
    client = AsyncMock()

    client.ping = AsyncMock(return_value=True)
    client.get = AsyncMock(return_value=None)
    client.set = AsyncMock(return_value=True)
    client.setex = AsyncMock(return_value=True)
    client.delete = AsyncMock(return_value=1)
    client.info = AsyncMock(return_value={
        "redis_version": "7.0.0",
        "connected_clients": 5,
        "used_memory_human": "1.5M"
    })
    client.aclose = AsyncMock()
    # lock() is synchronous in redis.asyncio
    client.lock = Mock(return_value=mock_lock)
    client.scan_iter = Mock(side_effect=async_iter([]))

    return client


@pytest.fixture
async def redis_store(mock_config, mock_redis_client):
    """Create a Redis store with mocked client"""
    store = RedisStateStore(mock_config)

    with patch('sevaguard.services.redis_service.redis.from_url', return_value=mock_redis_client):
        await store.initialize()

    return store


class TestRedisStateStore:
    """Test Redis store functionality"""

    async def test_initialization(self, mock_config, mock_redis_client):
        """Test store initialization"""
        store = RedisStateStore(mock_config)

        assert store.config == mock_config
        assert not store.is_initialized

        with patch('sevaguard.services.redis_service.redis.from_url', return_value=mock_redis_client):
            await store.initialize()

        assert store.is_initialized
        assert store.is_connected()
        mock_redis_client.ping.assert_called_once()

    async def test_initialization_from_env(self):
        """Test initialization from environment variables"""
        with patch.dict('os.environ', {
            'REDIS_DIRECT_URI': 'redis://direct:6379',
            'REDIS_URL': 'redis://standard:6379'
        }, clear=True):
            store = RedisStateStore()

            assert store.config.url == 'redis://standard:6379'
            assert store._url_source == 'REDIS_URL'

    async def test_no_redis_url(self):
        """Test behavior when no Redis URL is configured"""
        with patch.dict('os.environ', {}, clear=True):
            store = RedisStateStore()

            assert store.config.url is None

            await store.initialize()
            assert store.is_initialized
            assert not store.is_connected()

            # Fail soft without a client
            assert await store.get("k", {"d": 1}) == {"d": 1}
            assert await store.set("k", {}) is False
            assert await store.keys() == []

    async def test_connection_failure(self, mock_config):
        """Test handling of connection failures"""
        store = RedisStateStore(mock_config)

        failing_client = AsyncMock()
        failing_client.ping.side_effect = Exception("Connection refused")

        with patch('sevaguard.services.redis_service.redis.from_url', return_value=failing_client):
            await store.initialize()

        assert store.is_initialized
        assert not store.is_connected()


class TestRedisOperations:
    """Test get/set/delete/keys"""

    async def test_get_decodes_json(self, redis_store, mock_redis_client):
        mock_redis_client.get.return_value = json.dumps({"hits": [1.0, 2.0]})

        assert await redis_store.get("ratelimit:login:abc") == {"hits": [1.0, 2.0]}
        mock_redis_client.get.assert_called_with("sevaguard:ratelimit:login:abc")

    async def test_get_non_json(self, redis_store, mock_redis_client):
        mock_redis_client.get.return_value = "not json"

        assert await redis_store.get("k", "default") == "default"

    async def test_get_error_returns_default(self, redis_store, mock_redis_client):
        mock_redis_client.get.side_effect = Exception("Connection lost")

        assert await redis_store.get("k") is None

    async def test_set_with_ttl(self, redis_store, mock_redis_client):
        assert await redis_store.set("session:abc", {"a": 1}, ttl=3660)

        mock_redis_client.setex.assert_called_once_with("sevaguard:session:abc", 3660, json.dumps({"a": 1}))

    async def test_set_without_ttl(self, redis_store, mock_redis_client):
        assert await redis_store.set("k", {"a": 1})

        mock_redis_client.set.assert_called_once_with("sevaguard:k", json.dumps({"a": 1}))

    async def test_set_error(self, redis_store, mock_redis_client):
        mock_redis_client.setex.side_effect = Exception("OOM")

        assert await redis_store.set("k", {}, ttl=10) is False

    async def test_delete(self, redis_store, mock_redis_client):
        mock_redis_client.delete.return_value = 2

        assert await redis_store.delete("a", "b") == 2
        mock_redis_client.delete.assert_called_once_with("sevaguard:a", "sevaguard:b")
        assert await redis_store.delete() == 0

    async def test_keys_strip_prefix(self, redis_store, mock_redis_client):
        mock_redis_client.scan_iter = Mock(side_effect=async_iter(["sevaguard:session:1", b"sevaguard:session:2"]))

        assert await redis_store.keys("session:*") == ["session:1", "session:2"]
        mock_redis_client.scan_iter.assert_called_once_with(match="sevaguard:session:*")


class TestRedisLocks:
    """Test distributed locks"""

    async def test_lock_acquire_release(self, redis_store, mock_redis_client, mock_lock):
        async with redis_store.lock("session:abc"):
            mock_lock.acquire.assert_awaited_once()
            mock_lock.release.assert_not_awaited()

        mock_lock.release.assert_awaited_once()
        mock_redis_client.lock.assert_called_once_with(
            "sevaguard:lock:session:abc",
            timeout=5.0,
            blocking_timeout=2.0
        )

    async def test_lock_timeout(self, redis_store, mock_lock):
        mock_lock.acquire.return_value = False

        with pytest.raises(RedisServiceError):
            async with redis_store.lock("session:abc"):
                pass

    async def test_lock_error(self, redis_store, mock_lock):
        mock_lock.acquire.side_effect = Exception("Connection lost")

        with pytest.raises(RedisServiceError):
            async with redis_store.lock("session:abc"):
                pass

    async def test_expired_lock_release_is_tolerated(self, redis_store, mock_lock):
        mock_lock.release.side_effect = LockError("not owned")

        async with redis_store.lock("session:abc"):
            pass

    async def test_local_lock_without_client(self):
        with patch.dict('os.environ', {}, clear=True):
            store = RedisStateStore()
            await store.initialize()

        async with store.lock("k"):
            assert len(store._local_locks) == 1
        assert len(store._local_locks) == 0


class TestRedisHealthAndLifecycle:

    async def test_health_check_connected(self, redis_store):
        health = await redis_store.health_check()

        assert health["healthy"]
        assert health["status"] == "connected"
        assert health["details"]["redis_version"] == "7.0.0"

    async def test_health_check_disabled(self):
        with patch.dict('os.environ', {}, clear=True):
            store = RedisStateStore()

        health = await store.health_check()
        assert health["healthy"]
        assert health["status"] == "disabled"

    async def test_health_check_error(self, redis_store, mock_redis_client):
        mock_redis_client.ping.side_effect = Exception("Connection lost")

        health = await redis_store.health_check()
        assert not health["healthy"]
        assert health["status"] == "error"

    async def test_shutdown(self, redis_store, mock_redis_client):
        await redis_store.shutdown()

        mock_redis_client.aclose.assert_awaited_once()
        assert not redis_store.is_initialized
        assert not redis_store.is_connected()

    async def test_create_redis_store(self, mock_redis_client):
        with patch('sevaguard.services.redis_service.redis.from_url', return_value=mock_redis_client):
            store = await create_redis_store("redis://test:6379")

        assert store.is_initialized
        assert store.config.url == "redis://test:6379"
