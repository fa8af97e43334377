# sevaguard/services/redis_service.py
"""
Redis-backed state store for multi-instance deployments.

Values are JSON under a common key prefix; per-key locks are Redis locks
with an expiry, so a crashed worker cannot hold a session forever.
"""
import os
import json
import redis.asyncio as redis
from redis.exceptions import LockError
from contextlib import asynccontextmanager
from typing import Optional, Dict, Any, List
from dataclasses import dataclass
import logging

from sevaguard.core.exceptions import RedisServiceError
from sevaguard.services.state_store import KeyLocks, StateStore, StoreConfig

logger = logging.getLogger(__name__)

# Checked in order; managed providers expose different names
REDIS_URL_VARS = ("REDIS_URL", "REDIS_DIRECT_URI", "REDIS_TLS_URL")


@dataclass
class RedisConfig(StoreConfig):
    url: Optional[str] = None
    decode_responses: bool = True
    socket_timeout: float = 5.0
    max_connections: int = 10
    retry_on_timeout: bool = True
    health_check_interval: int = 30
    key_prefix: str = "sevaguard:"
    lock_timeout: float = 5.0           # lock auto-expires if the holder dies
    lock_blocking_timeout: float = 2.0  # give up waiting after this long


class RedisStateStore(StateStore[RedisConfig]):
    """
    Redis state store for sessions, CSRF tokens and rate-limit windows.

    Reads fail soft (return the default) so a Redis outage degrades to "no
    state": unknown sessions get recreated and CSRF validation fails closed.
    Lock failures raise RedisServiceError instead, because proceeding
    without the lock would allow interleaved updates.
    """

    def __init__(self, config: Optional[RedisConfig] = None):
        self._url_source = None
        if config is None:
            config = RedisConfig(url=self._url_from_env())
        super().__init__(config, logger)
        self._local_locks = KeyLocks()

    def _url_from_env(self) -> Optional[str]:
        for var in REDIS_URL_VARS:
            url = os.environ.get(var)
            if url:
                self._url_source = var
                logger.info(f"Using Redis URL from {var}")
                return url
        return None

    def _validate_config(self) -> None:
        if not self.config.url:
            self.logger.warning("No Redis URL configured; state is not shared between instances")

    async def _initialize_client(self) -> Optional[redis.Redis]:
        if not self.config.url:
            return None

        client = redis.from_url(
            self.config.url,
            decode_responses=self.config.decode_responses,
            socket_timeout=self.config.socket_timeout,
            max_connections=self.config.max_connections,
            retry_on_timeout=self.config.retry_on_timeout,
            health_check_interval=self.config.health_check_interval,
        )
        try:
            await client.ping()
        except Exception as e:
            self.logger.error(f"Redis unreachable, running without shared state: {e}")
            return None
        return client

    def _key(self, key: str) -> str:
        return f"{self.config.key_prefix}{key}"

    async def get(self, key: str, default: Any = None) -> Any:
        if not self._client:
            return default
        try:
            value = await self._client.get(self._key(key))
        except Exception as e:
            self.logger.warning(f"Redis get failed for key '{key}': {e}")
            return default
        if value is None:
            return default
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            self.logger.warning(f"Discarding non-JSON value at '{key}'")
            return default

    async def set(self, key: str, value: Dict[str, Any], ttl: Optional[int] = None) -> bool:
        if not self._client:
            return False
        payload = json.dumps(value)
        try:
            if ttl:
                await self._client.setex(self._key(key), int(ttl), payload)
            else:
                await self._client.set(self._key(key), payload)
        except Exception as e:
            self.logger.error(f"Redis set failed for key '{key}': {e}")
            return False
        return True

    async def delete(self, *keys: str) -> int:
        if not self._client or not keys:
            return 0
        try:
            return await self._client.delete(*[self._key(k) for k in keys])
        except Exception as e:
            self.logger.error(f"Redis delete failed: {e}")
            return 0

    async def keys(self, pattern: str = "*") -> List[str]:
        """Keys matching `pattern`, without the store prefix"""
        if not self._client:
            return []
        prefix = self.config.key_prefix
        found = []
        try:
            async for raw in self._client.scan_iter(match=f"{prefix}{pattern}"):
                name = raw.decode() if isinstance(raw, bytes) else raw
                found.append(name[len(prefix):])
        except Exception as e:
            self.logger.warning(f"Redis scan failed: {e}")
            return []
        return found

    @asynccontextmanager
    async def lock(self, key: str):
        # Process-local while Redis is disabled
        if not self._client:
            async with self._local_locks.hold(key):
                yield
            return

        redis_lock = self._client.lock(
            self._key(f"lock:{key}"),
            timeout=self.config.lock_timeout,
            blocking_timeout=self.config.lock_blocking_timeout,
        )
        try:
            acquired = await redis_lock.acquire()
        except Exception as e:
            raise RedisServiceError(f"Redis lock failed: {e}", key=key, operation="lock") from e
        if not acquired:
            raise RedisServiceError("Timed out waiting for lock", key=key, operation="lock")

        try:
            yield
        finally:
            try:
                await redis_lock.release()
            except LockError:
                self.logger.warning(f"Lock on '{key}' expired before release")

    async def health_check(self) -> Dict[str, Any]:
        if not self.config.url:
            # Disabled is a valid single-instance setup
            return {"healthy": True, "status": "disabled", "details": {}}

        details: Dict[str, Any] = {"url_source": self._url_source}
        if not self._client:
            details["error"] = "Client not initialized"
            return {"healthy": False, "status": "not_connected", "details": details}

        try:
            await self._client.ping()
            info = await self._client.info()
        except Exception as e:
            details["error"] = str(e)
            return {"healthy": False, "status": "error", "details": details}

        details.update(
            redis_version=info.get("redis_version", "unknown"),
            connected_clients=info.get("connected_clients", 0),
            used_memory_human=info.get("used_memory_human", "unknown"),
        )
        return {"healthy": True, "status": "connected", "details": details}

    async def _cleanup(self) -> None:
        if self._client:
            try:
                await self._client.aclose()
            except Exception as e:
                self.logger.warning(f"Error closing Redis client: {e}")

    def is_connected(self) -> bool:
        return self._client is not None


async def create_redis_store(url: Optional[str] = None, **kwargs) -> RedisStateStore:
    """Build and connect a store; `url` overrides the environment"""
    config = RedisConfig(url=url, **kwargs) if url else None
    store = RedisStateStore(config)
    await store.initialize()
    return store
