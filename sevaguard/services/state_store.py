# sevaguard/services/state_store.py
"""
Key/value state stores shared by the session, CSRF and rate-limit components.

A store holds JSON-serializable dicts under string keys, optionally with a TTL,
and hands out a per-key lock. Components do every read-modify-write inside
`async with store.lock(key)`, so concurrent requests never interleave updates
to the same session, token or rate-limit window.
"""
import asyncio
import fnmatch
import json
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Generic, List, Optional, Tuple, TypeVar

from sevaguard.core.clock import Clock, system_clock
from sevaguard.core.exceptions import ServiceError

logger = logging.getLogger(__name__)

# Backend TTLs only bound storage; the records' own timestamps decide validity,
# so keys outlive their logical expiry by this margin.
STORE_TTL_GRACE = 60


class _KeyLock:
    __slots__ = ("lock", "users")

    def __init__(self):
        self.lock = asyncio.Lock()
        self.users = 0


class KeyLocks:
    """
    Process-local asyncio locks, one per key.

    A lock lives only while somebody holds or waits for it, so the registry
    does not grow with the number of keys ever seen.
    """

    def __init__(self):
        self._locks: Dict[str, _KeyLock] = {}

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        entry = self._locks.get(key)
        if entry is None:
            entry = self._locks[key] = _KeyLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


class StoreConfig:
    """Base class for backend configuration"""


ConfigType = TypeVar("ConfigType", bound=StoreConfig)


class StateStore(ABC, Generic[ConfigType]):
    """
    Interface every state backend implements.

    Backends connect lazily: the first operation (or an explicit
    `initialize()`) opens the client, `shutdown()` releases it.
    """

    def __init__(self, config: Optional[ConfigType] = None, logger: Optional[logging.Logger] = None):
        self.config = config
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self.service_name = self.__class__.__name__
        self._client: Any = None
        self._initialized = False

    @abstractmethod
    async def _initialize_client(self) -> Any:
        """Open the backend; None means running without one"""

    def _validate_config(self) -> None:
        if self.config is None:
            self.logger.debug(f"No configuration provided for {self.service_name}")

    async def initialize(self) -> None:
        if self._initialized:
            return
        self._validate_config()
        try:
            self._client = await self._initialize_client()
        except Exception as e:
            self.logger.error(f"Failed to initialize {self.service_name}", exc_info=True)
            raise ServiceError(
                f"Failed to initialize {self.service_name}",
                service_name=self.service_name,
                operation="initialize",
                details={"original_error": str(e), "error_type": type(e).__name__},
            ) from e
        self._initialized = True
        self.logger.info(f"{self.service_name} ready")

    async def ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def _cleanup(self) -> None:
        """Release backend resources"""

    async def shutdown(self) -> None:
        if not self._initialized:
            return
        await self._cleanup()
        self._client = None
        self._initialized = False
        self.logger.info(f"{self.service_name} shut down")

    @abstractmethod
    async def health_check(self) -> Dict[str, Any]:
        """{"healthy": bool, "status": str, "details": {...}}"""

    def get_metrics(self) -> Dict[str, Any]:
        return {"service_name": self.service_name, "initialized": self._initialized}

    @abstractmethod
    async def get(self, key: str, default: Any = None) -> Any:
        """Return the stored dict for `key` or `default`"""

    @abstractmethod
    async def set(self, key: str, value: Dict[str, Any], ttl: Optional[int] = None) -> bool:
        """Store `value`; `ttl` in seconds, None keeps it until deleted"""

    @abstractmethod
    async def delete(self, *keys: str) -> int:
        """Delete keys, returning how many existed"""

    @abstractmethod
    async def keys(self, pattern: str = "*") -> List[str]:
        """Keys matching a glob pattern"""

    @abstractmethod
    def lock(self, key: str):
        """Async context manager serializing work on `key`"""


@dataclass
class MemoryStoreConfig(StoreConfig):
    """Configuration for the in-process store"""
    max_keys: Optional[int] = None


class MemoryStateStore(StateStore[MemoryStoreConfig]):
    """
    In-process store for single-instance deployments and tests.

    Values are kept JSON-encoded so callers never share mutable state with
    the store, the same as with Redis.
    """

    def __init__(self, config: Optional[MemoryStoreConfig] = None, clock: Optional[Clock] = None):
        super().__init__(config or MemoryStoreConfig(), logging.getLogger(__name__))
        self.clock = clock or system_clock
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._locks = KeyLocks()

    async def _initialize_client(self) -> Dict[str, Tuple[str, Optional[float]]]:
        return self._data

    def _alive(self, key: str) -> Optional[str]:
        item = self._data.get(key)
        if item is None:
            return None
        raw, expires_at = item
        if expires_at is not None and self.clock.now() >= expires_at:
            del self._data[key]
            return None
        return raw

    async def get(self, key: str, default: Any = None) -> Any:
        await self.ensure_initialized()
        raw = self._alive(key)
        if raw is None:
            return default
        return json.loads(raw)

    async def set(self, key: str, value: Dict[str, Any], ttl: Optional[int] = None) -> bool:
        await self.ensure_initialized()
        max_keys = self.config.max_keys
        if max_keys is not None and key not in self._data and len(self._data) >= max_keys:
            self.purge_expired()
            if len(self._data) >= max_keys:
                logger.warning(f"Memory store full ({max_keys} keys), refusing '{key}'")
                return False
        expires_at = self.clock.now() + ttl if ttl else None
        self._data[key] = (json.dumps(value), expires_at)
        return True

    async def delete(self, *keys: str) -> int:
        await self.ensure_initialized()
        deleted = 0
        for key in keys:
            if self._data.pop(key, None) is not None:
                deleted += 1
        return deleted

    async def keys(self, pattern: str = "*") -> List[str]:
        await self.ensure_initialized()
        return [key for key in list(self._data) if fnmatch.fnmatchcase(key, pattern) and self._alive(key) is not None]

    def lock(self, key: str):
        return self._locks.hold(key)

    def purge_expired(self) -> int:
        """Drop every key whose TTL has passed"""
        now = self.clock.now()
        expired = [key for key, (_, expires_at) in self._data.items() if expires_at is not None and now >= expires_at]
        for key in expired:
            del self._data[key]
        return len(expired)

    async def health_check(self) -> Dict[str, Any]:
        return {
            "healthy": True,
            "status": "in_memory",
            "details": {"keys": len(self._data), "active_locks": len(self._locks)}
        }

    def get_metrics(self) -> Dict[str, Any]:
        metrics = super().get_metrics()
        metrics["keys"] = len(self._data)
        return metrics
