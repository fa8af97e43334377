"""
Sliding-window rate limiting keyed by (client identifier, action).

Each window is the list of admission timestamps within the trailing
`window_seconds`. Checks prune, then compare, then record: denied attempts
are never stored, so a window holds at most `max_requests` entries.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol

from pydantic import BaseModel

from sevaguard.core.clock import Clock, system_clock
from sevaguard.models.log_entry import RequestContext
from sevaguard.services.state_store import STORE_TTL_GRACE, StateStore

logger = logging.getLogger(__name__)

RATE_LIMIT_PREFIX = "ratelimit:"


class Persistence(Protocol):
    """Database collaborator; only `insert` is used here"""

    def insert(self, table: str, data: Dict[str, Any]) -> Any: ...

    def update(self, table: str, data: Dict[str, Any], where: Dict[str, Any]) -> int: ...

    def count(self, table: str, where: Dict[str, Any]) -> int: ...

    def fetch_one(self, query: str, params: Optional[List[Any]] = None) -> Optional[Dict[str, Any]]: ...

    def fetch_all(self, query: str, params: Optional[List[Any]] = None) -> List[Dict[str, Any]]: ...


class RateLimitDecision(BaseModel):
    allowed: bool
    limit: int
    remaining: int
    retry_after: int = 0  # seconds until the oldest entry leaves the window


class RateLimiter:
    def __init__(
        self,
        store: StateStore,
        *,
        sweep_age: int = 3600,
        persistence: Optional[Persistence] = None,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.sweep_age = sweep_age
        self.persistence = persistence
        self.clock = clock or system_clock

        self._denied = 0

    @staticmethod
    def _key(identifier: str, action: str) -> str:
        return f"{RATE_LIMIT_PREFIX}{action}:{identifier}"

    async def allow(
        self,
        identifier: str,
        action: str,
        max_requests: int,
        window_seconds: int,
        request: Optional[RequestContext] = None,
    ) -> bool:
        """True if the attempt is admitted (and recorded), False if denied"""
        decision = await self.check(identifier, action, max_requests, window_seconds, request)
        return decision.allowed

    async def check(
        self,
        identifier: str,
        action: str,
        max_requests: int,
        window_seconds: int,
        request: Optional[RequestContext] = None,
    ) -> RateLimitDecision:
        key = self._key(identifier, action)
        async with self.store.lock(key):
            now = self.clock.now()
            raw = await self.store.get(key) or {}
            cutoff = now - window_seconds
            window = [ts for ts in raw.get("hits", []) if ts >= cutoff]

            if len(window) >= max_requests:
                # Persist the pruned window; the attempt itself is not recorded
                await self._save(key, window, window_seconds)
                self._denied += 1
                retry_after = int(window[0] - cutoff) + 1 if window else window_seconds
                logger.debug(f"Rate limit hit for {action} ({identifier[:12]}...)")
                return RateLimitDecision(allowed=False, limit=max_requests, remaining=0, retry_after=retry_after)

            window.append(now)
            await self._save(key, window, window_seconds)

        self._record_attempt(identifier, action, now, request)
        return RateLimitDecision(
            allowed=True,
            limit=max_requests,
            remaining=max_requests - len(window),
        )

    async def reset(self, identifier: str, action: str) -> None:
        """Forget a client's history for one action (e.g. after a successful login)"""
        key = self._key(identifier, action)
        async with self.store.lock(key):
            await self.store.delete(key)

    async def sweep(self) -> int:
        """
        Evict windows with no requests in the last `sweep_age` seconds.

        Housekeeping only: admission always comes from the per-call pruning.
        """
        evicted = 0
        cutoff = self.clock.now() - self.sweep_age
        for key in await self.store.keys(f"{RATE_LIMIT_PREFIX}*"):
            async with self.store.lock(key):
                raw = await self.store.get(key)
                if raw is None:
                    continue
                hits = raw.get("hits", [])
                if not hits or max(hits) < cutoff:
                    await self.store.delete(key)
                    evicted += 1
        if evicted:
            logger.info(f"Evicted {evicted} idle rate-limit windows")
        return evicted

    async def _save(self, key: str, window: List[float], window_seconds: int) -> None:
        ttl = max(window_seconds, self.sweep_age) + STORE_TTL_GRACE
        await self.store.set(key, {"hits": window}, ttl=ttl)

    def _record_attempt(self, identifier: str, action: str, now: float, request: Optional[RequestContext]) -> None:
        if self.persistence is None:
            return
        try:
            self.persistence.insert("rate_limits", {
                "identifier": identifier,
                "action": action,
                "created_at": datetime.fromtimestamp(now, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S"),
                "ip_address": request.ip if request else "unknown",
            })
        except Exception as e:
            # Audit trail only; admission was already decided
            logger.warning(f"Could not persist rate-limit attempt for {action}: {e}")

    def get_metrics(self) -> Dict[str, int]:
        return {"denied": self._denied}
