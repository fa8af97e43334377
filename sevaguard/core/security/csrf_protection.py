"""
Single-use CSRF tokens.

One live token per logical session. Issuing a new token replaces the old
one, and a successful validation consumes the token; the caller issues a
fresh one when the next form needs it.

    Unissued -> Live -> Consumed | Expired

Terminal states are never revived.
"""

import logging
import secrets
from typing import Dict, Optional

from sevaguard.core.clock import Clock, system_clock
from sevaguard.models.session_state import CSRFTokenRecord, SessionState
from sevaguard.services.state_store import STORE_TTL_GRACE, StateStore

logger = logging.getLogger(__name__)

CSRF_PREFIX = "csrf:"


class CSRFTokenStore:
    def __init__(self, store: StateStore, *, ttl: int = 3600, clock: Optional[Clock] = None):
        self.store = store
        self.ttl = ttl
        self.clock = clock or system_clock

        self._issued = 0
        self._failures = 0

    @staticmethod
    def _key(session: SessionState) -> str:
        return f"{CSRF_PREFIX}{session.session_key}"

    async def issue(self, session: SessionState) -> str:
        """Create a 256-bit token for the session, replacing any live one"""
        now = self.clock.now()
        record = CSRFTokenRecord(
            token=secrets.token_hex(32),
            session_key=session.session_key,
            issued_at=now,
            expires_at=now + self.ttl,
        )
        async with self.store.lock(self._key(session)):
            await self.store.set(self._key(session), record.model_dump(), ttl=self.ttl + STORE_TTL_GRACE)
        self._issued += 1
        return record.token

    async def validate(self, session: SessionState, token: Optional[str]) -> bool:
        """
        Check and consume the session's token.

        Returns False when no token is live, the value differs, or the token
        is older than the TTL. A mismatch leaves the live token in place.
        """
        if not token or not isinstance(token, str):
            self._failures += 1
            return False

        key = self._key(session)
        async with self.store.lock(key):
            raw = await self.store.get(key)
            if raw is None:
                self._failures += 1
                return False

            record = CSRFTokenRecord.model_validate(raw)
            if record.is_expired(self.clock.now(), self.ttl):
                await self.store.delete(key)
                self._failures += 1
                logger.info(f"Expired CSRF token purged for session {session.session_key[:8]}...")
                return False

            # Compare bytes: compare_digest rejects non-ASCII str
            if not secrets.compare_digest(record.token.encode("utf-8"), token.encode("utf-8")):
                self._failures += 1
                return False

            await self.store.delete(key)
            return True

    async def peek(self, session: SessionState) -> Optional[str]:
        """Live token for the session without consuming it"""
        key = self._key(session)
        async with self.store.lock(key):
            raw = await self.store.get(key)
            if raw is None:
                return None
            record = CSRFTokenRecord.model_validate(raw)
            if record.is_expired(self.clock.now(), self.ttl):
                await self.store.delete(key)
                return None
            return record.token

    async def revoke(self, session: SessionState) -> None:
        key = self._key(session)
        async with self.store.lock(key):
            await self.store.delete(key)

    async def purge_expired(self) -> int:
        """Background sweep for tokens nobody came back for"""
        purged = 0
        now = self.clock.now()
        for key in await self.store.keys(f"{CSRF_PREFIX}*"):
            async with self.store.lock(key):
                raw = await self.store.get(key)
                if raw is None:
                    continue
                if CSRFTokenRecord.model_validate(raw).is_expired(now, self.ttl):
                    await self.store.delete(key)
                    purged += 1
        return purged

    def get_metrics(self) -> Dict[str, int]:
        return {"issued": self._issued, "validation_failures": self._failures}
