"""
Session security: establishment, identifier rotation and idle timeout.

Sessions live in an injectable StateStore under `session:{session_id}`.
Every operation on a session runs under that key's lock, so timeout and
rotation decisions always see the latest last-activity time.
"""

import logging
import re
from typing import Any, Dict, Optional

from sevaguard.core.clock import Clock, system_clock
from sevaguard.models.log_entry import RequestContext
from sevaguard.models.session_state import (
    SessionCookie,
    SessionHandle,
    SessionState,
    new_session_id,
)
from sevaguard.services.state_store import STORE_TTL_GRACE, StateStore

logger = logging.getLogger(__name__)

SESSION_PREFIX = "session:"

# token_urlsafe(32) yields 43 chars from this alphabet
_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{43}$")


def is_well_formed_session_id(value: Optional[str]) -> bool:
    return bool(value) and bool(_SESSION_ID_RE.match(value))


class SessionManager:
    """
    Server-side session lifecycle.

    Design decisions:
    1. Fail-safe - unknown, expired or malformed identifiers never raise,
       they degrade to a fresh session
    2. Rotation writes the new record before removing the old one, so at
       least one identifier is valid at every instant
    3. Attributes survive rotation; only the public identifier changes
    """

    def __init__(
        self,
        store: StateStore,
        *,
        cookie_name: str = "SSFSESSID",
        timeout: int = 3600,
        rotation_interval: int = 1800,
        clock: Optional[Clock] = None,
    ):
        self.store = store
        self.cookie_name = cookie_name
        self.timeout = timeout
        self.rotation_interval = rotation_interval
        self.clock = clock or system_clock

        # Metrics for monitoring
        self._creation_count = 0
        self._rotation_count = 0
        self._expired_count = 0

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def ensure(
        self,
        cookie_value: Optional[str],
        request: Optional[RequestContext] = None,
    ) -> SessionHandle:
        """
        Resolve the request's session, creating one when needed.

        Args:
            cookie_value: Raw session cookie from the request (may be None/garbage)
            request: Request metadata for diagnostics

        Returns:
            SessionHandle with the cookie the response has to carry
        """
        if not is_well_formed_session_id(cookie_value):
            if cookie_value:
                logger.debug("Malformed session cookie ignored")
            return await self._create()

        async with self.store.lock(self._key(cookie_value)):
            state = await self._load(cookie_value)
            if state is None:
                logger.debug(f"Session {cookie_value[:8]}... unknown or expired")
                return await self._create()

            now = self.clock.now()
            if self._is_idle(state, now):
                await self._expire(state, request)
                return await self._create()

            state.last_activity = now
            handle = self._handle(state)
            if self._rotation_due(state, now):
                await self._rotate_locked(handle, now)
            else:
                await self._save(state)
            return handle

    async def touch(self, handle: SessionHandle) -> SessionHandle:
        """
        Record activity on the session.

        If the session sat idle past the timeout it is destroyed and the
        handle is switched to a fresh empty session.
        """
        async with self.store.lock(self._key(handle.session_id)):
            state = await self._load(handle.session_id)
            now = self.clock.now()
            if state is None or self._is_idle(state, now):
                if state is not None:
                    await self._expire(state, None)
                return self._replace(handle, await self._create())

            state.last_activity = now
            await self._save(state)
            handle.session = state
            return handle

    async def rotate_if_due(self, handle: SessionHandle) -> bool:
        """Give the session a new identifier if the rotation interval passed"""
        async with self.store.lock(self._key(handle.session_id)):
            state = await self._load(handle.session_id)
            if state is None:
                return False
            handle.session = state
            now = self.clock.now()
            if not self._rotation_due(state, now):
                return False
            return await self._rotate_locked(handle, now)

    async def regenerate(self, handle: SessionHandle) -> SessionHandle:
        """Rotate immediately, e.g. after login or a privilege change"""
        async with self.store.lock(self._key(handle.session_id)):
            state = await self._load(handle.session_id)
            if state is None:
                return self._replace(handle, await self._create())
            handle.session = state
            await self._rotate_locked(handle, self.clock.now())
            return handle

    async def update_attributes(self, handle: SessionHandle, **attributes: Any) -> SessionHandle:
        """Merge attributes into the session and persist them"""
        async with self.store.lock(self._key(handle.session_id)):
            state = await self._load(handle.session_id)
            if state is None:
                # Never resurrect a destroyed session
                state = self._replace(handle, await self._create()).session
            state.attributes.update(attributes)
            await self._save(state)
            handle.session = state
            return handle

    async def destroy(self, handle: SessionHandle) -> None:
        """Terminate the session; its identifier stops resolving"""
        async with self.store.lock(self._key(handle.session_id)):
            await self.store.delete(self._key(handle.session_id))
        logger.info(f"Destroyed session {handle.session_id[:8]}...")

    async def get(self, session_id: str) -> Optional[SessionState]:
        """Read-only lookup that ignores idle sessions; does not touch them"""
        if not is_well_formed_session_id(session_id):
            return None
        state = await self._load(session_id)
        if state is None or self._is_idle(state, self.clock.now()):
            return None
        return state

    async def sweep(self) -> int:
        """Remove sessions idle past the timeout"""
        removed = 0
        now = self.clock.now()
        for key in await self.store.keys(f"{SESSION_PREFIX}*"):
            async with self.store.lock(key):
                raw = await self.store.get(key)
                if raw is None:
                    continue
                state = SessionState.model_validate(raw)
                if self._is_idle(state, now):
                    await self.store.delete(key)
                    removed += 1
        if removed:
            self._expired_count += removed
            logger.info(f"Cleaned up {removed} expired sessions")
        return removed

    def cookie_for(self, state: SessionState) -> SessionCookie:
        return SessionCookie(
            name=self.cookie_name,
            value=state.session_id,
            max_age=self.timeout,
        )

    def get_metrics(self) -> Dict[str, int]:
        return {
            "total_created": self._creation_count,
            "total_rotations": self._rotation_count,
            "expired": self._expired_count,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    @staticmethod
    def _key(session_id: str) -> str:
        return f"{SESSION_PREFIX}{session_id}"

    def _is_idle(self, state: SessionState, now: float) -> bool:
        return now - state.last_activity > self.timeout

    def _rotation_due(self, state: SessionState, now: float) -> bool:
        return now - state.last_rotation > self.rotation_interval

    def _handle(self, state: SessionState, created: bool = False) -> SessionHandle:
        return SessionHandle(session=state, cookie=self.cookie_for(state), created=created)

    def _replace(self, handle: SessionHandle, fresh: SessionHandle) -> SessionHandle:
        handle.previous_id = handle.session_id
        handle.session = fresh.session
        handle.cookie = fresh.cookie
        handle.created = True
        handle.rotated = False
        return handle

    async def _load(self, session_id: str) -> Optional[SessionState]:
        raw = await self.store.get(self._key(session_id))
        if raw is None:
            return None
        return SessionState.model_validate(raw)

    async def _save(self, state: SessionState) -> bool:
        return await self.store.set(self._key(state.session_id), state.model_dump(), ttl=self.timeout + STORE_TTL_GRACE)

    async def _create(self) -> SessionHandle:
        now = self.clock.now()
        state = SessionState(created_at=now, last_activity=now, last_rotation=now)
        await self._save(state)
        self._creation_count += 1
        logger.info(f"Created session {state.session_id[:8]}...")
        return self._handle(state, created=True)

    async def _expire(self, state: SessionState, request: Optional[RequestContext]) -> None:
        await self.store.delete(self._key(state.session_id))
        self._expired_count += 1
        ip = request.ip if request else "unknown"
        logger.info(f"Session {state.session_id[:8]}... expired after inactivity (ip={ip})")

    async def _rotate_locked(self, handle: SessionHandle, now: float) -> bool:
        """
        Caller holds the lock of the current identifier. Returns False when
        the new record could not be written; the old identifier then stays.
        """
        state = handle.session
        old_id = state.session_id
        old_rotation = state.last_rotation
        state.session_id = new_session_id()
        state.last_rotation = now
        # New identifier first, then retire the old one
        if not await self._save(state):
            state.session_id = old_id
            state.last_rotation = old_rotation
            logger.warning(f"Rotation of session {old_id[:8]}... not persisted, keeping identifier")
            await self._save(state)
            return False
        await self.store.delete(self._key(old_id))

        self._rotation_count += 1
        handle.previous_id = old_id
        handle.rotated = True
        handle.cookie = self.cookie_for(state)
        logger.debug(f"Rotated session {old_id[:8]}... -> {state.session_id[:8]}...")
        return True
