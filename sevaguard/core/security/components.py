"""
Wiring for the security core.

One `SecurityComponents` per process holds the shared state store and every
component built on it. `init_security()` builds it from settings at startup,
`get_security()` hands it to request handlers.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional

from sevaguard.core.clock import Clock, system_clock
from sevaguard.core.config import Settings
from sevaguard.core.exceptions import ConfigurationError
from sevaguard.core.security.csrf_protection import CSRFTokenStore
from sevaguard.core.security.encryption import PayloadCipher
from sevaguard.core.security.rate_limiter import Persistence, RateLimiter
from sevaguard.core.security.session_security import SessionManager
from sevaguard.core.security.signed_tokens import generate_secure_token, validate_secure_token
from sevaguard.services.alert_service import AlertSender, build_alert_sender
from sevaguard.services.incident_service import IncidentEscalator
from sevaguard.services.secure_logger import SecureLogger
from sevaguard.services.state_store import MemoryStateStore, StateStore

logger = logging.getLogger(__name__)


class SecurityComponents:
    def __init__(
        self,
        settings: Settings,
        store: StateStore,
        *,
        alert_sender: Optional[AlertSender] = None,
        persistence: Optional[Persistence] = None,
        clock: Clock = system_clock,
    ):
        self.settings = settings
        self.store = store
        self.clock = clock

        self.sessions = SessionManager(
            store,
            cookie_name=settings.SESSION_COOKIE_NAME,
            timeout=settings.SESSION_TIMEOUT,
            rotation_interval=settings.SESSION_ROTATION_INTERVAL,
            clock=clock,
        )
        self.csrf = CSRFTokenStore(store, ttl=settings.CSRF_TOKEN_TTL, clock=clock)
        self.rate_limiter = RateLimiter(
            store,
            sweep_age=settings.RATE_LIMIT_SWEEP_AGE,
            persistence=persistence,
            clock=clock,
        )

        self.log_dir = Path(settings.LOG_DIR)
        self.escalator = IncidentEscalator(
            self.log_dir / "incidents",
            alert_sender or build_alert_sender(settings),
            app_name=settings.APP_NAME,
        )
        self._loggers: Dict[str, SecureLogger] = {}
        self._cipher: Optional[PayloadCipher] = None

    def logger(self, channel: str = "app") -> SecureLogger:
        """Audit logger for `channel`, created on first use"""
        if channel not in self._loggers:
            self._loggers[channel] = SecureLogger(
                channel,
                log_dir=self.log_dir,
                min_level=self.settings.LOG_LEVEL,
                max_file_size=self.settings.LOG_MAX_FILE_SIZE,
                max_files=self.settings.LOG_MAX_FILES,
                escalator=self.escalator,
                clock=self.clock,
            )
        return self._loggers[channel]

    @property
    def cipher(self) -> PayloadCipher:
        """Payload cipher keyed by ENCRYPTION_KEY; key derivation runs on first use"""
        if self._cipher is None:
            self._cipher = PayloadCipher(self.settings.ENCRYPTION_KEY)
        return self._cipher

    def issue_token(self, purpose: str, user_id: Optional[Any] = None, expires_in: int = 3600) -> str:
        return generate_secure_token(
            purpose, user_id, secret=self.settings.APP_SECRET, expires_in=expires_in, clock=self.clock
        )

    def verify_token(self, token: Optional[str], purpose: str, max_age: int = 3600) -> Optional[Dict[str, Any]]:
        return validate_secure_token(token, purpose, max_age, secret=self.settings.APP_SECRET, clock=self.clock)

    async def housekeeping(self) -> Dict[str, int]:
        """Periodic sweeps; admission decisions never depend on these"""
        result = {
            "sessions": await self.sessions.sweep(),
            "csrf_tokens": await self.csrf.purge_expired(),
            "rate_limit_windows": await self.rate_limiter.sweep(),
        }
        if isinstance(self.store, MemoryStateStore):
            result["expired_keys"] = self.store.purge_expired()
        if any(result.values()):
            logger.info(f"Housekeeping removed {result}")
        return result

    async def health_check(self) -> Dict[str, Any]:
        return await self.store.health_check()

    def get_metrics(self) -> Dict[str, Any]:
        return {
            "store": self.store.get_metrics(),
            "sessions": self.sessions.get_metrics(),
            "csrf": self.csrf.get_metrics(),
            "rate_limiter": self.rate_limiter.get_metrics(),
        }

    async def shutdown(self) -> None:
        self.escalator.shutdown(wait=True)
        for audit_logger in self._loggers.values():
            audit_logger.close()
        await self.store.shutdown()


_security: Optional[SecurityComponents] = None


def init_security(
    settings: Settings,
    store: Optional[StateStore] = None,
    **kwargs: Any,
) -> SecurityComponents:
    """Build the process-wide components (in-memory store unless one is given)"""
    global _security
    _security = SecurityComponents(settings, store or MemoryStateStore(clock=kwargs.get("clock")), **kwargs)
    logger.info(f"Security components initialized ({type(_security.store).__name__})")
    return _security


def get_security() -> SecurityComponents:
    if _security is None:
        raise ConfigurationError("Security components not initialized", component="security")
    return _security


def reset_security() -> None:
    global _security
    _security = None
