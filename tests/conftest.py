# tests/conftest.py
"""
Shared fixtures for the security core tests.

Time is driven by a ManualClock so timeouts, rotation and windows can be
tested without sleeping.
"""

import pytest
from unittest.mock import Mock

from sevaguard.core.clock import Clock
from sevaguard.core.security.csrf_protection import CSRFTokenStore
from sevaguard.core.security.rate_limiter import RateLimiter
from sevaguard.core.security.session_security import SessionManager
from sevaguard.services.incident_service import IncidentEscalator
from sevaguard.services.secure_logger import SecureLogger
from sevaguard.services.state_store import MemoryStateStore

# 2025-10-09 08:53:20 UTC
START_TIME = 1_760_000_000.0


class ManualClock(Clock):
    """Clock that only moves when told to"""

    def __init__(self, start: float = START_TIME):
        self.current = start

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def store(clock):
    return MemoryStateStore(clock=clock)


@pytest.fixture
def session_manager(store, clock):
    return SessionManager(store, timeout=3600, rotation_interval=1800, clock=clock)


@pytest.fixture
def csrf_store(store, clock):
    return CSRFTokenStore(store, ttl=3600, clock=clock)


@pytest.fixture
def rate_limiter(store, clock):
    return RateLimiter(store, sweep_age=3600, clock=clock)


@pytest.fixture
def alert_sender():
    """Alert channel that always succeeds"""
    sender = Mock()
    sender.send_alert = Mock(return_value=True)
    return sender


@pytest.fixture
def escalator(tmp_path, alert_sender):
    escalator = IncidentEscalator(tmp_path / "logs" / "incidents", alert_sender, app_name="SevaGuard Test")
    yield escalator
    escalator.shutdown(wait=True)


@pytest.fixture
def audit_logger(tmp_path, clock, escalator):
    """Audit logger for the 'app' channel writing under tmp_path/logs"""
    audit = SecureLogger(
        "app",
        log_dir=tmp_path / "logs",
        min_level="INFO",
        max_file_size=10 * 1024 * 1024,
        max_files=10,
        escalator=escalator,
        clock=clock,
    )
    yield audit
    audit.close()
