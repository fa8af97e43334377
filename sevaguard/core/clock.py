# sevaguard/core/clock.py
"""Time sources. Every component takes a clock so tests can move time."""

import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone


class Clock(ABC):
    """Returns the current time as UTC epoch seconds."""

    @abstractmethod
    def now(self) -> float:
        pass

    def utcnow(self) -> datetime:
        return datetime.fromtimestamp(self.now(), tz=timezone.utc)


class SystemClock(Clock):
    def now(self) -> float:
        return time.time()


system_clock = SystemClock()
