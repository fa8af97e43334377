# sevaguard/models/log_entry.py

from datetime import datetime
from enum import IntEnum
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from sevaguard.core.logging_config import NOTICE as NOTICE_LEVEL, ALERT as ALERT_LEVEL, EMERGENCY as EMERGENCY_LEVEL


class LogLevel(IntEnum):
    """Audit severities, numerically aligned with the stdlib logging levels"""
    DEBUG = 10
    INFO = 20
    NOTICE = NOTICE_LEVEL
    WARNING = 30
    ERROR = 40
    CRITICAL = 50
    ALERT = ALERT_LEVEL
    EMERGENCY = EMERGENCY_LEVEL

    @classmethod
    def parse(cls, value: Union["LogLevel", int, str]) -> "LogLevel":
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown log level: {value}")
        return cls(value)


class RequestContext(BaseModel):
    """Request metadata threaded explicitly into the security components"""
    ip: str = "unknown"
    method: str = "unknown"
    path: str = "unknown"
    user_agent: str = "unknown"
    user_id: Optional[Any] = None
    request_id: Optional[str] = None

    def as_log_context(self) -> Dict[str, Any]:
        data = {
            "ip": self.ip,
            "method": self.method,
            "path": self.path,
            "user_agent": self.user_agent,
        }
        if self.user_id is not None:
            data["user_id"] = self.user_id
        return data


class LogExtra(BaseModel):
    model_config = ConfigDict(frozen=True)

    process_id: int
    request_id: str


class LogEntry(BaseModel):
    """One line of an audit log file. Immutable once built."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    level: LogLevel
    channel: str
    message: str
    context: Dict[str, Any] = Field(default_factory=dict)
    extra: LogExtra

    @field_validator("level", mode="before")
    @classmethod
    def _parse_level(cls, value):
        return LogLevel.parse(value)

    @field_serializer("level")
    def _serialize_level(self, level: LogLevel) -> str:
        return level.name

    def search_text(self) -> str:
        return f"{self.message} {self.model_dump_json(include={'context'})}"


class Incident(BaseModel):
    """Durable record of a critical event"""
    id: str
    timestamp: datetime
    message: str
    context: Dict[str, Any] = Field(default_factory=dict)
    status: str = "open"
    severity: str = "critical"


class LogFileInfo(BaseModel):
    name: str
    path: str
    size: int
    modified: float


class FileSize(BaseModel):
    name: str
    size: int
    size_formatted: str


class LogStats(BaseModel):
    total_entries: int = 0
    by_level: Dict[str, int] = Field(default_factory=dict)
    by_date: Dict[str, int] = Field(default_factory=dict)
    top_errors: List[Dict[str, Any]] = Field(default_factory=list)
    file_sizes: List[FileSize] = Field(default_factory=list)
