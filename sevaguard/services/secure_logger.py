"""
Structured audit log.

Each channel writes JSON lines to ``{log_dir}/{channel}-{YYYY-MM-DD}.log``
through a `logging.Logger` of its own. Files are rotated by size after each
append (``.1`` is the newest backup) and critical entries are handed to the
IncidentEscalator once they are on disk.
"""

import logging
import os
import re
import sys
from collections import Counter, deque
from datetime import datetime, timedelta, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional, TextIO, Union
from uuid import uuid4

import portalocker
from pydantic import ValidationError
from pydantic_core import to_jsonable_python

from sevaguard.core.clock import Clock, system_clock
from sevaguard.models.log_entry import (
    FileSize,
    Incident,
    LogEntry,
    LogExtra,
    LogFileInfo,
    LogLevel,
    LogStats,
    RequestContext,
)
from sevaguard.services.incident_service import IncidentEscalator

logger = logging.getLogger(__name__)

# Correlates entries written without a request id
_PROCESS_REQUEST_ID = f"req_{uuid4().hex[:13]}"

LevelLike = Union[LogLevel, int, str]

# Channel names end up in file names
CHANNEL_PATTERN = r"^[a-z_]{1,32}$"


def format_bytes(size: int, precision: int = 2) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(max(size, 0))
    unit = 0
    while value >= 1024 and unit < len(units) - 1:
        value /= 1024
        unit += 1
    return f"{round(value, precision)} {units[unit]}"


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class JsonLineFormatter(logging.Formatter):
    """Renders the LogEntry attached to a record as a single JSON line"""

    def format(self, record: logging.LogRecord) -> str:
        entry: Optional[LogEntry] = getattr(record, "entry", None)
        if entry is None:
            try:
                level = LogLevel(record.levelno)
            except ValueError:
                level = LogLevel.INFO
            entry = LogEntry(
                timestamp=datetime.fromtimestamp(record.created, tz=timezone.utc),
                level=level,
                channel=record.name.rsplit(".", 1)[-1],
                message=record.getMessage(),
                extra=LogExtra(process_id=record.process or os.getpid(), request_id=_PROCESS_REQUEST_ID),
            )
        return entry.model_dump_json()


class ChannelFileHandler(RotatingFileHandler):
    """
    RotatingFileHandler with one active file per UTC day.

    Appends and rotation both run inside `emit`, which `Handler.handle`
    wraps in the handler lock; `emit` additionally holds an exclusive
    lock on ``.{channel}.lock`` so workers in other processes writing the
    same channel never interleave with a rollover. Write failures go to
    `fallback` (stderr).
    """

    def __init__(
        self,
        log_dir: Path,
        channel: str,
        *,
        max_bytes: int,
        backup_count: int,
        clock: Clock = system_clock,
        fallback: Optional[TextIO] = None,
    ):
        self.log_dir = Path(log_dir)
        self.channel = channel
        self.clock = clock
        self.fallback = fallback
        self.rotations = 0
        self.lock_path = self.log_dir / f".{channel}.lock"
        self._day = self._today()
        super().__init__(
            self.path_for(self._day),
            maxBytes=max_bytes,
            backupCount=max(backup_count, 1),
            encoding="utf-8",
            delay=True,
        )

    def _today(self) -> str:
        return self.clock.utcnow().strftime("%Y-%m-%d")

    def path_for(self, day: str) -> str:
        return str(self.log_dir / f"{self.channel}-{day}.log")

    def _switch_day(self) -> None:
        today = self._today()
        if today == self._day:
            return
        if self.stream is not None:
            self.stream.close()
            self.stream = None
        self._day = today
        self.baseFilename = os.path.abspath(self.path_for(today))

    def _stream_is_stale(self) -> bool:
        # Another process may have rotated the active file away
        try:
            return os.fstat(self.stream.fileno()).st_ino != os.stat(self.baseFilename).st_ino
        except FileNotFoundError:
            return True

    def _append(self, record: logging.LogRecord) -> None:
        self._switch_day()
        if self.stream is not None and self._stream_is_stale():
            self.stream.close()
            self.stream = None
        if self.stream is None:
            self.stream = self._open()
        self.stream.write(self.format(record) + self.terminator)
        self.stream.flush()
        if self.maxBytes > 0 and os.path.getsize(self.baseFilename) >= self.maxBytes:
            self.doRollover()
            self.rotations += 1

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.log_dir.mkdir(mode=0o750, parents=True, exist_ok=True)
            # Exclusive across processes sharing the directory
            with open(self.lock_path, "a") as lock_file:
                portalocker.lock(lock_file, portalocker.LOCK_EX)
                try:
                    self._append(record)
                finally:
                    portalocker.unlock(lock_file)
        except Exception:
            self.handleError(record)

    def handleError(self, record: logging.LogRecord) -> None:
        stream = self.fallback or sys.stderr
        try:
            line = self.format(record)
        except Exception:
            line = record.getMessage()
        try:
            stream.write(f"Failed to write to log file: {self.baseFilename}\n{line}\n")
            stream.flush()
        except OSError:
            # nowhere left to report
            pass


class SecureLogger:
    """Audit logger for one channel (``app``, ``security``, ...)"""

    def __init__(
        self,
        channel: str = "app",
        *,
        log_dir: Union[str, Path] = "logs",
        min_level: LevelLike = LogLevel.INFO,
        max_file_size: int = 10 * 1024 * 1024,
        max_files: int = 10,
        escalator: Optional[IncidentEscalator] = None,
        clock: Clock = system_clock,
        fallback: Optional[TextIO] = None,
    ):
        if not re.fullmatch(CHANNEL_PATTERN, channel):
            raise ValueError(f"Invalid log channel name: {channel!r}")
        self.channel = channel
        self.log_dir = Path(log_dir)
        self.min_level = LogLevel.parse(min_level)
        self.max_file_size = max_file_size
        self.max_files = max_files
        self.escalator = escalator
        self.clock = clock

        self.handler = ChannelFileHandler(
            self.log_dir,
            channel,
            max_bytes=max_file_size,
            backup_count=max_files,
            clock=clock,
            fallback=fallback,
        )
        self.handler.setFormatter(JsonLineFormatter())

        # Standalone logger: not registered with the logging manager, so two
        # instances for the same channel never share handlers
        self._logger = logging.Logger(f"sevaguard.audit.{channel}", level=int(self.min_level))
        self._logger.propagate = False
        self._logger.addHandler(self.handler)

        self._file_pattern = re.compile(rf"^{re.escape(channel)}-\d{{4}}-\d{{2}}-\d{{2}}\.log(\.\d+)?$")

    def log(
        self,
        level: LevelLike,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        request: Optional[RequestContext] = None,
    ) -> Optional[LogEntry]:
        level = LogLevel.parse(level)
        if level < self.min_level:
            return None

        entry = self._build_entry(level, message, context, request)
        self._logger.log(int(level), message, extra={"entry": entry})

        if level >= LogLevel.CRITICAL and self.escalator is not None:
            try:
                self.escalator.escalate(entry, on_failure=self._alert_failed)
            except Exception as e:
                self.log(LogLevel.ERROR, "Incident escalation failed", {"error": str(e), "original": message})
        return entry

    def debug(self, message: str, context: Optional[Dict[str, Any]] = None, request: Optional[RequestContext] = None):
        return self.log(LogLevel.DEBUG, message, context, request)

    def info(self, message: str, context: Optional[Dict[str, Any]] = None, request: Optional[RequestContext] = None):
        return self.log(LogLevel.INFO, message, context, request)

    def notice(self, message: str, context: Optional[Dict[str, Any]] = None, request: Optional[RequestContext] = None):
        return self.log(LogLevel.NOTICE, message, context, request)

    def warning(self, message: str, context: Optional[Dict[str, Any]] = None, request: Optional[RequestContext] = None):
        return self.log(LogLevel.WARNING, message, context, request)

    def error(self, message: str, context: Optional[Dict[str, Any]] = None, request: Optional[RequestContext] = None):
        return self.log(LogLevel.ERROR, message, context, request)

    def critical(self, message: str, context: Optional[Dict[str, Any]] = None, request: Optional[RequestContext] = None):
        return self.log(LogLevel.CRITICAL, message, context, request)

    def alert(self, message: str, context: Optional[Dict[str, Any]] = None, request: Optional[RequestContext] = None):
        return self.log(LogLevel.ALERT, message, context, request)

    def emergency(self, message: str, context: Optional[Dict[str, Any]] = None, request: Optional[RequestContext] = None):
        return self.log(LogLevel.EMERGENCY, message, context, request)

    def _build_entry(
        self,
        level: LogLevel,
        message: str,
        context: Optional[Dict[str, Any]],
        request: Optional[RequestContext],
    ) -> LogEntry:
        merged: Dict[str, Any] = dict(context or {})
        if request is not None:
            merged.update(request.as_log_context())
        return LogEntry(
            timestamp=self.clock.utcnow(),
            level=level,
            channel=self.channel,
            message=message,
            context=to_jsonable_python(merged, fallback=str),
            extra=LogExtra(
                process_id=os.getpid(),
                request_id=(request.request_id if request and request.request_id else _PROCESS_REQUEST_ID),
            ),
        )

    def _alert_failed(self, incident: Incident, error: BaseException) -> None:
        # Runs on the alert worker thread; ERROR never escalates again
        self.log(LogLevel.ERROR, "Failed to send critical alert", {"incident": incident.id, "error": str(error)})

    # -- reading ---------------------------------------------------------

    def log_files(self) -> List[LogFileInfo]:
        """This channel's current and rotated files, newest first"""
        if not self.log_dir.is_dir():
            return []
        files = []
        for path in self.log_dir.iterdir():
            if not self._file_pattern.match(path.name):
                continue
            try:
                stat = path.stat()
            except FileNotFoundError:
                continue
            files.append(LogFileInfo(name=path.name, path=str(path), size=stat.st_size, modified=stat.st_mtime))
        files.sort(key=lambda f: (f.modified, f.name), reverse=True)
        return files

    def _read_file(self, path: Path) -> Iterator[LogEntry]:
        try:
            with open(path, encoding="utf-8") as fh:
                for line in fh:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        yield LogEntry.model_validate_json(line)
                    except ValidationError:
                        continue
        except FileNotFoundError:
            # rotated or cleaned while scanning
            return

    def iter_entries(self) -> Iterator[LogEntry]:
        """
        Lazily yield every parseable entry across the channel's files.

        Reads take no lock; a rotation during the scan can skip or repeat
        entries but never blocks writers.
        """
        for info in self.log_files():
            yield from self._read_file(Path(info.path))

    def search(
        self,
        query: str = "",
        level: Optional[LevelLike] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> List[LogEntry]:
        wanted = LogLevel.parse(level) if level is not None else None
        start_time = _as_utc(start_time)
        end_time = _as_utc(end_time)
        needle = query.lower()

        results = []
        for entry in self.iter_entries():
            if wanted is not None and entry.level != wanted:
                continue
            if start_time is not None and entry.timestamp < start_time:
                continue
            if end_time is not None and entry.timestamp > end_time:
                continue
            if needle and needle not in entry.search_text().lower():
                continue
            results.append(entry)

        results.sort(key=lambda e: e.timestamp, reverse=True)
        return results

    def stats(self, window_days: int = 7, top_k: int = 10) -> LogStats:
        cutoff = self.clock.utcnow() - timedelta(days=window_days)
        stats = LogStats()
        errors: Counter = Counter()

        for info in self.log_files():
            stats.file_sizes.append(FileSize(name=info.name, size=info.size, size_formatted=format_bytes(info.size)))
            for entry in self._read_file(Path(info.path)):
                if entry.timestamp < cutoff:
                    continue
                stats.total_entries += 1
                stats.by_level[entry.level.name] = stats.by_level.get(entry.level.name, 0) + 1
                day = entry.timestamp.date().isoformat()
                stats.by_date[day] = stats.by_date.get(day, 0) + 1
                if entry.level >= LogLevel.ERROR:
                    errors[entry.message] += 1

        stats.top_errors = [{"message": message, "count": count} for message, count in errors.most_common(top_k)]
        return stats

    def recent_entries(self, limit: int = 100) -> List[LogEntry]:
        """Last `limit` entries of today's file, newest first"""
        path = Path(self.handler.path_for(self.clock.utcnow().strftime("%Y-%m-%d")))
        tail = deque(self._read_file(path), maxlen=max(limit, 0))
        return list(reversed(tail))

    def clean_old_logs(self, days: int = 30) -> List[str]:
        """Delete channel files not modified within `days`; returns removed names"""
        cutoff = self.clock.now() - days * 86400
        removed = []
        with self.handler.lock:
            for info in self.log_files():
                if info.modified >= cutoff:
                    continue
                try:
                    os.unlink(info.path)
                except FileNotFoundError:
                    continue
                removed.append(info.name)
        if removed:
            logger.info(f"Removed {len(removed)} old '{self.channel}' log files")
        return removed

    def close(self) -> None:
        self.handler.close()
