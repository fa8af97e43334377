"""
Incident escalation for critical audit events.

The incident record is written synchronously (small local file, durable
before `log` returns); alert delivery runs on a background worker so a slow
mail server never stalls a request.
"""

import json
import logging
import os
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Callable, List, Optional
from uuid import uuid4

from sevaguard.models.log_entry import Incident, LogEntry
from sevaguard.services.alert_service import AlertSender, LoggingAlertSender

logger = logging.getLogger(__name__)

FailureCallback = Callable[[Incident, BaseException], None]


class IncidentEscalator:
    def __init__(
        self,
        incident_dir: Path,
        alert_sender: Optional[AlertSender] = None,
        *,
        app_name: str = "SevaGuard",
        executor: Optional[ThreadPoolExecutor] = None,
    ):
        self.incident_dir = Path(incident_dir)
        self.alert_sender = alert_sender or LoggingAlertSender()
        self.app_name = app_name
        self._executor = executor or ThreadPoolExecutor(max_workers=1, thread_name_prefix="incident-alert")
        self._status_lock = threading.Lock()

    def escalate(self, entry: LogEntry, on_failure: Optional[FailureCallback] = None) -> Incident:
        """Persist an open incident for `entry` and dispatch the alert"""
        incident = self.record_incident(entry)
        self.dispatch_alert(incident, on_failure)
        return incident

    def record_incident(self, entry: LogEntry) -> Incident:
        incident = Incident(
            id=f"incident_{uuid4().hex}",
            timestamp=entry.timestamp,
            message=entry.message,
            context=dict(entry.context),
            status="open",
            severity=entry.level.name.lower(),
        )
        self._write(incident)
        logger.info(f"Opened {incident.id} ({incident.severity}): {incident.message}")
        return incident

    def dispatch_alert(self, incident: Incident, on_failure: Optional[FailureCallback] = None) -> Future:
        subject = f"{incident.severity.upper()} ERROR - {self.app_name}"
        future = self._executor.submit(self.alert_sender.send_alert, subject, self.format_alert(incident))

        def _done(fut: Future) -> None:
            error = fut.exception()
            if error is None:
                return
            logger.error(f"Alert for {incident.id} failed: {error}")
            if on_failure is not None:
                on_failure(incident, error)

        future.add_done_callback(_done)
        return future

    def format_alert(self, incident: Incident) -> str:
        context = json.dumps(incident.context, indent=2, default=str, ensure_ascii=False)
        return (
            f"A {incident.severity} error has occurred on {self.app_name}:\n\n"
            f"Message: {incident.message}\n\n"
            f"Context:\n{context}\n\n"
            f"Timestamp: {incident.timestamp.isoformat()}\n"
            f"Incident: {incident.id}\n"
        )

    def list_incidents(self, status: Optional[str] = None) -> List[Incident]:
        """Incidents newest first, optionally filtered by status"""
        if not self.incident_dir.is_dir():
            return []
        incidents = []
        for path in self.incident_dir.glob("incident_*.json"):
            incident = self._read(path)
            if incident is not None and (status is None or incident.status == status):
                incidents.append(incident)
        incidents.sort(key=lambda i: i.timestamp, reverse=True)
        return incidents

    def get_incident(self, incident_id: str) -> Optional[Incident]:
        return self._read(self._path(incident_id))

    def close_incident(self, incident_id: str) -> Optional[Incident]:
        """Operator action: mark an incident resolved"""
        with self._status_lock:
            incident = self.get_incident(incident_id)
            if incident is None:
                return None
            incident.status = "closed"
            self._write(incident)
        logger.info(f"Closed {incident_id}")
        return incident

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _path(self, incident_id: str) -> Path:
        # Ids come from operators too; keep them inside the directory
        return self.incident_dir / f"{Path(incident_id).name}.json"

    def _read(self, path: Path) -> Optional[Incident]:
        try:
            return Incident.model_validate_json(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except ValueError:
            logger.warning(f"Skipping unreadable incident file {path.name}")
            return None

    def _write(self, incident: Incident) -> None:
        self.incident_dir.mkdir(mode=0o750, parents=True, exist_ok=True)
        path = self._path(incident.id)
        tmp = path.with_suffix(".tmp")
        fd = os.open(tmp, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o640)
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(incident.model_dump_json(indent=2))
        os.replace(tmp, path)
