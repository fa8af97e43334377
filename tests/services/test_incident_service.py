# tests/services/test_incident_service.py
"""Unit tests for IncidentEscalator"""

import json
import os
import stat
import threading
from datetime import datetime, timezone
from unittest.mock import Mock

import pytest

from sevaguard.core.exceptions import AlertDeliveryError
from sevaguard.models.log_entry import LogEntry, LogExtra, LogLevel
from sevaguard.services.incident_service import IncidentEscalator


def make_entry(message="Payment gateway down", level=LogLevel.CRITICAL, **context):
    return LogEntry(
        timestamp=datetime(2025, 10, 9, 8, 53, 20, tzinfo=timezone.utc),
        level=level,
        channel="payment",
        message=message,
        context=context,
        extra=LogExtra(process_id=1, request_id="req_test"),
    )


class TestEscalation:

    def test_incident_file(self, escalator):
        incident = escalator.escalate(make_entry(gateway="phonepe"))

        path = escalator.incident_dir / f"{incident.id}.json"
        assert path.exists()
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["id"] == incident.id
        assert data["id"].startswith("incident_")
        assert data["message"] == "Payment gateway down"
        assert data["context"] == {"gateway": "phonepe"}
        assert data["status"] == "open"
        assert data["severity"] == "critical"

    def test_incident_file_permissions(self, escalator):
        incident = escalator.escalate(make_entry())

        mode = stat.S_IMODE(os.stat(escalator.incident_dir / f"{incident.id}.json").st_mode)
        assert not mode & stat.S_IROTH
        dir_mode = stat.S_IMODE(os.stat(escalator.incident_dir).st_mode)
        assert not dir_mode & stat.S_IROTH

    def test_alert_sent_in_background(self, escalator, alert_sender):
        incident = escalator.escalate(make_entry(gateway="phonepe"))
        escalator.shutdown(wait=True)

        alert_sender.send_alert.assert_called_once()
        subject, body = alert_sender.send_alert.call_args.args
        assert subject == "CRITICAL ERROR - SevaGuard Test"
        assert "Payment gateway down" in body
        assert incident.id in body
        assert '"gateway": "phonepe"' in body

    def test_escalate_does_not_wait_for_alert(self, tmp_path):
        release = threading.Event()
        sender = Mock()
        sender.send_alert = Mock(side_effect=lambda subject, body: release.wait(5))
        escalator = IncidentEscalator(tmp_path / "incidents", sender)

        incident = escalator.escalate(make_entry())

        # Incident is on disk while the alert is still blocked
        assert escalator.get_incident(incident.id) is not None
        release.set()
        escalator.shutdown(wait=True)
        sender.send_alert.assert_called_once()

    def test_alert_failure_callback(self, tmp_path):
        sender = Mock()
        sender.send_alert = Mock(side_effect=AlertDeliveryError("SMTP down", channel="smtp"))
        failures = []
        escalator = IncidentEscalator(tmp_path / "incidents", sender)

        incident = escalator.escalate(make_entry(), on_failure=lambda inc, err: failures.append((inc.id, err)))
        escalator.shutdown(wait=True)

        assert len(failures) == 1
        assert failures[0][0] == incident.id
        assert isinstance(failures[0][1], AlertDeliveryError)

    def test_alert_failure_without_callback(self, tmp_path):
        sender = Mock()
        sender.send_alert = Mock(side_effect=AlertDeliveryError("SMTP down", channel="smtp"))
        escalator = IncidentEscalator(tmp_path / "incidents", sender)

        escalator.escalate(make_entry())
        escalator.shutdown(wait=True)

        assert len(escalator.list_incidents()) == 1

    def test_default_sender_only_logs(self, tmp_path):
        escalator = IncidentEscalator(tmp_path / "incidents")
        future = escalator.dispatch_alert(escalator.record_incident(make_entry()))

        assert future.result(timeout=5) is False
        escalator.shutdown()


class TestIncidentAdministration:

    def test_list_newest_first(self, escalator):
        older = escalator.escalate(make_entry("first"))
        newer_entry = make_entry("second").model_copy(update={"timestamp": datetime(2025, 10, 10, tzinfo=timezone.utc)})
        newer = escalator.escalate(newer_entry)

        assert [i.id for i in escalator.list_incidents()] == [newer.id, older.id]

    def test_list_empty_when_directory_missing(self, tmp_path):
        escalator = IncidentEscalator(tmp_path / "nowhere")
        assert escalator.list_incidents() == []
        escalator.shutdown()

    def test_close_incident(self, escalator):
        incident = escalator.escalate(make_entry())

        closed = escalator.close_incident(incident.id)

        assert closed.status == "closed"
        assert escalator.get_incident(incident.id).status == "closed"
        assert escalator.list_incidents(status="open") == []
        assert [i.id for i in escalator.list_incidents(status="closed")] == [incident.id]

    def test_close_unknown(self, escalator):
        assert escalator.close_incident("incident_missing") is None

    def test_ids_cannot_escape_directory(self, escalator, tmp_path):
        outside = tmp_path / "secret.json"
        outside.write_text("{}")

        assert escalator.close_incident("../../secret") is None
        assert outside.read_text() == "{}"

    def test_unreadable_files_are_skipped(self, escalator):
        escalator.escalate(make_entry())
        (escalator.incident_dir / "incident_broken.json").write_text("{")

        assert len(escalator.list_incidents()) == 1
