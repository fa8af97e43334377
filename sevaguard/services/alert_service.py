"""Outbound alert channels for critical incidents."""

from __future__ import annotations

import logging
import smtplib
import ssl
from email.message import EmailMessage
from typing import Optional, Protocol

import requests

from sevaguard.core.config import Settings
from sevaguard.core.exceptions import AlertDeliveryError

logger = logging.getLogger(__name__)


class AlertSender(Protocol):
    def send_alert(self, subject: str, body: str) -> bool:
        """Deliver an alert. True when delivered, False when skipped."""
        ...


class EmailAlertSender:
    """Plain text alert mail over SMTP (STARTTLS by default)."""

    def __init__(
        self,
        *,
        host: str,
        port: int,
        sender: str,
        recipient: str,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_tls: bool = True,
        timeout: float = 5.0,
    ) -> None:
        self.host = host
        self.port = port
        self.sender = sender
        self.recipient = recipient
        self.username = username
        self.password = password
        self.use_tls = use_tls
        self.timeout = timeout

    def build_message(self, subject: str, body: str) -> EmailMessage:
        message = EmailMessage()
        message["From"] = self.sender
        message["To"] = self.recipient
        message["Subject"] = subject
        message["X-Priority"] = "1"
        message["X-MSMail-Priority"] = "High"
        message.set_content(body)
        return message

    def send_alert(self, subject: str, body: str) -> bool:
        message = self.build_message(subject, body)
        try:
            with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as client:
                if self.use_tls:
                    client.starttls(context=ssl.create_default_context())
                if self.username and self.password:
                    client.login(self.username, self.password)
                client.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            raise AlertDeliveryError("Failed to send alert email.", channel="smtp") from exc
        return True


class WebhookAlertSender:
    """JSON POST to a chat/ops webhook."""

    def __init__(self, url: str, *, timeout: float = 5.0) -> None:
        self.url = url
        self.timeout = timeout

    def send_alert(self, subject: str, body: str) -> bool:
        payload = {"title": subject, "text": body, "severity": "critical"}
        try:
            response = requests.post(self.url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.RequestException as exc:
            raise AlertDeliveryError("Failed to post alert webhook.", channel="webhook") from exc
        return True


class LoggingAlertSender:
    """Fallback when no channel is configured: the alert only reaches the diagnostic log."""

    def send_alert(self, subject: str, body: str) -> bool:
        logger.warning(f"ALERT (no delivery channel configured): {subject}\n{body}")
        return False


def build_alert_sender(settings: Settings) -> AlertSender:
    """SMTP if configured, else webhook, else log-only"""
    if settings.SMTP_HOST:
        return EmailAlertSender(
            host=settings.SMTP_HOST,
            port=settings.SMTP_PORT,
            sender=settings.ALERT_SENDER,
            recipient=settings.ADMIN_EMAIL,
            username=settings.SMTP_USERNAME,
            password=settings.SMTP_PASSWORD,
            use_tls=settings.SMTP_USE_TLS,
            timeout=settings.ALERT_TIMEOUT,
        )
    if settings.ALERT_WEBHOOK_URL:
        return WebhookAlertSender(settings.ALERT_WEBHOOK_URL, timeout=settings.ALERT_TIMEOUT)
    return LoggingAlertSender()


__all__ = [
    "AlertSender",
    "EmailAlertSender",
    "WebhookAlertSender",
    "LoggingAlertSender",
    "build_alert_sender",
]
