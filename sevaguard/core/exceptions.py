# sevaguard/core/exceptions.py
"""
SevaGuard Exceptions - standardized error handling for the security core.

Security decisions (unknown session, bad CSRF token, rate limit hit) are
returned as values, never raised. The exceptions below are reserved for
infrastructure and configuration problems.
"""

from typing import Optional, Dict, Any


class SevaGuardError(Exception):
    """Base exception for all SevaGuard errors"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def _add_detail(self, name: str, value: Any) -> None:
        if value is not None:
            self.details[name] = value

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ServiceError(SevaGuardError):
    """A backing service (state store, alert channel) failed"""

    def __init__(
        self,
        message: str,
        service_name: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.service_name = service_name
        self.operation = operation
        self._add_detail("service", service_name)
        self._add_detail("operation", operation)


class RedisServiceError(ServiceError):
    """Redis lock could not be taken or a command failed hard"""

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        operation: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, service_name="Redis", operation=operation, details=details)
        self.key = key
        self._add_detail("key", key)


class AlertDeliveryError(ServiceError):
    """Alert channel could not deliver a notification"""

    def __init__(
        self,
        message: str,
        channel: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, service_name=channel or "alert", operation="send_alert", details=details)
        self.channel = channel


class ConfigurationError(SevaGuardError):
    """Missing secret or component used before initialization"""

    def __init__(
        self,
        message: str,
        component: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.component = component
        self._add_detail("component", component)


class SecurityError(SevaGuardError):
    """
    Security infrastructure failure, e.g. ciphertext that does not
    decrypt. `error_type` names the failing step.
    """

    def __init__(
        self,
        message: str,
        error_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message, details)
        self.error_type = error_type
        self._add_detail("error_type", error_type)
