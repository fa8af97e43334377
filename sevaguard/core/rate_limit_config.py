"""
Rate limiting configuration: client identity and per-action limits
"""

import hashlib
import ipaddress
from typing import Dict, NamedTuple, Optional
from fastapi import Request
from slowapi.util import get_remote_address

from sevaguard.core.config import Settings, settings


class ActionLimit(NamedTuple):
    max_requests: int
    window_seconds: int


def _is_public_ip(value: str) -> bool:
    try:
        ip = ipaddress.ip_address(value)
    except ValueError:
        return False
    return ip.is_global


def get_real_ip(request: Request) -> str:
    """
    Get the real client IP address, considering proxy headers.

    The first public address in the proxy headers wins; private and reserved
    ranges are skipped. Falls back to the socket peer address.
    """
    for header in ("CF-Connecting-IP", "X-Forwarded-For", "X-Real-IP", "Client-IP"):
        value = request.headers.get(header)
        if not value:
            continue
        # X-Forwarded-For can contain multiple IPs
        for candidate in value.split(","):
            candidate = candidate.strip()
            if _is_public_ip(candidate):
                return candidate

    return get_remote_address(request) or "unknown"


def get_client_identifier(ip: str, user_agent: Optional[str]) -> str:
    """Stable, non-reversible client key for rate limiting"""
    raw = f"{ip}|{user_agent or 'unknown'}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


# Per-action sliding-window limits
ACTION_LIMITS: Dict[str, ActionLimit] = {
    "login": ActionLimit(5, 300),
    "register": ActionLimit(3, 3600),
    "password_reset": ActionLimit(3, 3600),
    "contact": ActionLimit(5, 600),
    "donation": ActionLimit(10, 600),
    "csrf_issue": ActionLimit(20, 60),
    "general_access": ActionLimit(30, 60),
}

# Global API-wide limit enforced by slowapi, on top of the per-action windows
GLOBAL_LIMIT = "100/minute"

RATE_LIMIT_MESSAGES = {
    "default": "Too many requests. Please wait a moment and try again.",
    "login": "Too many login attempts. Please try again in a few minutes.",
    "contact": "Too many messages sent. Please slow down.",
}


def get_action_limit(action: str, current: Optional[Settings] = None) -> ActionLimit:
    """Limit for an action; unknown actions get RATE_LIMIT_MAX_REQUESTS per RATE_LIMIT_WINDOW"""
    if action in ACTION_LIMITS:
        return ACTION_LIMITS[action]
    current = current or settings
    return ActionLimit(current.RATE_LIMIT_MAX_REQUESTS, current.RATE_LIMIT_WINDOW)


def get_rate_limit_message(action: str) -> str:
    """Get custom error message for a rate limited action"""
    return RATE_LIMIT_MESSAGES.get(action, RATE_LIMIT_MESSAGES["default"])
