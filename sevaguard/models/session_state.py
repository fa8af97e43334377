# sevaguard/models/session_state.py

import secrets
from typing import Any, Dict, Optional
from uuid import uuid4
from pydantic import BaseModel, Field


def new_session_id() -> str:
    """256 bits of entropy, URL-safe, cookie-safe"""
    return secrets.token_urlsafe(32)


class SessionState(BaseModel):
    """
    Server-side state of one logical session.

    `session_id` is the public identifier sent in the cookie and changes on
    every rotation. `session_key` identifies the logical session and never
    changes, so anything bound to the session (CSRF tokens) survives rotation.
    """
    session_id: str = Field(default_factory=new_session_id)
    session_key: str = Field(default_factory=lambda: uuid4().hex)
    created_at: float
    last_activity: float
    last_rotation: float
    attributes: Dict[str, Any] = Field(default_factory=dict)

    @property
    def user_id(self) -> Optional[Any]:
        return self.attributes.get("user_id")


class SessionCookie(BaseModel):
    """Cookie the caller has to set on the response"""
    name: str
    value: str
    max_age: int
    httponly: bool = True
    secure: bool = True
    samesite: str = "strict"
    path: str = "/"


class SessionHandle(BaseModel):
    """
    What `SessionManager.ensure` hands back to a request handler.

    `created` is set when the request got a brand new session (no cookie,
    unknown/expired identifier, idle timeout); `rotated` when the identifier
    changed during this request.
    """
    session: SessionState
    cookie: SessionCookie
    created: bool = False
    rotated: bool = False
    previous_id: Optional[str] = None

    @property
    def session_id(self) -> str:
        return self.session.session_id


class CSRFTokenRecord(BaseModel):
    """Live CSRF token bound to a logical session"""
    token: str
    session_key: str
    issued_at: float
    expires_at: float

    def is_expired(self, now: float, ttl: int) -> bool:
        return now - self.issued_at > ttl
