"""
Signed purpose tokens (password reset links, email verification).

Tokens are HS256 JWTs carrying ``purpose``, ``user_id``, ``iat``, ``exp``
and a random ``jti``. Stateless; single use has to be enforced by the
caller.
"""

import secrets
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from sevaguard.core.clock import Clock, system_clock
from sevaguard.core.exceptions import ConfigurationError

ALGORITHM = "HS256"


def _require_secret(secret: Optional[str]) -> str:
    if not secret:
        raise ConfigurationError("APP_SECRET is required for signed tokens", component="signed_tokens")
    return secret


def generate_secure_token(
    purpose: str,
    user_id: Optional[Any] = None,
    *,
    secret: Optional[str],
    expires_in: int = 3600,
    clock: Clock = system_clock,
) -> str:
    now = int(clock.now())
    claims = {
        "purpose": purpose,
        "user_id": user_id,
        "iat": now,
        "exp": now + expires_in,
        "jti": secrets.token_hex(16),
    }
    return jwt.encode(claims, _require_secret(secret), algorithm=ALGORITHM)


def validate_secure_token(
    token: Optional[str],
    purpose: str = "",
    max_age: int = 3600,
    *,
    secret: Optional[str],
    clock: Clock = system_clock,
) -> Optional[Dict[str, Any]]:
    """
    Verify signature, purpose and age.

    Returns the claims, or None for anything invalid. Never raises on bad
    input; a missing secret is a configuration error. Expiry is judged
    against `clock`, so ``exp`` is checked here rather than by jose.
    """
    secret = _require_secret(secret)
    if not token:
        return None

    try:
        claims = jwt.decode(token, secret, algorithms=[ALGORITHM], options={"verify_exp": False})
    except JWTError:
        return None

    if purpose and claims.get("purpose") != purpose:
        return None

    issued_at = claims.get("iat")
    expires_at = claims.get("exp")
    if not isinstance(issued_at, int) or not isinstance(expires_at, int):
        return None
    now = clock.now()
    if now > expires_at or now - issued_at > max_age:
        return None

    return claims
