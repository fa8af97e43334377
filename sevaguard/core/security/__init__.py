"""
Security core.

Centralizes the request-facing security state:
- Session lifecycle with rotation and idle timeout
- Single-use CSRF tokens bound to a session
- Sliding-window rate limiting per client and action
- Signed purpose tokens and payload encryption

Decisions are returned as values; nothing here raises for bad client input.
"""

from .csrf_protection import CSRFTokenStore
from .rate_limiter import Persistence, RateLimitDecision, RateLimiter
from .session_security import SessionManager, is_well_formed_session_id
from .signed_tokens import generate_secure_token, validate_secure_token
from .encryption import PayloadCipher
from .components import SecurityComponents, get_security, init_security, reset_security

__all__ = [
    'CSRFTokenStore',
    'Persistence',
    'RateLimitDecision',
    'RateLimiter',
    'SessionManager',
    'is_well_formed_session_id',
    'generate_secure_token',
    'validate_secure_token',
    'PayloadCipher',
    'SecurityComponents',
    'get_security',
    'init_security',
    'reset_security',
]
