"""
Security middleware for the SevaGuard API
Handles sessions, rate limiting, CSRF checks, audit logging and security headers
"""

from fastapi import Request, Response
from fastapi.responses import JSONResponse
import time
import logging
from typing import Callable, Iterable, Optional
from uuid import uuid4

from sevaguard.core.rate_limit_config import (
    get_action_limit,
    get_client_identifier,
    get_rate_limit_message,
    get_real_ip,
)
from sevaguard.core.security.components import SecurityComponents, get_security
from sevaguard.core.security.rate_limiter import RateLimitDecision
from sevaguard.models.log_entry import LogLevel, RequestContext
from sevaguard.models.session_state import SessionHandle

logger = logging.getLogger(__name__)

STATE_CHANGING_METHODS = {"POST", "PUT", "PATCH", "DELETE"}
CSRF_HEADER = "X-CSRF-Token"

# Probes and health checks get neither a session nor a rate-limit window
DEFAULT_EXEMPT_PATHS = {"/", "/health"}

SUSPICIOUS_AGENTS = ("bot", "crawler", "spider", "scraper")

SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    "X-XSS-Protection": "1; mode=block",
    "Referrer-Policy": "strict-origin-when-cross-origin",
    "Permissions-Policy": "geolocation=(), microphone=(), camera=()",
    "Content-Security-Policy": "default-src 'self'; img-src 'self' data: https:; connect-src 'self'",
}


def build_request_context(request: Request) -> RequestContext:
    """Request metadata passed explicitly to the security components"""
    return RequestContext(
        ip=get_real_ip(request),
        method=request.method,
        path=request.url.path,
        user_agent=request.headers.get("user-agent") or "unknown",
        request_id=request.headers.get("X-Request-ID") or f"req_{uuid4().hex[:13]}",
    )


def is_suspicious_agent(user_agent: Optional[str]) -> bool:
    agent = (user_agent or "").lower()
    return any(marker in agent for marker in SUSPICIOUS_AGENTS)


def apply_security_headers(response: Response, production: bool = True) -> Response:
    for name, value in SECURITY_HEADERS.items():
        response.headers[name] = value
    if production:
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
    if "server" in response.headers:
        del response.headers["server"]
    return response


def rate_limit_headers(response: Response, decision: RateLimitDecision) -> Response:
    response.headers["X-RateLimit-Limit"] = str(decision.limit)
    response.headers["X-RateLimit-Remaining"] = str(decision.remaining)
    if not decision.allowed:
        response.headers["Retry-After"] = str(decision.retry_after)
    return response


class SecurityMiddleware:
    """
    Per-request control flow:
    session -> rate limit -> CSRF (state-changing methods) -> handler -> audit log

    Handlers find the session handle on ``request.state.session``. A handler
    that replaces it (login, regenerate) stores the new handle there; one
    that destroys it (logout) sets it to None and the cookie is cleared.
    """

    def __init__(
        self,
        components: Optional[Callable[[], SecurityComponents]] = None,
        *,
        exempt_paths: Iterable[str] = DEFAULT_EXEMPT_PATHS,
        csrf_exempt_paths: Iterable[str] = (),
        action: str = "general_access",
    ):
        self._components = components or get_security
        self.exempt_paths = set(exempt_paths)
        self.csrf_exempt_paths = set(csrf_exempt_paths)
        self.action = action

    async def __call__(self, request: Request, call_next: Callable) -> Response:
        security = self._components()
        production = security.settings.is_production

        context = build_request_context(request)
        request.state.request_context = context

        if request.url.path in self.exempt_paths:
            response = await call_next(request)
            return apply_security_headers(response, production)

        audit = security.logger("security")
        cookie_name = security.sessions.cookie_name

        # 1. Session
        handle = await security.sessions.ensure(request.cookies.get(cookie_name), context)
        request.state.session = handle
        if handle.rotated:
            audit.info("Session identifier rotated", request=context)

        # 2. Rate limit
        identifier = get_client_identifier(context.ip, context.user_agent)
        limit = get_action_limit(self.action, security.settings)
        decision = await security.rate_limiter.check(
            identifier, self.action, limit.max_requests, limit.window_seconds, context
        )
        if is_suspicious_agent(context.user_agent) or not decision.allowed:
            reasons = []
            if is_suspicious_agent(context.user_agent):
                reasons.append("suspicious_user_agent")
            if not decision.allowed:
                reasons.append("rapid_requests")
            audit.warning("Suspicious activity detected", {"reasons": reasons}, context)

        if not decision.allowed:
            response = JSONResponse(status_code=429, content={"detail": get_rate_limit_message(self.action)})
            rate_limit_headers(response, decision)
            return self._finalize(response, handle, cookie_name, production)

        # 3. CSRF
        if request.method in STATE_CHANGING_METHODS and request.url.path not in self.csrf_exempt_paths:
            token = request.headers.get(CSRF_HEADER)
            if not await security.csrf.validate(handle.session, token):
                audit.warning("CSRF validation failed", {"token_present": bool(token)}, context)
                response = JSONResponse(status_code=403, content={"detail": "Invalid or missing CSRF token"})
                return self._finalize(response, handle, cookie_name, production)

        # 4. Handler
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            audit.critical(
                "Unhandled error while processing request",
                {"error": str(e), "error_type": type(e).__name__},
                context,
            )
            raise
        process_time = time.time() - start_time

        # 5. Outcome
        if response.status_code >= 500:
            level = LogLevel.ERROR
        elif response.status_code >= 400:
            level = LogLevel.WARNING
        else:
            level = LogLevel.INFO
        audit.log(
            level,
            "Request completed",
            {"status": response.status_code, "duration_ms": round(process_time * 1000, 1)},
            context,
        )
        if process_time > 1.0:
            logger.warning(f"Slow request: {request.url.path} took {process_time:.2f}s")

        rate_limit_headers(response, decision)
        current = getattr(request.state, "session", handle)
        return self._finalize(response, current, cookie_name, production)

    @staticmethod
    def _finalize(
        response: Response,
        handle: Optional[SessionHandle],
        cookie_name: str,
        production: bool,
    ) -> Response:
        if handle is None:
            response.delete_cookie(cookie_name, path="/", secure=True, httponly=True, samesite="strict")
        else:
            cookie = handle.cookie
            response.set_cookie(
                cookie.name,
                cookie.value,
                max_age=cookie.max_age,
                path=cookie.path,
                secure=cookie.secure,
                httponly=cookie.httponly,
                samesite=cookie.samesite,
            )
        return apply_security_headers(response, production)
