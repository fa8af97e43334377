# sevaguard/main.py
"""
SevaGuard FastAPI application.

Wires the security core (sessions, CSRF, rate limiting, audit log and
incident escalation) into a small API: token issuance, logout, and
operator endpoints for searching the audit log and reviewing incidents.
"""

from fastapi import FastAPI, HTTPException, Depends, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import APIKeyHeader
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from typing import Any, Dict, List, Optional
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import asyncio
import logging
import secrets

from sevaguard.core.config import settings, validate_required_settings
from sevaguard.core.exceptions import ConfigurationError, SevaGuardError
from sevaguard.core.logging_config import setup_logging
from sevaguard.core.rate_limit_config import (
    GLOBAL_LIMIT,
    get_action_limit,
    get_client_identifier,
    get_rate_limit_message,
    get_real_ip,
)
from sevaguard.core.security import SecurityComponents, get_security, init_security, reset_security
from sevaguard.middleware.security_middleware import SecurityMiddleware, rate_limit_headers
from sevaguard.models.log_entry import Incident, LogEntry, LogStats
from sevaguard.services.redis_service import create_redis_store
from sevaguard.services.secure_logger import CHANNEL_PATTERN
from sevaguard.services.state_store import MemoryStateStore, StateStore

HOUSEKEEPING_INTERVAL = 300  # seconds

# Setup logging
logger = logging.getLogger(__name__)
setup_logging()


async def _create_store() -> StateStore:
    """Redis when REDIS_URL is set, otherwise in-process memory"""
    if settings.REDIS_URL:
        store = await create_redis_store(settings.REDIS_URL)
        if store.is_connected():
            return store
        logger.warning("Redis unreachable - falling back to in-memory state (single instance only)")
    return MemoryStateStore()


async def _housekeeping_loop(security: SecurityComponents, interval: int = HOUSEKEEPING_INTERVAL):
    while True:
        await asyncio.sleep(interval)
        try:
            await security.housekeeping()
        except SevaGuardError as e:
            logger.error(f"Housekeeping failed: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """FastAPI lifespan event handler for startup/shutdown"""
    logger.info(f"Starting {settings.APP_NAME} ({settings.ENV})")

    # Validate environment variables (warn but don't fail)
    if not validate_required_settings():
        logger.warning("Some secrets are missing - dependent features will fail on first use")

    try:
        # Already wired by an embedding app or a test
        security = get_security()
    except ConfigurationError:
        security = init_security(settings, store=await _create_store())

    housekeeping = asyncio.create_task(_housekeeping_loop(security))
    logger.info("Security core ready")

    yield

    logger.info(f"Shutting down {settings.APP_NAME}")
    housekeeping.cancel()
    try:
        await housekeeping
    except asyncio.CancelledError:
        pass
    await security.shutdown()
    reset_security()


app = FastAPI(
    title="SevaGuard API",
    description="Session, CSRF, rate-limit and audit-log security core",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None,
    redoc_url=None,
)

# =============================================================================
# API KEY AUTHENTICATION (operator endpoints)
# =============================================================================

API_KEY_NAME = "X-API-Key"
api_key_header = APIKeyHeader(name=API_KEY_NAME, auto_error=False)


async def verify_api_key(api_key: Optional[str] = Depends(api_key_header)):
    """Verify API key for admin endpoints"""
    expected = get_security().settings.ADMIN_API_KEY
    if not expected:
        logger.warning("Admin endpoint called but ADMIN_API_KEY is not configured")
        raise HTTPException(status_code=503, detail="Admin API is not configured")
    if api_key is None:
        logger.warning("Admin request without API key")
        raise HTTPException(
            status_code=401,
            detail="Missing API Key. Include 'X-API-Key' header.",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    if not secrets.compare_digest(api_key.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Invalid API key attempt detected")
        raise HTTPException(
            status_code=401,
            detail="Invalid API Key",
            headers={"WWW-Authenticate": "ApiKey"},
        )
    return api_key


def get_safe_error_message(error: Exception, context: str = "") -> str:
    """Return a safe error message that doesn't expose internal details"""
    logger.error(f"Error in {context}: {type(error).__name__}: {str(error)}")

    if isinstance(error, HTTPException):
        return error.detail

    error_messages = {
        "ConnectionError": "Connection error. Please try again later.",
        "TimeoutError": "The request took too long. Please try again.",
        "ValidationError": "The request was invalid.",
    }
    return error_messages.get(type(error).__name__, "An error occurred. Please try again later.")


# =============================================================================
# RATE LIMITING
# =============================================================================

# API-wide limit per client IP; per-action windows live in the security core
limiter = Limiter(key_func=get_real_ip)


def custom_rate_limit_handler(request: Request, exc: RateLimitExceeded):
    response = JSONResponse(status_code=429, content={"detail": get_rate_limit_message("default")})
    response.headers["Retry-After"] = "60"
    return response


app.add_exception_handler(RateLimitExceeded, custom_rate_limit_handler)
app.state.limiter = limiter

# Security middleware (sessions, general_access limit, CSRF, audit log)
app.middleware("http")(SecurityMiddleware())

# CORS configuration - environment-aware
development_origins = [
    "http://localhost:3000",
    "http://127.0.0.1:3000",
]
allowed_origins = settings.ALLOWED_ORIGINS + ([] if settings.is_production else development_origins)

app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "X-CSRF-Token", "X-API-Key", "X-Request-ID"],
)


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/", status_code=200)
def read_root():
    """Liveness check"""
    return {"status": "ok", "version": "1.0.0", "service": "sevaguard"}


@app.get("/health", status_code=200)
async def health():
    """Health check including the state store"""
    store = await get_security().health_check()
    return {
        "status": "healthy" if store.get("healthy") else "degraded",
        "store": store,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@app.get("/csrf-token")
@limiter.limit(GLOBAL_LIMIT)
async def csrf_token(request: Request):
    """Issue a fresh CSRF token for the caller's session"""
    security = get_security()
    context = request.state.request_context
    limit = get_action_limit("csrf_issue", security.settings)
    decision = await security.rate_limiter.check(
        get_client_identifier(context.ip, context.user_agent),
        "csrf_issue",
        limit.max_requests,
        limit.window_seconds,
        context,
    )
    if not decision.allowed:
        response = JSONResponse(status_code=429, content={"detail": get_rate_limit_message("csrf_issue")})
        return rate_limit_headers(response, decision)

    token = await security.csrf.issue(request.state.session.session)
    return {"csrf_token": token}


@app.post("/logout")
@limiter.limit(GLOBAL_LIMIT)
async def logout(request: Request):
    """Destroy the session; the middleware clears the cookie"""
    security = get_security()
    handle = request.state.session
    await security.csrf.revoke(handle.session)
    await security.sessions.destroy(handle)
    security.logger("security").info(
        "User logged out",
        {"user_id": handle.session.user_id},
        request.state.request_context,
    )
    request.state.session = None
    return {"status": "logged_out"}


@app.get("/admin/logs/search", response_model=List[LogEntry], dependencies=[Depends(verify_api_key)])
@limiter.limit(GLOBAL_LIMIT)
async def search_logs(
    request: Request,
    q: str = "",
    channel: str = Query("security", pattern=CHANNEL_PATTERN),
    level: Optional[str] = None,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: int = Query(100, ge=1, le=1000),
):
    try:
        audit = get_security().logger(channel)
        results = await asyncio.to_thread(audit.search, q, level, start, end)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=get_safe_error_message(e, "search_logs"))
    return results[:limit]


@app.get("/admin/logs/stats", response_model=LogStats, dependencies=[Depends(verify_api_key)])
@limiter.limit(GLOBAL_LIMIT)
async def log_stats(
    request: Request,
    channel: str = Query("security", pattern=CHANNEL_PATTERN),
    days: int = Query(7, ge=1, le=365),
    top: int = Query(10, ge=1, le=100),
):
    audit = get_security().logger(channel)
    return await asyncio.to_thread(audit.stats, days, top)


@app.get("/admin/incidents", response_model=List[Incident], dependencies=[Depends(verify_api_key)])
@limiter.limit(GLOBAL_LIMIT)
async def list_incidents(request: Request, status: Optional[str] = None):
    return await asyncio.to_thread(get_security().escalator.list_incidents, status)


@app.get("/admin/metrics", dependencies=[Depends(verify_api_key)])
async def metrics() -> Dict[str, Any]:
    return get_security().get_metrics()


# Main entry point
if __name__ == "__main__":
    import os
    import uvicorn

    port = int(os.getenv("PORT", "8000"))
    logger.info(f"Starting server on port {port}...")
    uvicorn.run(app, host="0.0.0.0", port=port, log_level="info")
