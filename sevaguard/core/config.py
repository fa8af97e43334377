# sevaguard/core/config.py
import logging
from typing import Any, List, Optional
from pydantic import Field
from pydantic_settings import BaseSettings

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings for the security core"""
    APP_NAME: str = "SevaGuard"
    ENV: str = "production"
    DEBUG: bool = False

    # Secrets
    APP_SECRET: Optional[str] = Field(default=None)
    ENCRYPTION_KEY: Optional[str] = Field(default=None)
    ADMIN_API_KEY: Optional[str] = Field(default=None)

    # Alerting
    ADMIN_EMAIL: str = "admin@sadgurubharadwaja.org"
    ALERT_SENDER: str = "alerts@sadgurubharadwaja.org"
    ALERT_WEBHOOK_URL: Optional[str] = None
    ALERT_TIMEOUT: float = 5.0
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USERNAME: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_USE_TLS: bool = True

    # Sessions
    SESSION_COOKIE_NAME: str = "SSFSESSID"
    SESSION_TIMEOUT: int = 3600
    SESSION_ROTATION_INTERVAL: int = 1800

    # CSRF
    CSRF_TOKEN_TTL: int = 3600

    # Rate limiting
    RATE_LIMIT_MAX_REQUESTS: int = 5
    RATE_LIMIT_WINDOW: int = 300
    RATE_LIMIT_SWEEP_AGE: int = 3600

    # Audit log
    LOG_DIR: str = "logs"
    LOG_LEVEL: str = "INFO"
    LOG_MAX_FILE_SIZE: int = 10 * 1024 * 1024  # 10 MB
    LOG_MAX_FILES: int = 10

    # Shared state (optional, in-memory when unset)
    REDIS_URL: Optional[str] = None

    ALLOWED_ORIGINS: List[str] = Field(default_factory=lambda: [
        "https://sadgurubharadwaja.org",
        "https://www.sadgurubharadwaja.org",
    ])

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "case_sensitive": False,
        "extra": "ignore"
    }

    @property
    def is_production(self) -> bool:
        return self.ENV.lower() == "production"


# Settings singleton
settings = Settings()


def get_config(key: str, default: Any = None, current: Optional[Settings] = None) -> Any:
    """Single setting by name, case-insensitive; `default` when unknown or unset"""
    value = getattr(current or settings, key.upper(), None)
    return default if value is None else value


def validate_required_settings(current: Optional[Settings] = None) -> bool:
    """Check that secrets are present; warn instead of failing startup"""
    current = current or settings
    missing = []

    if not current.APP_SECRET:
        missing.append("APP_SECRET")

    if not current.ENCRYPTION_KEY:
        missing.append("ENCRYPTION_KEY")

    if not current.ADMIN_API_KEY:
        missing.append("ADMIN_API_KEY")

    if missing:
        logger.warning(f"Missing environment variables: {', '.join(missing)}")
        logger.warning("Signed tokens, payload encryption or admin endpoints may not work.")
        return False

    return True
