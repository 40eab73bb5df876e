"""
Runtime configuration for Agency Desk.

All settings are read from the environment once at process start and passed
explicitly into the components that need them (create_app, the Database
handle, resolvers, services). Nothing below reads os.environ at request time.

Environment variables:
- ENV: deployment environment (development, test, production)
- DATABASE_URL: public/RLS connection tier used for tenant-scoped handler queries
- DATABASE_SERVICE_URL: elevated connection tier for session validation,
  context resolution, security events and cross-tenant jobs
- SERVICE_API_KEY: key for service callers (X-API-Key + X-User-Name)
- CRON_SECRET: shared secret for system routes (/api/reminders/process)
- MULTI_TENANCY_ENABLED: "true" enables agency scoping, otherwise legacy mode
- FIELD_ENCRYPTION_KEY: master key for notes/transcription encryption
- SECURITY_WEBHOOK_URL: optional webhook for security alerts
- PUSH_NOTIFICATION_URL: optional endpoint for reminder push delivery

Usage:
    from agencydesk.config import get_settings

    settings = get_settings()
    if settings.multi_tenancy_enabled:
        ...
"""

import os
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

logger = logging.getLogger(__name__)

_TRUE_VALUES = {"1", "true", "yes", "on"}


class ConfigurationError(ValueError):
    """Raised when the environment violates a startup security invariant."""
    pass


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer")


def _env_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def normalize_database_url(database_url: Optional[str]) -> Optional[str]:
    """
    Normalize a database URL for SQLAlchemy.

    Handles the postgres:// URL format by converting to postgresql://.
    """
    if not database_url:
        return None
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return database_url


@dataclass(frozen=True)
class Settings:
    """Immutable application settings."""

    env: str = "development"
    database_url: Optional[str] = None
    database_service_url: Optional[str] = None
    service_api_key: Optional[str] = None
    cron_secret: Optional[str] = None
    multi_tenancy_enabled: bool = False
    field_encryption_key: Optional[str] = None
    security_webhook_url: Optional[str] = None
    push_notification_url: Optional[str] = None
    session_ttl_hours: int = 8
    session_idle_timeout_minutes: int = 30
    default_page_size: int = 50
    max_page_size: int = 100
    reminder_window_minutes: int = 5
    cookie_secure: bool = True
    cors_origins: tuple[str, ...] = ()

    def __post_init__(self):
        if self.default_page_size < 1 or self.max_page_size < 1:
            raise ConfigurationError("Page sizes must be positive")
        if self.default_page_size > self.max_page_size:
            raise ConfigurationError("DEFAULT_PAGE_SIZE cannot exceed MAX_PAGE_SIZE")

        if self.is_production:
            if not self.field_encryption_key:
                raise ConfigurationError(
                    "FIELD_ENCRYPTION_KEY is required in production"
                )
            if not self.cron_secret:
                raise ConfigurationError("CRON_SECRET is required in production")

    @property
    def is_production(self) -> bool:
        return self.env.lower() in ("production", "prod")

    @classmethod
    def from_env(cls) -> "Settings":
        """Build settings from environment variables."""
        cors = _env_str("CORS_ORIGINS")
        return cls(
            env=_env_str("ENV") or "development",
            database_url=normalize_database_url(_env_str("DATABASE_URL")),
            database_service_url=normalize_database_url(_env_str("DATABASE_SERVICE_URL")),
            service_api_key=_env_str("SERVICE_API_KEY"),
            cron_secret=_env_str("CRON_SECRET"),
            multi_tenancy_enabled=_env_bool("MULTI_TENANCY_ENABLED"),
            field_encryption_key=_env_str("FIELD_ENCRYPTION_KEY"),
            security_webhook_url=_env_str("SECURITY_WEBHOOK_URL"),
            push_notification_url=_env_str("PUSH_NOTIFICATION_URL"),
            session_ttl_hours=_env_int("SESSION_TTL_HOURS", 8),
            session_idle_timeout_minutes=_env_int("SESSION_IDLE_TIMEOUT_MINUTES", 30),
            default_page_size=_env_int("DEFAULT_PAGE_SIZE", 50),
            max_page_size=_env_int("MAX_PAGE_SIZE", 100),
            reminder_window_minutes=_env_int("REMINDER_WINDOW_MINUTES", 5),
            cookie_secure=_env_bool("COOKIE_SECURE", default=True),
            cors_origins=tuple(o.strip() for o in cors.split(",") if o.strip()) if cors else (),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get the process-wide settings, read once from the environment."""
    settings = Settings.from_env()
    logger.info(
        "Settings loaded",
        extra={
            "env": settings.env,
            "multi_tenancy_enabled": settings.multi_tenancy_enabled,
            "database_configured": bool(settings.database_url),
            "service_tier_configured": bool(settings.database_service_url),
        },
    )
    return settings
