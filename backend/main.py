"""
FastAPI application entry point for Agency Desk.

Agency scoping is enforced per route by the decorators in
agencydesk.auth.route_auth; there is no global tenant middleware.
"""

import logging
import os
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException as StarletteHTTPException

from agencydesk.api.routes import activity, agencies, auth, health, invitations, members, reminders, todos
from agencydesk.config import Settings, get_settings
from agencydesk.database.session import Database
from agencydesk.platform.errors import ApiError, InternalError, error_response
from agencydesk.platform.field_encryption import FieldEncryptor
from agencydesk.platform.notifications import PushNotifier
from agencydesk.platform.redaction import SecretRedactingFilter
from agencydesk.platform.security_monitor import SecurityMonitor

# Configure structured logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
for _handler in logging.getLogger().handlers:
    _handler.addFilter(SecretRedactingFilter())
logger = logging.getLogger(__name__)


def _validation_message(exc: RequestValidationError) -> str:
    errors = exc.errors()
    if not errors:
        return "Invalid request"
    first = errors[0]
    location = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]
    field = ".".join(location)
    return f"{field}: {first.get('msg')}" if field else str(first.get("msg"))


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events."""
    settings: Settings = app.state.settings
    logger.info(
        "Starting Agency Desk API",
        extra={
            "env": settings.env,
            "multi_tenancy_enabled": settings.multi_tenancy_enabled,
            "database_configured": app.state.database.is_configured,
            "field_encryption_enabled": app.state.field_encryptor.enabled,
        },
    )
    if not settings.field_encryption_key:
        logger.warning("FIELD_ENCRYPTION_KEY is not set; notes and transcriptions are stored in plaintext")

    yield

    logger.info("Shutting down Agency Desk API")
    app.state.database.dispose()


def create_app(settings: Optional[Settings] = None, database: Optional[Database] = None) -> FastAPI:
    """Build the application. Tests pass their own settings and database."""
    settings = settings or get_settings()
    database = database or Database.from_settings(settings)

    app = FastAPI(
        title="Agency Desk API",
        description="Multi-tenant task management with agency-scoped authorization",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.database = database
    app.state.security_monitor = SecurityMonitor(database, settings.security_webhook_url)
    app.state.field_encryptor = FieldEncryptor(settings.field_encryption_key)
    app.state.push_notifier = PushNotifier(settings.push_notification_url)

    if settings.cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=list(settings.cors_origins),
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Health (no authentication)
    app.include_router(health.router)

    # Session-only routes
    app.include_router(auth.router)
    app.include_router(agencies.router)

    # Agency-scoped routes
    app.include_router(members.router)
    app.include_router(invitations.router)
    app.include_router(todos.router)
    app.include_router(reminders.router)
    app.include_router(activity.router)

    @app.exception_handler(ApiError)
    async def api_error_handler(request: Request, exc: ApiError):
        if exc.status_code >= 500:
            logger.error("Request failed", extra={"path": request.url.path, "error": exc.message})
        return exc.to_response()

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        return error_response(_validation_message(exc), status.HTTP_400_BAD_REQUEST, "VALIDATION_ERROR")

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        return error_response(str(exc.detail), exc.status_code)

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception):
        """Handle unhandled exceptions with proper logging."""
        logger.error(
            "Unhandled exception",
            extra={
                "error": str(exc),
                "error_type": type(exc).__name__,
                "path": request.url.path,
            },
            exc_info=True,
        )
        return InternalError().to_response()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=port,
        reload=os.getenv("ENV") == "development"
    )
