"""
Database engines and session management.

Two connection tiers:
- public: DATABASE_URL. Used by handlers for tenant-scoped data queries, with
  RLS session variables set per request.
- service: DATABASE_SERVICE_URL. Elevated tier for session validation, agency
  context resolution, security events and cross-tenant jobs. Falls back to
  the public URL (with a warning) when not configured.

One Database handle is built at startup and stored on app.state; tests build
their own over an in-memory engine.

Usage:
    from agencydesk.database.session import get_db_session

    @router.get("/items")
    async def get_items(request: Request, db: Session = Depends(get_db_session)):
        return db.query(Item).all()
"""

import logging
from contextlib import contextmanager
from typing import Generator, Iterator, Optional

from fastapi import HTTPException, Request, status
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import QueuePool

from agencydesk.config import Settings

logger = logging.getLogger(__name__)


class DatabaseNotConfiguredError(RuntimeError):
    """Raised when a session is requested but no database URL is set."""
    pass


def _create_engine(database_url: str) -> Engine:
    """
    Create an engine with connection pooling.

    SQLite URLs (development) use the default pool; everything else uses a
    QueuePool sized for a small API process.
    """
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(
        database_url,
        poolclass=QueuePool,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=1800,
    )


class Database:
    """Application-scoped handle on both connection tiers."""

    def __init__(
        self,
        public_engine: Optional[Engine] = None,
        service_engine: Optional[Engine] = None,
    ):
        self.public_engine = public_engine
        self.service_engine = service_engine or public_engine
        self._public_factory = (
            sessionmaker(autocommit=False, autoflush=False, bind=self.public_engine)
            if self.public_engine is not None
            else None
        )
        self._service_factory = (
            sessionmaker(autocommit=False, autoflush=False, bind=self.service_engine)
            if self.service_engine is not None
            else None
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        if not settings.database_url:
            logger.warning("DATABASE_URL is not set; database routes will return 503")
            return cls()

        public_engine = _create_engine(settings.database_url)
        if settings.database_service_url:
            service_engine = _create_engine(settings.database_service_url)
        else:
            logger.warning(
                "DATABASE_SERVICE_URL is not set; service operations use the public tier"
            )
            service_engine = public_engine

        logger.info(
            "Database engines created",
            extra={"separate_service_tier": service_engine is not public_engine},
        )
        return cls(public_engine=public_engine, service_engine=service_engine)

    @property
    def is_configured(self) -> bool:
        return self._public_factory is not None

    def public_session(self) -> Session:
        if self._public_factory is None:
            raise DatabaseNotConfiguredError("Database not configured")
        return self._public_factory()

    def service_session(self) -> Session:
        if self._service_factory is None:
            raise DatabaseNotConfiguredError("Database not configured")
        return self._service_factory()

    @contextmanager
    def service_scope(self) -> Iterator[Session]:
        """Service-tier session closed on exit. Callers commit explicitly."""
        session = self.service_session()
        try:
            yield session
        finally:
            session.close()

    def dispose(self) -> None:
        if self.public_engine is not None:
            self.public_engine.dispose()
        if self.service_engine is not None and self.service_engine is not self.public_engine:
            self.service_engine.dispose()


def get_database(request: Request) -> Database:
    return request.app.state.database


def get_settings_from_request(request: Request) -> Settings:
    return request.app.state.settings


def get_db_session(request: Request) -> Generator[Session, None, None]:
    """
    FastAPI dependency for public-tier database sessions.

    Creates a new session for each request and ensures proper cleanup.
    Raises HTTP 503 if the database is not configured.
    """
    database = get_database(request)
    try:
        session = database.public_session()
    except DatabaseNotConfiguredError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Database not configured",
        )
    try:
        yield session
    finally:
        session.close()
