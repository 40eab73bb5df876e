"""
Base mixins for database models.

Provides common functionality:
- TimestampMixin: created_at, updated_at timestamps
- AgencyScopedMixin: agency_id for multi-tenant isolation
- generate_uuid: UUID generation for primary keys
- utcnow / as_utc: timezone-aware timestamp helpers
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, String, DateTime, ForeignKey, func
from sqlalchemy.orm import declared_attr


def generate_uuid() -> str:
    """Generate a UUID4 string for use as a primary key default."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Return a timezone-aware UTC datetime.

    SQLite drops tzinfo on round trip; stored values are always UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class TimestampMixin:
    """Mixin that adds created_at and updated_at timestamp columns."""

    created_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        comment="Timestamp when record was created"
    )

    updated_at = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        comment="Timestamp when record was last updated"
    )


class AgencyScopedMixin:
    """
    Mixin that adds agency_id column for multi-tenant isolation.

    SECURITY: agency_id is ONLY taken from the resolved AgencyAuthContext.
    NEVER accept agency_id from client input (body/query).
    Nullable so legacy single-tenant deployments can store rows without an agency.
    """

    @declared_attr
    def agency_id(cls):
        return Column(
            String(36),
            ForeignKey("agencies.id", ondelete="CASCADE"),
            nullable=True,
            index=True,
            comment="Owning agency. From resolved context, never from client input."
        )
