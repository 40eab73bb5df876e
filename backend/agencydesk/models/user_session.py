"""
Server-side session records.

Only the sha256 hash of the opaque session token is stored. A session carries
the agency the user is currently working in; the agency context resolver treats
it as the authoritative source of the requested agency.
"""

from sqlalchemy import Column, String, Boolean, DateTime, ForeignKey, Index, Text

from agencydesk.db_base import Base
from agencydesk.models.base import generate_uuid, utcnow


class UserSession(Base):
    __tablename__ = "user_sessions"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    token_hash = Column(String(64), nullable=False, unique=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    is_valid = Column(Boolean, nullable=False, default=True)
    last_activity = Column(DateTime(timezone=True), nullable=True, default=utcnow)
    current_agency_id = Column(
        String(36),
        ForeignKey("agencies.id", ondelete="SET NULL"),
        nullable=True,
    )
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_user_sessions_user_valid", "user_id", "is_valid"),
    )
