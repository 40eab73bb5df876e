"""
Agency invitation model.

Invitations let owners and managers bring new members into an agency. The
plaintext token is returned once to the inviter; only its sha256 hash is
stored. Owners cannot be invited, only promoted.
"""

import enum

from sqlalchemy import Column, String, DateTime, ForeignKey, Index

from agencydesk.db_base import Base
from agencydesk.models.base import generate_uuid, utcnow, as_utc


class InvitationStatus(str, enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    REVOKED = "revoked"


class AgencyInvitation(Base):
    __tablename__ = "agency_invitations"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    agency_id = Column(
        String(36),
        ForeignKey("agencies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    email = Column(String(255), nullable=True)
    role = Column(String(20), nullable=False)
    token_hash = Column(String(64), nullable=False, unique=True)
    status = Column(String(20), nullable=False, default=InvitationStatus.PENDING.value)
    invited_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    accepted_by = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_agency_invitations_agency_status", "agency_id", "status"),
    )

    @property
    def is_expired(self) -> bool:
        return as_utc(self.expires_at) <= utcnow()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "agency_id": self.agency_id,
            "email": self.email,
            "role": self.role,
            "status": self.status,
            "invited_by": self.invited_by,
            "expires_at": as_utc(self.expires_at).isoformat(),
            "accepted_at": as_utc(self.accepted_at).isoformat() if self.accepted_at else None,
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
        }
