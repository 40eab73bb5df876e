"""
AgencyMember model: the join between users and agencies.

This is the row the authorization layer consults on every request. It holds
the member's role, status and effective permission set (role defaults plus
per-member overrides).

Invariants:
- (user_id, agency_id) is unique
- every agency keeps at least one active owner (enforced atomically by
  AgencyMembersService, see services/members_service.py)
"""

from sqlalchemy import (
    Column,
    String,
    Boolean,
    ForeignKey,
    Index,
    UniqueConstraint,
    JSON,
)
from sqlalchemy.orm import relationship

from agencydesk.db_base import Base
from agencydesk.models.base import TimestampMixin, generate_uuid
from agencydesk.constants.permissions import (
    AgencyRole,
    MemberStatus,
    get_default_permissions,
)


class AgencyMember(Base, TimestampMixin):
    __tablename__ = "agency_members"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    user_id = Column(
        String(36),
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    agency_id = Column(
        String(36),
        ForeignKey("agencies.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    role = Column(String(20), nullable=False, default=AgencyRole.STAFF.value)
    status = Column(String(20), nullable=False, default=MemberStatus.ACTIVE.value)

    permissions = Column(
        JSON,
        nullable=False,
        comment="Effective permission flags (role defaults + overrides)"
    )

    is_default_agency = Column(Boolean, nullable=False, default=False)

    user = relationship("User", back_populates="memberships", lazy="joined")
    agency = relationship("Agency", back_populates="members", lazy="joined")

    __table_args__ = (
        UniqueConstraint("user_id", "agency_id", name="uq_agency_members_user_agency"),
        Index("ix_agency_members_agency_role", "agency_id", "role", "status"),
    )

    @classmethod
    def create(
        cls,
        user_id: str,
        agency_id: str,
        role: AgencyRole,
        is_default_agency: bool = False,
    ) -> "AgencyMember":
        """Create an active membership carrying the role's default permissions."""
        return cls(
            user_id=user_id,
            agency_id=agency_id,
            role=AgencyRole(role).value,
            status=MemberStatus.ACTIVE.value,
            permissions=get_default_permissions(role),
            is_default_agency=is_default_agency,
        )

    @property
    def is_active_owner(self) -> bool:
        return self.role == AgencyRole.OWNER.value and self.status == MemberStatus.ACTIVE.value

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "user_name": self.user.name if self.user else None,
            "user_color": self.user.color if self.user else None,
            "global_role": self.user.global_role if self.user else None,
            "agency_role": self.role,
            "status": self.status,
            "permissions": dict(self.permissions or {}),
            "is_default_agency": self.is_default_agency,
            "joined_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<AgencyMember(user_id={self.user_id}, agency_id={self.agency_id}, role={self.role})>"
