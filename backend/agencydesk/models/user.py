"""
User (identity) model.

A user is identified by a human-chosen display name that is unique across the
whole system, plus an internal id. Agency membership lives in AgencyMember;
the system-level role here is independent of any agency role.

SECURITY:
- credential_hash is a passlib hash, never the raw PIN
- global_role "super_admin" grants owner access to every active agency
"""

from sqlalchemy import Column, String
from sqlalchemy.orm import relationship

from agencydesk.db_base import Base
from agencydesk.models.base import TimestampMixin, generate_uuid
from agencydesk.constants.permissions import SystemRole


class User(Base, TimestampMixin):
    """Caller identity."""

    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_uuid)

    name = Column(
        String(100),
        nullable=False,
        unique=True,
        comment="Unique display name used for login and attribution"
    )

    role = Column(
        String(20),
        nullable=False,
        default=SystemRole.USER.value,
        comment="System-level role: owner, admin, user"
    )

    global_role = Column(
        String(20),
        nullable=True,
        comment="Platform role (super_admin) or NULL"
    )

    credential_hash = Column(String(255), nullable=False)
    color = Column(String(7), nullable=True)
    email = Column(String(255), nullable=True)

    memberships = relationship(
        "AgencyMember",
        back_populates="user",
        cascade="all, delete-orphan",
        lazy="select",
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, name={self.name})>"
