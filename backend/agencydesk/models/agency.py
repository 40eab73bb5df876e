"""
Agency (tenant) model.

An agency is the organizational boundary every tenant-scoped resource belongs
to. Agency.id is the agency_id carried by todos, reminders, messages and the
activity log.

SECURITY: agency_id used in queries is ONLY taken from the resolved
AgencyAuthContext, never from client input.
"""

from sqlalchemy import Column, String, Boolean, Integer
from sqlalchemy.orm import relationship

from agencydesk.db_base import Base
from agencydesk.models.base import TimestampMixin, generate_uuid
from agencydesk.constants.permissions import (
    DEFAULT_SUBSCRIPTION_TIER,
    SUBSCRIPTION_LIMITS,
)

DEFAULT_PRIMARY_COLOR = "#0033A0"
DEFAULT_SECONDARY_COLOR = "#72B5E8"


class Agency(Base, TimestampMixin):
    """Tenant boundary."""

    __tablename__ = "agencies"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)

    slug = Column(
        String(50),
        nullable=False,
        unique=True,
        index=True,
        comment="URL-friendly identifier (e.g., 'smith-insurance')"
    )

    logo_url = Column(String(2048), nullable=True)
    primary_color = Column(String(7), nullable=False, default=DEFAULT_PRIMARY_COLOR)
    secondary_color = Column(String(7), nullable=False, default=DEFAULT_SECONDARY_COLOR)

    subscription_tier = Column(
        String(20),
        nullable=False,
        default=DEFAULT_SUBSCRIPTION_TIER.value,
        comment="starter, professional, enterprise"
    )
    max_users = Column(
        Integer,
        nullable=False,
        default=SUBSCRIPTION_LIMITS[DEFAULT_SUBSCRIPTION_TIER]["users"],
    )
    max_storage_mb = Column(
        Integer,
        nullable=False,
        default=SUBSCRIPTION_LIMITS[DEFAULT_SUBSCRIPTION_TIER]["storage_mb"],
    )

    is_active = Column(Boolean, nullable=False, default=True, index=True)

    members = relationship(
        "AgencyMember",
        back_populates="agency",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "slug": self.slug,
            "logo_url": self.logo_url,
            "primary_color": self.primary_color,
            "secondary_color": self.secondary_color,
            "subscription_tier": self.subscription_tier,
            "max_users": self.max_users,
            "max_storage_mb": self.max_storage_mb,
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<Agency(id={self.id}, slug={self.slug})>"
