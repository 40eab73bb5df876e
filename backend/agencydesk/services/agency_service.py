"""
Agency Service for creating and listing agencies.

Any authenticated user may create an agency and becomes its owner. Creation
is two writes (agency, then owner membership); if the membership insert
fails the agency is deleted again, and a failed compensation is logged as a
CRITICAL orphaned agency.
"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agencydesk.auth.agency_context import get_user_agencies
from agencydesk.auth.session_validator import SessionIdentity
from agencydesk.constants.permissions import (
    AgencyRole,
    DEFAULT_SUBSCRIPTION_TIER,
    SUBSCRIPTION_LIMITS,
    SLUG_MAX_LENGTH,
    generate_agency_slug,
    is_valid_slug,
)
from agencydesk.models.agency import Agency, DEFAULT_PRIMARY_COLOR, DEFAULT_SECONDARY_COLOR
from agencydesk.models.agency_member import AgencyMember
from agencydesk.platform.activity import ActivityAction, safe_log_activity
from agencydesk.platform.errors import ConflictError, InternalError, ValidationError

logger = logging.getLogger(__name__)


class AgencyService:
    """Agency creation and listing for an authenticated user."""

    def __init__(self, session: Session):
        self.session = session

    def list_for_user(self, identity: SessionIdentity) -> list[dict]:
        agencies = get_user_agencies(self.session, identity.user_id)
        logger.info(
            "Listed user agencies",
            extra={"user_id": identity.user_id, "count": len(agencies)},
        )
        return agencies

    def create_agency(
        self,
        identity: SessionIdentity,
        name: str,
        slug: Optional[str] = None,
        logo_url: Optional[str] = None,
        primary_color: Optional[str] = None,
        secondary_color: Optional[str] = None,
    ) -> Agency:
        """
        Create an agency with the caller as its owner.

        Raises:
            ValidationError: empty name or malformed slug
            ConflictError: slug already taken
            InternalError: agency or owner membership could not be written
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Agency name is required")

        slug = slug or generate_agency_slug(name)
        if not 1 <= len(slug) <= SLUG_MAX_LENGTH:
            raise ValidationError(f"Slug must be between 1 and {SLUG_MAX_LENGTH} characters")
        if not is_valid_slug(slug):
            raise ValidationError(
                "Slug must be lowercase alphanumeric with hyphens only "
                "(no leading/trailing hyphens)"
            )

        if self.session.query(Agency.id).filter(Agency.slug == slug).first() is not None:
            raise ConflictError(
                "An agency with this name already exists. Please choose a different name."
            )

        limits = SUBSCRIPTION_LIMITS[DEFAULT_SUBSCRIPTION_TIER]
        agency = Agency(
            name=name,
            slug=slug,
            logo_url=logo_url,
            primary_color=primary_color or DEFAULT_PRIMARY_COLOR,
            secondary_color=secondary_color or DEFAULT_SECONDARY_COLOR,
            subscription_tier=DEFAULT_SUBSCRIPTION_TIER.value,
            max_users=limits["users"],
            max_storage_mb=limits["storage_mb"],
            is_active=True,
        )
        self.session.add(agency)
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error("Failed to create agency", extra={"slug": slug, "error": str(e)})
            if self.session.query(Agency.id).filter(Agency.slug == slug).first() is not None:
                raise ConflictError(
                    "An agency with this name already exists. Please choose a different name."
                )
            raise InternalError("Failed to create agency")

        try:
            self._add_owner(agency.id, identity.user_id)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(
                "Failed to assign creator as owner",
                extra={"agency_id": agency.id, "user_id": identity.user_id, "error": str(e)},
            )
            self._compensate(agency.id)
            raise InternalError("Failed to assign owner to agency")

        safe_log_activity(
            self.session,
            ActivityAction.AGENCY_CREATED,
            user_name=identity.user_name,
            agency_id=agency.id,
            details={"agency_name": agency.name, "agency_slug": agency.slug},
        )
        logger.info(
            "Agency created",
            extra={"agency_id": agency.id, "slug": agency.slug, "owner_id": identity.user_id},
        )
        return agency

    def _add_owner(self, agency_id: str, user_id: str) -> None:
        # Keep the creator's existing default agency
        self.session.add(AgencyMember.create(
            user_id=user_id,
            agency_id=agency_id,
            role=AgencyRole.OWNER,
            is_default_agency=False,
        ))
        self.session.commit()

    def _compensate(self, agency_id: str) -> None:
        try:
            deleted = (
                self.session.query(Agency)
                .filter(Agency.id == agency_id)
                .delete(synchronize_session=False)
            )
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.critical(
                "Failed to roll back agency creation - orphaned agency",
                extra={"agency_id": agency_id, "error": str(e)},
            )
            return

        if deleted == 0:
            logger.critical(
                "Failed to roll back agency creation - orphaned agency",
                extra={"agency_id": agency_id, "error": "agency row not found"},
            )
        else:
            logger.warning("Agency creation rolled back", extra={"agency_id": agency_id})
