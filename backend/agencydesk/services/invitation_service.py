"""
Agency invitations: create, list, revoke and accept.

The plaintext token is returned once, to the inviter; only its sha256 hash
is stored. Managers may invite staff; only owners may invite managers.
Owners are never invited, only promoted.
"""

import hashlib
import logging
import re
import secrets
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from agencydesk.auth.agency_context import AgencyAuthContext
from agencydesk.constants.permissions import AgencyRole, MemberStatus
from agencydesk.models.agency import Agency
from agencydesk.models.agency_invitation import AgencyInvitation, InvitationStatus
from agencydesk.models.agency_member import AgencyMember
from agencydesk.models.base import utcnow
from agencydesk.models.user import User
from agencydesk.platform.activity import ActivityAction, safe_log_activity
from agencydesk.platform.errors import (
    ConflictError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    ValidationError,
)
from agencydesk.services.members_service import count_member_slots

logger = logging.getLogger(__name__)

INVITABLE_ROLES = (AgencyRole.MANAGER, AgencyRole.STAFF)
DEFAULT_EXPIRY_DAYS = 7
MAX_EXPIRY_DAYS = 30

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")
TOKEN_PATTERN = re.compile(r"^[a-f0-9]{64}$")


def hash_invitation_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def is_valid_email(email: str) -> bool:
    return bool(EMAIL_PATTERN.match(email))


class InvitationService:
    """Invitation management for the caller's agency."""

    def __init__(self, session: Session, ctx: AgencyAuthContext):
        self.session = session
        self.ctx = ctx

    def list_invitations(self) -> list[dict]:
        invitations = (
            self.session.query(AgencyInvitation)
            .filter(AgencyInvitation.agency_id == self.ctx.agency_id)
            .order_by(AgencyInvitation.created_at.desc(), AgencyInvitation.id.asc())
            .all()
        )
        return [i.to_dict() for i in invitations]

    def create_invitation(
        self,
        role: AgencyRole,
        email: Optional[str] = None,
        expires_in_days: Optional[int] = None,
    ) -> tuple[AgencyInvitation, str]:
        """
        Create a pending invitation. Returns (invitation, plaintext token).

        expires_in_days outside 1..30 falls back to the 7 day default.
        """
        role = AgencyRole(role)
        if role not in INVITABLE_ROLES:
            raise ValidationError('Role must be "manager" or "staff"')
        if role == AgencyRole.MANAGER and not self.ctx.is_owner:
            raise ForbiddenError("Only agency owners can invite managers")

        email = email.strip().lower() if email else None
        if email and not is_valid_email(email):
            raise ValidationError("Invalid email format")

        agency = self.session.query(Agency).filter(Agency.id == self.ctx.agency_id).first()
        if agency is None:
            raise NotFoundError("Agency not found")
        if count_member_slots(self.session, agency.id) >= agency.max_users:
            raise ForbiddenError(
                f"Agency has reached its maximum of {agency.max_users} users. "
                "Upgrade your plan or remove existing members."
            )

        if email:
            existing = (
                self.session.query(AgencyInvitation.id)
                .filter(
                    AgencyInvitation.agency_id == agency.id,
                    AgencyInvitation.email == email,
                    AgencyInvitation.status == InvitationStatus.PENDING.value,
                )
                .first()
            )
            if existing is not None:
                raise ConflictError("A pending invitation already exists for this email address")

        if not expires_in_days or not 0 < expires_in_days <= MAX_EXPIRY_DAYS:
            expires_in_days = DEFAULT_EXPIRY_DAYS

        token = secrets.token_hex(32)
        invitation = AgencyInvitation(
            agency_id=agency.id,
            email=email,
            role=role.value,
            token_hash=hash_invitation_token(token),
            status=InvitationStatus.PENDING.value,
            invited_by=self.ctx.user_id,
            expires_at=utcnow() + timedelta(days=expires_in_days),
        )
        self.session.add(invitation)
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(
                "Failed to create invitation",
                extra={"agency_id": agency.id, "error": str(e)},
            )
            raise InternalError("Failed to create invitation")
        self.session.refresh(invitation)

        safe_log_activity(
            self.session,
            ActivityAction.INVITATION_CREATED,
            user_name=self.ctx.user_name,
            agency_id=agency.id,
            details={"email": email, "role": role.value, "invitation_id": invitation.id},
        )
        logger.info(
            "Invitation created",
            extra={
                "agency_id": agency.id,
                "invitation_id": invitation.id,
                "role": role.value,
                "invited_by": self.ctx.user_name,
            },
        )
        return invitation, token

    def revoke_invitation(self, invitation_id: str) -> AgencyInvitation:
        invitation = (
            self.session.query(AgencyInvitation)
            .filter(
                AgencyInvitation.id == invitation_id,
                AgencyInvitation.agency_id == self.ctx.agency_id,
            )
            .first()
        )
        if invitation is None:
            raise NotFoundError("Invitation not found")
        if invitation.status != InvitationStatus.PENDING.value:
            raise ValidationError("Only pending invitations can be revoked")

        invitation.status = InvitationStatus.REVOKED.value
        self.session.commit()
        logger.info(
            "Invitation revoked",
            extra={"agency_id": self.ctx.agency_id, "invitation_id": invitation_id},
        )
        return invitation


def find_pending_invitation(session: Session, token: str) -> AgencyInvitation:
    """
    Look up an acceptable invitation by its plaintext token.

    Raises ValidationError for malformed, unknown, used or expired tokens.
    """
    if not token or not TOKEN_PATTERN.match(token):
        raise ValidationError("Invalid token format")

    invitation = (
        session.query(AgencyInvitation)
        .filter(AgencyInvitation.token_hash == hash_invitation_token(token))
        .first()
    )
    if invitation is None:
        raise ValidationError("Invalid invitation token")
    if invitation.status == InvitationStatus.ACCEPTED.value:
        raise ValidationError("This invitation has already been accepted")
    if invitation.status != InvitationStatus.PENDING.value:
        raise ValidationError("This invitation is no longer valid")
    if invitation.is_expired:
        raise ValidationError("This invitation has expired")
    return invitation


def accept_invitation(session: Session, invitation: AgencyInvitation, user: User) -> Agency:
    """
    Turn a pending invitation into an active membership for user.

    Runs on the service tier: the caller is not yet a member of the agency.
    """
    agency = session.query(Agency).filter(Agency.id == invitation.agency_id).first()
    if agency is None or not agency.is_active:
        raise ValidationError("The agency associated with this invitation is no longer active")

    existing = (
        session.query(AgencyMember)
        .filter(AgencyMember.user_id == user.id, AgencyMember.agency_id == agency.id)
        .first()
    )
    if existing is not None:
        if existing.status == MemberStatus.ACTIVE.value:
            raise ConflictError("You are already a member of this agency")
        if existing.status == MemberStatus.REVOKED.value:
            raise ForbiddenError(
                "Your membership in this agency has been revoked. Contact the agency owner."
            )
        existing.status = MemberStatus.ACTIVE.value
    else:
        has_membership = (
            session.query(AgencyMember.id).filter(AgencyMember.user_id == user.id).first()
            is not None
        )
        session.add(AgencyMember.create(
            user_id=user.id,
            agency_id=agency.id,
            role=AgencyRole(invitation.role),
            is_default_agency=not has_membership,
        ))

    invitation.status = InvitationStatus.ACCEPTED.value
    invitation.accepted_at = utcnow()
    invitation.accepted_by = user.id
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        raise ConflictError("You are already a member of this agency")
    except SQLAlchemyError as e:
        session.rollback()
        logger.error(
            "Failed to accept invitation",
            extra={"invitation_id": invitation.id, "user_id": user.id, "error": str(e)},
        )
        raise InternalError("Failed to join agency")

    safe_log_activity(
        session,
        ActivityAction.INVITATION_ACCEPTED,
        user_name=user.name,
        agency_id=agency.id,
        details={"agency_name": agency.name, "role": invitation.role},
    )
    logger.info(
        "Invitation accepted",
        extra={
            "user_id": user.id,
            "agency_id": agency.id,
            "role": invitation.role,
        },
    )
    return agency
