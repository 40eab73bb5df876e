"""
Registration, login, logout and agency switching.

All operations run on the service tier: users and user_sessions are not
reachable through the public (RLS) tier.

SECURITY:
- Login failures return the same "Invalid credentials" message whether the
  name or the PIN was wrong, and record an auth_failure security event
- Repeated failures from one IP or against one name lock login out with
  exponential backoff (see auth.login_lockout)
- Switching agency requires an active membership in an active agency
  (or super_admin); the new agency is stored on the session row
"""

import logging
import random
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastapi import Request
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from agencydesk.auth.credentials import hash_pin, is_valid_pin_format, is_weak_pin, verify_pin
from agencydesk.auth.login_lockout import LoginLockout
from agencydesk.auth.session_validator import (
    SessionIdentity,
    create_session,
    hash_session_token,
    invalidate_session,
)
from agencydesk.config import Settings
from agencydesk.constants.permissions import SUPER_ADMIN, MemberStatus, SystemRole
from agencydesk.models.agency import Agency
from agencydesk.models.agency_member import AgencyMember
from agencydesk.models.user import User
from agencydesk.models.user_session import UserSession
from agencydesk.platform.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    TooManyRequestsError,
    ValidationError,
)
from agencydesk.platform.security_monitor import (
    SecurityEventType,
    SecurityMonitor,
    SecuritySeverity,
    client_ip,
)
from agencydesk.services.agency_service import AgencyService
from agencydesk.services.invitation_service import (
    accept_invitation,
    find_pending_invitation,
    is_valid_email,
)

logger = logging.getLogger(__name__)

NAME_MAX_LENGTH = 100

USER_COLORS = (
    "#0033A0", "#72B5E8", "#C9A227", "#003D7A",
    "#6E8AA7", "#5BA8A0", "#E87722", "#98579B",
)


@dataclass
class AuthResult:
    user: User
    token: str
    expires_at: datetime
    agency: Optional[Agency] = None
    agency_role: Optional[str] = None

    def to_dict(self) -> dict:
        data = {
            "user": {
                "id": self.user.id,
                "name": self.user.name,
                "color": self.user.color,
                "role": self.user.role,
            },
            "expires_at": self.expires_at.isoformat(),
        }
        if self.agency is not None:
            data["agency"] = {
                "id": self.agency.id,
                "name": self.agency.name,
                "slug": self.agency.slug,
            }
            data["role"] = self.agency_role
        return data


class AuthService:
    """Identity lifecycle on the service tier."""

    def __init__(
        self,
        session: Session,
        settings: Settings,
        monitor: SecurityMonitor,
        request: Optional[Request] = None,
    ):
        self.session = session
        self.settings = settings
        self.monitor = monitor
        self.request = request

    def _client(self) -> tuple[Optional[str], Optional[str]]:
        if self.request is None:
            return None, None
        return client_ip(self.request), self.request.headers.get("user-agent")

    def start_session(self, user: User, agency_id: Optional[str]) -> tuple[str, datetime]:
        ip_address, user_agent = self._client()
        try:
            return create_session(self.session, user, self.settings, ip_address, user_agent, agency_id)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error("Failed to create session", extra={"user_id": user.id, "error": str(e)})
            raise InternalError("Failed to create session")

    # ------------------------------------------------------------------
    # Register
    # ------------------------------------------------------------------

    def create_user(self, name: str, pin: str, email: Optional[str] = None) -> User:
        """
        Create a user after validating name, PIN and email.

        Raises:
            ValidationError: bad name, PIN format, weak PIN or email
            ConflictError: name already taken
        """
        name = (name or "").strip()
        if not name:
            raise ValidationError("Name is required")
        if len(name) > NAME_MAX_LENGTH:
            raise ValidationError(f"Name must be {NAME_MAX_LENGTH} characters or fewer")
        if not is_valid_pin_format(pin):
            raise ValidationError("PIN must be exactly 4 digits")
        if is_weak_pin(pin):
            raise ValidationError("PIN is too common. Please choose a less predictable PIN.")
        if email and not is_valid_email(email):
            raise ValidationError("Invalid email format")

        if self.session.query(User.id).filter(User.name == name).first() is not None:
            raise ConflictError("A user with this name already exists")

        user = User(
            name=name,
            credential_hash=hash_pin(pin),
            color=random.choice(USER_COLORS),
            role=SystemRole.USER.value,
            email=email.lower() if email else None,
        )
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise ConflictError("A user with this name already exists")
        self.session.refresh(user)
        logger.info("User registered", extra={"user_id": user.id})
        return user

    def register(
        self,
        name: str,
        pin: str,
        email: Optional[str] = None,
        invitation_token: Optional[str] = None,
        create_agency: Optional[dict] = None,
    ) -> AuthResult:
        """
        Register a user and sign them in.

        Optionally accepts an invitation or creates a new agency (not both).
        """
        if invitation_token and create_agency:
            raise ValidationError(
                "Cannot accept an invitation and create an agency at the same time"
            )

        invitation = None
        if invitation_token:
            invitation = find_pending_invitation(self.session, invitation_token)
            if invitation.email and email and invitation.email.lower() != email.lower():
                raise ValidationError("Email does not match the invitation")

        user = self.create_user(name, pin, email)

        agency = None
        agency_role = None
        if invitation is not None:
            agency = accept_invitation(self.session, invitation, user)
            agency_role = invitation.role
        elif create_agency:
            identity = SessionIdentity(user_id=user.id, user_name=user.name, user_role=user.role)
            agency = AgencyService(self.session).create_agency(
                identity,
                name=create_agency.get("name"),
                slug=create_agency.get("slug"),
                primary_color=create_agency.get("primary_color"),
            )
            agency_role = "owner"

        token, expires_at = self.start_session(user, agency.id if agency else None)
        return AuthResult(user, token, expires_at, agency, agency_role)

    # ------------------------------------------------------------------
    # Login / logout
    # ------------------------------------------------------------------

    def login(self, name: str, pin: str) -> AuthResult:
        if not name or not is_valid_pin_format(pin):
            raise ValidationError("Name and a 4-digit PIN are required")

        ip_address = client_ip(self.request)
        lockout = LoginLockout(self.session)
        lockout_status = lockout.check(ip_address, name)
        if not lockout_status.allowed:
            logger.warning(
                "Login rejected - locked out",
                extra={"ip_address": ip_address, "user_name": name, "failures": lockout_status.failures},
            )
            raise TooManyRequestsError(
                f"Too many failed attempts. Try again in {lockout_status.retry_after} seconds.",
                retry_after=lockout_status.retry_after,
            )

        user = self.session.query(User).filter(User.name == name.strip()).first()
        if user is None or not verify_pin(pin, user.credential_hash):
            self.monitor.record_event(
                SecurityEventType.AUTH_FAILURE,
                SecuritySeverity.MEDIUM,
                request=self.request,
                user_id=user.id if user else None,
                user_name=name,
                details={"reason": "unknown user" if user is None else "wrong pin"},
            )
            raise AuthenticationError("Invalid credentials")

        if lockout_status.failures:
            lockout.resolve(ip_address, name)
        token, expires_at = self.start_session(user, self._default_agency_id(user.id))
        logger.info("User logged in", extra={"user_id": user.id})
        return AuthResult(user, token, expires_at)

    def logout(self, token: Optional[str]) -> bool:
        if not token:
            return False
        return invalidate_session(self.session, hash_session_token(token))

    def _default_agency_id(self, user_id: str) -> Optional[str]:
        membership = (
            self.session.query(AgencyMember)
            .filter(
                AgencyMember.user_id == user_id,
                AgencyMember.status == MemberStatus.ACTIVE.value,
            )
            .order_by(AgencyMember.is_default_agency.desc(), AgencyMember.created_at.asc())
            .first()
        )
        return membership.agency_id if membership else None

    # ------------------------------------------------------------------
    # Agency switching
    # ------------------------------------------------------------------

    def switch_agency(self, identity: SessionIdentity, agency_id: str) -> Agency:
        """
        Store agency_id as the session's current agency.

        Raises:
            ValidationError: service-key callers have no session to update
            NotFoundError: agency missing or inactive
            ForbiddenError: no active membership
        """
        if identity.session_id is None:
            raise ValidationError("Agency switching requires a session")

        agency = (
            self.session.query(Agency)
            .filter(Agency.id == agency_id, Agency.is_active.is_(True))
            .first()
        )
        if agency is None:
            raise NotFoundError("Agency not found")

        if identity.global_role != SUPER_ADMIN:
            membership = (
                self.session.query(AgencyMember)
                .filter(
                    AgencyMember.user_id == identity.user_id,
                    AgencyMember.agency_id == agency_id,
                    AgencyMember.status == MemberStatus.ACTIVE.value,
                )
                .first()
            )
            if membership is None:
                self.monitor.record_event(
                    SecurityEventType.ACCESS_DENIED,
                    SecuritySeverity.MEDIUM,
                    request=self.request,
                    user_id=identity.user_id,
                    user_name=identity.user_name,
                    agency_id=agency_id,
                    details={"reason": "switch to agency without membership"},
                )
                raise ForbiddenError("Access denied")

        self.session.query(UserSession).filter(UserSession.id == identity.session_id).update(
            {UserSession.current_agency_id: agency.id},
            synchronize_session=False,
        )
        self.session.commit()
        logger.info(
            "Switched agency",
            extra={"user_id": identity.user_id, "agency_id": agency.id},
        )
        return agency
