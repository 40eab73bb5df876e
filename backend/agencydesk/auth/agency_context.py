"""
Agency context resolution.

Turns an authenticated SessionIdentity into an AgencyAuthContext: the agency
the request operates in, the caller's role there and their effective
permission set. The context is an explicit value passed to every service and
repository; nothing is kept in globals or thread locals.

CRITICAL SECURITY REQUIREMENTS:
- agency_id comes from this resolver ONLY, never from a request body/query
- Membership must exist and be active; agency must exist and be active
- TenancyMode is decided here, once; downstream code branches on the mode,
  never on whether agency_id happens to be set

Requested agency, in order:
1. The session's current agency (authoritative)
2. X-Agency-Id header
3. current_agency_id cookie
4. The user's default membership, then any active membership
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Mapping, Optional

from fastapi import Request
from sqlalchemy.orm import Session

from agencydesk.config import Settings
from agencydesk.constants.permissions import (
    AgencyPermission,
    AgencyRole,
    MemberStatus,
    SUPER_ADMIN,
    get_default_permissions,
    has_permission,
)
from agencydesk.models.agency import Agency
from agencydesk.models.agency_member import AgencyMember
from agencydesk.platform.errors import ForbiddenError, NotFoundError, ValidationError
from agencydesk.auth.session_validator import SessionIdentity

logger = logging.getLogger(__name__)

AGENCY_HEADER = "X-Agency-Id"
AGENCY_COOKIE = "current_agency_id"


class TenancyMode(str, Enum):
    LEGACY = "legacy"
    MULTI_TENANT = "multi_tenant"


@dataclass(frozen=True)
class AgencyAuthContext:
    """Resolved per-request authorization context."""
    user_id: str
    user_name: str
    agency_id: Optional[str]
    agency_role: AgencyRole
    permissions: Mapping[str, bool] = field(default_factory=dict)
    agency_name: Optional[str] = None
    agency_slug: Optional[str] = None
    tenancy_mode: TenancyMode = TenancyMode.MULTI_TENANT
    user_role: Optional[str] = None
    is_super_admin: bool = False

    @property
    def is_multi_tenant(self) -> bool:
        return self.tenancy_mode == TenancyMode.MULTI_TENANT

    @property
    def is_owner(self) -> bool:
        return self.agency_role == AgencyRole.OWNER

    def can(self, permission: AgencyPermission) -> bool:
        return has_permission(self.permissions, permission)

    def log_extra(self) -> dict:
        return {
            "user_id": self.user_id,
            "user_name": self.user_name,
            "agency_id": self.agency_id,
            "agency_role": self.agency_role.value,
        }


class AgencyAccessDenied(ForbiddenError):
    """Caller is not an active member of the requested agency."""

    def __init__(self, message: str, requested_agency_id: Optional[str] = None):
        super().__init__(message)
        self.requested_agency_id = requested_agency_id


def get_user_agencies(db: Session, user_id: str) -> list[dict]:
    """Active memberships of a user in active agencies."""
    memberships = (
        db.query(AgencyMember)
        .join(Agency, Agency.id == AgencyMember.agency_id)
        .filter(
            AgencyMember.user_id == user_id,
            AgencyMember.status == MemberStatus.ACTIVE.value,
            Agency.is_active.is_(True),
        )
        .order_by(Agency.name.asc(), Agency.id.asc())
        .all()
    )
    return [
        {
            "agency_id": m.agency_id,
            "agency_name": m.agency.name,
            "agency_slug": m.agency.slug,
            "role": m.role,
            "permissions": dict(m.permissions or {}),
            "is_default": m.is_default_agency,
        }
        for m in memberships
    ]


class AgencyContextResolver:
    """Resolves AgencyAuthContext on the service tier."""

    def __init__(self, db: Session, settings: Settings):
        self.db = db
        self.settings = settings

    @property
    def tenancy_mode(self) -> TenancyMode:
        if self.settings.multi_tenancy_enabled:
            return TenancyMode.MULTI_TENANT
        return TenancyMode.LEGACY

    def resolve(self, identity: SessionIdentity, request: Optional[Request] = None) -> AgencyAuthContext:
        if self.tenancy_mode == TenancyMode.LEGACY:
            return AgencyAuthContext(
                user_id=identity.user_id,
                user_name=identity.user_name,
                agency_id=None,
                agency_role=AgencyRole.OWNER,
                permissions=get_default_permissions(AgencyRole.OWNER),
                tenancy_mode=TenancyMode.LEGACY,
                user_role=identity.user_role,
                is_super_admin=identity.global_role == SUPER_ADMIN,
            )

        agency_id = self._requested_agency_id(identity, request)

        if identity.global_role == SUPER_ADMIN and agency_id:
            agency = self._active_agency(agency_id)
            if agency is not None:
                logger.info(
                    "Super admin agency access",
                    extra={"user_id": identity.user_id, "agency_id": agency.id},
                )
                return self._context(identity, agency, AgencyRole.OWNER,
                                     get_default_permissions(AgencyRole.OWNER))

        if not agency_id:
            agency_id = self._default_agency_id(identity.user_id)
            if not agency_id:
                raise ValidationError("Agency required")

        membership = (
            self.db.query(AgencyMember)
            .filter(
                AgencyMember.user_id == identity.user_id,
                AgencyMember.agency_id == agency_id,
            )
            .first()
        )
        if membership is None:
            logger.warning(
                "Agency access denied - not a member",
                extra={
                    "user_id": identity.user_id,
                    "user_name": identity.user_name,
                    "agency_id": agency_id,
                },
            )
            raise AgencyAccessDenied("You are not a member of this agency", agency_id)

        if membership.status != MemberStatus.ACTIVE.value:
            logger.warning(
                "Agency access denied - membership not active",
                extra={
                    "user_id": identity.user_id,
                    "agency_id": agency_id,
                    "status": membership.status,
                },
            )
            raise AgencyAccessDenied("Your account in this agency is suspended", agency_id)

        agency = self._active_agency(agency_id)
        if agency is None:
            raise NotFoundError("Agency not found")

        return self._context(
            identity,
            agency,
            AgencyRole(membership.role),
            dict(membership.permissions or {}),
        )

    def _context(self, identity, agency, role, permissions) -> AgencyAuthContext:
        return AgencyAuthContext(
            user_id=identity.user_id,
            user_name=identity.user_name,
            agency_id=agency.id,
            agency_role=role,
            permissions=permissions,
            agency_name=agency.name,
            agency_slug=agency.slug,
            tenancy_mode=TenancyMode.MULTI_TENANT,
            user_role=identity.user_role,
            is_super_admin=identity.global_role == SUPER_ADMIN,
        )

    def _requested_agency_id(self, identity: SessionIdentity, request: Optional[Request]) -> Optional[str]:
        if identity.agency_id:
            return identity.agency_id
        if request is None:
            return None
        return (
            request.headers.get(AGENCY_HEADER)
            or request.cookies.get(AGENCY_COOKIE)
            or None
        )

    def _default_agency_id(self, user_id: str) -> Optional[str]:
        active = (
            self.db.query(AgencyMember.agency_id)
            .filter(
                AgencyMember.user_id == user_id,
                AgencyMember.status == MemberStatus.ACTIVE.value,
            )
        )
        default = active.filter(AgencyMember.is_default_agency.is_(True)).first()
        if default is not None:
            return default.agency_id
        any_membership = active.order_by(AgencyMember.created_at.asc()).first()
        return any_membership.agency_id if any_membership is not None else None

    def _active_agency(self, agency_id: str) -> Optional[Agency]:
        return (
            self.db.query(Agency)
            .filter(Agency.id == agency_id, Agency.is_active.is_(True))
            .first()
        )
