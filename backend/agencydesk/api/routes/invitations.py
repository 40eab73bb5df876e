"""
Invitation API Routes.

- /api/agencies/{agency_id}/invitations: owner or manager of the agency
- /api/invitations/accept: an existing signed-in user, or a new user who
  registers with the invitation (is_new_user)
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from agencydesk.auth.agency_context import AgencyAuthContext
from agencydesk.auth.route_auth import agency_route
from agencydesk.auth.session_validator import SessionValidator
from agencydesk.constants.permissions import ADMIN_ROLES, AgencyRole
from agencydesk.database.session import get_database, get_db_session, get_settings_from_request
from agencydesk.models.user import User
from agencydesk.platform.errors import AuthenticationError, ValidationError, success_response
from agencydesk.platform.security_monitor import get_security_monitor
from agencydesk.services.auth_service import AuthService
from agencydesk.services.invitation_service import (
    InvitationService,
    accept_invitation,
    find_pending_invitation,
)
from agencydesk.api.routes.auth import set_session_cookie

logger = logging.getLogger(__name__)

router = APIRouter(tags=["invitations"])


class CreateInvitationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: AgencyRole
    email: Optional[str] = Field(None, max_length=255)
    expires_in_days: Optional[int] = None


class AcceptInvitationRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    token: str
    is_new_user: bool = False
    name: Optional[str] = Field(None, max_length=100)
    pin: Optional[str] = None
    email: Optional[str] = None


@router.get("/api/agencies/{agency_id}/invitations")
@agency_route(required_roles=ADMIN_ROLES, require_multi_tenant=True)
async def list_invitations(
    request: Request,
    agency_id: str,
    ctx: AgencyAuthContext,
    db: Session = Depends(get_db_session),
):
    return success_response(InvitationService(db, ctx).list_invitations())


@router.post("/api/agencies/{agency_id}/invitations")
@agency_route(required_roles=ADMIN_ROLES, require_multi_tenant=True)
async def create_invitation(
    request: Request,
    agency_id: str,
    body: CreateInvitationRequest,
    ctx: AgencyAuthContext,
    db: Session = Depends(get_db_session),
):
    """Create an invitation. The token is only ever returned here."""
    invitation, token = InvitationService(db, ctx).create_invitation(
        body.role,
        email=body.email,
        expires_in_days=body.expires_in_days,
    )
    data = invitation.to_dict()
    data["token"] = token
    data["invite_path"] = f"/join/{token}"
    return success_response(data, status_code=status.HTTP_201_CREATED)


@router.delete("/api/agencies/{agency_id}/invitations")
@agency_route(required_roles=ADMIN_ROLES, require_multi_tenant=True)
async def revoke_invitation(
    request: Request,
    agency_id: str,
    ctx: AgencyAuthContext,
    invitation_id: str = Query(..., alias="invitationId"),
    db: Session = Depends(get_db_session),
):
    invitation = InvitationService(db, ctx).revoke_invitation(invitation_id)
    return success_response(invitation.to_dict(), message="Invitation revoked")


@router.post("/api/invitations/accept")
async def accept(request: Request, body: AcceptInvitationRequest):
    """
    Accept an invitation.

    New users (is_new_user) are registered first; everyone else must be
    signed in. A fresh session scoped to the joined agency is issued.
    """
    settings = get_settings_from_request(request)
    monitor = get_security_monitor(request)
    with get_database(request).service_scope() as db:
        invitation = find_pending_invitation(db, body.token)
        auth = AuthService(db, settings, monitor, request)

        if body.is_new_user:
            if not body.name or not body.pin:
                raise ValidationError("Name and PIN are required for new users")
            if invitation.email and body.email and invitation.email != body.email.lower():
                raise ValidationError("Email does not match the invitation")
            user = auth.create_user(body.name, body.pin, body.email)
        else:
            try:
                identity = SessionValidator(db, settings, monitor).validate(request)
            except AuthenticationError:
                raise AuthenticationError(
                    "Authentication required. Please log in first or register as a new user."
                )
            user = db.get(User, identity.user_id)

        role = invitation.role
        agency = accept_invitation(db, invitation, user)
        token, _ = auth.start_session(user, agency.id)

        response = success_response(
            {"agency": {"id": agency.id, "name": agency.name, "slug": agency.slug}, "role": role},
            message=f"Joined {agency.name}",
        )
    set_session_cookie(request, response, token)
    return response
