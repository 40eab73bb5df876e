"""
Agency Members API Routes.

SECURITY:
- {agency_id} in the path must equal the caller's resolved agency (IDOR
  guard in agency_route)
- POST/DELETE: owner or manager; PATCH: owner only
- Role-gate rejections that target the owner role are recorded as
  privilege escalation attempts (record_role_escalation)
- Only available with multi-tenancy enabled
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from agencydesk.auth.agency_context import AgencyAuthContext
from agencydesk.auth.route_auth import agency_route
from agencydesk.constants.permissions import ADMIN_ROLES, AgencyRole, MemberStatus
from agencydesk.database.session import get_db_session
from agencydesk.platform.errors import success_response
from agencydesk.platform.security_monitor import get_security_monitor
from agencydesk.services.members_service import AgencyMembersService, record_role_escalation

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/agencies", tags=["agency-members"])


# --- Request Models ---


class AddMemberRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    user_name: str = Field(..., min_length=1, max_length=100, alias="userName")
    role: AgencyRole = AgencyRole.STAFF


class UpdateMemberRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    member_id: str = Field(..., alias="memberId")
    new_role: Optional[AgencyRole] = Field(None, alias="newRole")
    permissions: Optional[dict[str, bool]] = None
    status: Optional[MemberStatus] = None


def _service(request: Request, db: Session, ctx: AgencyAuthContext) -> AgencyMembersService:
    return AgencyMembersService(db, ctx, get_security_monitor(request), request)


# --- Routes ---


@router.get("/{agency_id}/members")
@agency_route(require_multi_tenant=True)
async def list_members(
    request: Request,
    agency_id: str,
    ctx: AgencyAuthContext,
    db: Session = Depends(get_db_session),
):
    members = _service(request, db, ctx).list_members()
    return success_response(members, agency_id=ctx.agency_id, total_count=len(members))


@router.post("/{agency_id}/members")
@agency_route(
    required_roles=ADMIN_ROLES,
    on_role_denied=record_role_escalation,
    require_multi_tenant=True,
)
async def add_member(
    request: Request,
    agency_id: str,
    body: AddMemberRequest,
    ctx: AgencyAuthContext,
    db: Session = Depends(get_db_session),
):
    member = _service(request, db, ctx).add_member(body.user_name, body.role)
    return success_response(
        member.to_dict(),
        message=f"{body.user_name} added to agency as {body.role.value}",
        status_code=status.HTTP_201_CREATED,
    )


@router.patch("/{agency_id}/members")
@agency_route(
    required_roles=[AgencyRole.OWNER],
    on_role_denied=record_role_escalation,
    require_multi_tenant=True,
)
async def update_member(
    request: Request,
    agency_id: str,
    body: UpdateMemberRequest,
    ctx: AgencyAuthContext,
    db: Session = Depends(get_db_session),
):
    """
    Change a member's role, permissions and/or status.

    newRole only: permissions reset to the role's defaults.
    permissions only: merged into the current set.
    both: overrides applied on top of the new role's defaults.
    """
    result = _service(request, db, ctx).update_member(
        body.member_id,
        new_role=body.new_role,
        permissions=body.permissions,
        status=body.status,
    )
    extra = {"permissionsChanged": result.changed_permissions} if result.changed_permissions else {}
    return success_response(result.member.to_dict(), message=result.message, **extra)


@router.delete("/{agency_id}/members")
@agency_route(
    required_roles=ADMIN_ROLES,
    on_role_denied=record_role_escalation,
    require_multi_tenant=True,
)
async def remove_member(
    request: Request,
    agency_id: str,
    ctx: AgencyAuthContext,
    member_id: str = Query(..., alias="memberId"),
    db: Session = Depends(get_db_session),
):
    removed_name = _service(request, db, ctx).remove_member(member_id)
    return success_response(message=f"{removed_name} removed from agency")
