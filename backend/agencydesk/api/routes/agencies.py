"""
Agencies API Routes - list the caller's agencies and create new ones.

Runs on the service tier: a new agency has no members yet, so its rows are
not reachable through the public (RLS) tier until the owner membership
exists.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Request, status
from pydantic import BaseModel, ConfigDict, Field

from agencydesk.auth.route_auth import session_route
from agencydesk.auth.session_validator import SessionIdentity
from agencydesk.database.session import get_database
from agencydesk.platform.errors import success_response
from agencydesk.services.agency_service import AgencyService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/agencies", tags=["agencies"])

HEX_COLOR = r"^#[0-9A-Fa-f]{6}$"


class CreateAgencyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)
    slug: Optional[str] = Field(None, max_length=50)
    logo_url: Optional[str] = None
    primary_color: Optional[str] = Field(None, pattern=HEX_COLOR)
    secondary_color: Optional[str] = Field(None, pattern=HEX_COLOR)


@router.get("")
@session_route
async def list_agencies(request: Request, identity: SessionIdentity):
    with get_database(request).service_scope() as db:
        agencies = AgencyService(db).list_for_user(identity)
    return success_response(agencies)


@router.post("")
@session_route
async def create_agency(request: Request, body: CreateAgencyRequest, identity: SessionIdentity):
    """Create an agency; the caller becomes its owner."""
    with get_database(request).service_scope() as db:
        agency = AgencyService(db).create_agency(
            identity,
            name=body.name,
            slug=body.slug,
            logo_url=body.logo_url,
            primary_color=body.primary_color,
            secondary_color=body.secondary_color,
        )
        data = agency.to_dict()
    return success_response(
        data,
        message=f"Agency {data['name']} created",
        status_code=status.HTTP_201_CREATED,
    )
