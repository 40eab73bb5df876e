"""
Auth API Routes - registration, login, logout and agency switching.

SECURITY:
- Session tokens are set as HttpOnly cookies and also returned once in the
  body for non-browser clients
- Login failures are a generic 401 "Invalid credentials"
- Switching agency requires an active membership
"""

import logging
from typing import Optional

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from agencydesk.auth.agency_context import AGENCY_COOKIE, get_user_agencies
from agencydesk.auth.route_auth import session_route
from agencydesk.auth.session_validator import (
    SESSION_COOKIE_NAME,
    SessionIdentity,
    extract_session_token,
)
from agencydesk.database.session import get_database, get_settings_from_request
from agencydesk.platform.errors import success_response
from agencydesk.platform.security_monitor import get_security_monitor
from agencydesk.services.auth_service import AuthResult, AuthService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])


# --- Request Models ---


class CreateAgencyOnRegister(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)
    slug: Optional[str] = None
    primary_color: Optional[str] = None


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)
    pin: str
    email: Optional[str] = None
    invitation_token: Optional[str] = None
    create_agency: Optional[CreateAgencyOnRegister] = None


class LoginRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., min_length=1, max_length=100)
    pin: str


class SwitchAgencyRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    agency_id: str = Field(..., alias="agencyId")


# --- Helpers ---


def _auth_service(request: Request, session) -> AuthService:
    return AuthService(
        session,
        get_settings_from_request(request),
        get_security_monitor(request),
        request,
    )


def set_session_cookie(request: Request, response: JSONResponse, token: str) -> None:
    settings = get_settings_from_request(request)
    response.set_cookie(
        SESSION_COOKIE_NAME,
        token,
        max_age=settings.session_ttl_hours * 3600,
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )


def auth_response(request: Request, result: AuthResult, status_code: int = 200) -> JSONResponse:
    data = result.to_dict()
    data["session_token"] = result.token
    response = success_response(data, status_code=status_code)
    set_session_cookie(request, response, result.token)
    return response


# --- Routes ---


@router.post("/register")
async def register(request: Request, body: RegisterRequest):
    """Create an account, optionally joining or creating an agency."""
    with get_database(request).service_scope() as db:
        result = _auth_service(request, db).register(
            name=body.name,
            pin=body.pin,
            email=body.email,
            invitation_token=body.invitation_token,
            create_agency=body.create_agency.model_dump() if body.create_agency else None,
        )
        return auth_response(request, result, status_code=201)


@router.post("/login")
async def login(request: Request, body: LoginRequest):
    with get_database(request).service_scope() as db:
        result = _auth_service(request, db).login(body.name, body.pin)
        return auth_response(request, result)


@router.post("/logout")
async def logout(request: Request):
    """Invalidate the presented session (if any) and clear cookies."""
    with get_database(request).service_scope() as db:
        _auth_service(request, db).logout(extract_session_token(request))
    response = success_response(message="Logged out")
    response.delete_cookie(SESSION_COOKIE_NAME, path="/")
    response.delete_cookie(AGENCY_COOKIE, path="/")
    return response


@router.get("/session")
@session_route
async def current_session(request: Request, identity: SessionIdentity):
    with get_database(request).service_scope() as db:
        agencies = get_user_agencies(db, identity.user_id)
    return success_response({
        "user_id": identity.user_id,
        "user_name": identity.user_name,
        "role": identity.user_role,
        "current_agency_id": identity.agency_id,
        "agencies": agencies,
    })


@router.post("/session/agency")
@session_route
async def switch_agency(request: Request, body: SwitchAgencyRequest, identity: SessionIdentity):
    with get_database(request).service_scope() as db:
        agency = _auth_service(request, db).switch_agency(identity, body.agency_id)
        data = agency.to_dict()
    response = success_response(data, message=f"Switched to {data['name']}")
    settings = get_settings_from_request(request)
    response.set_cookie(
        AGENCY_COOKIE,
        data["id"],
        httponly=True,
        secure=settings.cookie_secure,
        samesite="lax",
        path="/",
    )
    return response
