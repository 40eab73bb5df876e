"""
Tests for session validation and agency context resolution.

Tests cover:
- Token sources (cookie, header, bearer) and generic 401s
- Expiry and idle timeout
- Service key callers
- TenancyMode selection, membership checks, super admin access
"""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest
from starlette.requests import Request

from agencydesk.auth.agency_context import (
    AgencyAccessDenied,
    AgencyContextResolver,
    TenancyMode,
)
from agencydesk.auth.session_validator import (
    SessionIdentity,
    SessionValidator,
    create_session,
    hash_session_token,
    invalidate_all_user_sessions,
)
from agencydesk.config import Settings
from agencydesk.constants.permissions import SUPER_ADMIN, AgencyPermission, AgencyRole, MemberStatus
from agencydesk.models.base import utcnow
from agencydesk.models.user_session import UserSession
from agencydesk.platform.errors import AuthenticationError, NotFoundError, ValidationError


def build_request(headers=None, cookies=None) -> Request:
    """Minimal ASGI request carrying the given headers and cookies."""
    raw_headers = [(k.lower().encode(), v.encode()) for k, v in (headers or {}).items()]
    if cookies:
        cookie = "; ".join(f"{k}={v}" for k, v in cookies.items())
        raw_headers.append((b"cookie", cookie.encode()))
    return Request({
        "type": "http",
        "method": "GET",
        "path": "/api/test",
        "headers": raw_headers,
        "query_string": b"",
        "client": ("127.0.0.1", 50000),
        "server": ("testserver", 80),
        "scheme": "http",
        "root_path": "",
    })


def _identity(user, agency_id=None):
    return SessionIdentity(
        user_id=user.id,
        user_name=user.name,
        user_role=user.role,
        global_role=user.global_role,
        agency_id=agency_id,
    )


class TestSessionValidator:
    """Tests for SessionValidator.validate."""

    def test_valid_header_token(self, db_session, settings, staff, agency):
        token, _ = create_session(db_session, staff, settings, agency_id=agency.id)
        identity = SessionValidator(db_session, settings).validate(
            build_request(headers={"X-Session-Token": token})
        )
        assert identity.user_id == staff.id
        assert identity.user_name == "Sam"
        assert identity.agency_id == agency.id
        assert identity.session_id is not None

    def test_cookie_and_bearer_sources(self, db_session, settings, staff):
        token, _ = create_session(db_session, staff, settings)
        validator = SessionValidator(db_session, settings)
        assert validator.validate(build_request(cookies={"session_token": token})).user_id == staff.id
        assert validator.validate(
            build_request(headers={"Authorization": f"Bearer {token}"})
        ).user_id == staff.id

    def test_missing_token(self, db_session, settings):
        with pytest.raises(AuthenticationError):
            SessionValidator(db_session, settings).validate(build_request())

    def test_unknown_token(self, db_session, settings):
        with pytest.raises(AuthenticationError) as exc:
            SessionValidator(db_session, settings).validate(
                build_request(headers={"X-Session-Token": "not-a-session"})
            )
        assert exc.value.message == "Authentication required"

    def test_only_hash_is_stored(self, db_session, settings, staff):
        token, _ = create_session(db_session, staff, settings)
        row = db_session.query(UserSession).filter(UserSession.user_id == staff.id).one()
        assert row.token_hash == hash_session_token(token)
        assert row.token_hash != token

    def test_expired_session(self, db_session, settings, staff):
        token, _ = create_session(db_session, staff, settings)
        row = db_session.query(UserSession).filter(UserSession.user_id == staff.id).one()
        row.expires_at = utcnow() - timedelta(minutes=1)
        db_session.commit()
        with pytest.raises(AuthenticationError):
            SessionValidator(db_session, settings).validate(build_request(headers={"X-Session-Token": token}))

    def test_idle_session_invalidated(self, db_session, settings, staff):
        token, _ = create_session(db_session, staff, settings)
        row = db_session.query(UserSession).filter(UserSession.user_id == staff.id).one()
        row.last_activity = utcnow() - timedelta(minutes=settings.session_idle_timeout_minutes + 1)
        db_session.commit()
        with pytest.raises(AuthenticationError):
            SessionValidator(db_session, settings).validate(build_request(headers={"X-Session-Token": token}))
        db_session.expire_all()
        assert db_session.get(UserSession, row.id).is_valid is False

    def test_logout_everywhere(self, db_session, settings, staff):
        token_a, _ = create_session(db_session, staff, settings)
        token_b, _ = create_session(db_session, staff, settings)
        assert invalidate_all_user_sessions(db_session, staff.id) == 2
        validator = SessionValidator(db_session, settings)
        for token in (token_a, token_b):
            with pytest.raises(AuthenticationError):
                validator.validate(build_request(headers={"X-Session-Token": token}))


@pytest.mark.security
class TestServiceKeyCallers:

    def test_service_key_with_user_name(self, db_session, settings, staff):
        identity = SessionValidator(db_session, settings).validate(
            build_request(headers={"X-API-Key": settings.service_api_key, "X-User-Name": "Sam"})
        )
        assert identity.user_id == staff.id
        assert identity.via_service_key is True
        assert identity.session_id is None

    def test_user_name_alone_is_not_authentication(self, db_session, settings, staff):
        with pytest.raises(AuthenticationError):
            SessionValidator(db_session, settings).validate(build_request(headers={"X-User-Name": "Sam"}))

    def test_wrong_key_records_event(self, db_session, settings, staff):
        monitor = MagicMock()
        with pytest.raises(AuthenticationError):
            SessionValidator(db_session, settings, monitor).validate(
                build_request(headers={"X-API-Key": "wrong", "X-User-Name": "Sam"})
            )
        assert monitor.record_event.call_args.args[0].value == "invalid_api_key"

    def test_service_key_without_user(self, db_session, settings):
        with pytest.raises(AuthenticationError):
            SessionValidator(db_session, settings).validate(
                build_request(headers={"X-API-Key": settings.service_api_key})
            )


class TestAgencyContextResolver:
    """Tests for AgencyContextResolver.resolve."""

    def test_legacy_mode(self, db_session, staff):
        resolver = AgencyContextResolver(db_session, Settings(multi_tenancy_enabled=False))
        ctx = resolver.resolve(_identity(staff))
        assert ctx.tenancy_mode == TenancyMode.LEGACY
        assert ctx.is_multi_tenant is False
        assert ctx.agency_id is None
        assert ctx.agency_role == AgencyRole.OWNER

    def test_session_agency(self, db_session, settings, staff, agency):
        ctx = AgencyContextResolver(db_session, settings).resolve(_identity(staff, agency.id))
        assert ctx.tenancy_mode == TenancyMode.MULTI_TENANT
        assert ctx.agency_id == agency.id
        assert ctx.agency_role == AgencyRole.STAFF
        assert ctx.agency_slug == "smith-insurance"
        assert ctx.can(AgencyPermission.CREATE_TASKS)
        assert not ctx.can(AgencyPermission.VIEW_ALL_TASKS)

    def test_header_agency(self, db_session, settings, staff, agency):
        ctx = AgencyContextResolver(db_session, settings).resolve(
            _identity(staff), build_request(headers={"X-Agency-Id": agency.id})
        )
        assert ctx.agency_id == agency.id

    def test_session_agency_wins_over_header(self, db_session, settings, make_user, add_member, agency, other_agency):
        user = make_user("Dana")
        add_member(user, agency, AgencyRole.STAFF)
        add_member(user, other_agency, AgencyRole.MANAGER)
        ctx = AgencyContextResolver(db_session, settings).resolve(
            _identity(user, agency.id), build_request(headers={"X-Agency-Id": other_agency.id})
        )
        assert ctx.agency_id == agency.id

    def test_default_membership(self, db_session, settings, staff, agency):
        ctx = AgencyContextResolver(db_session, settings).resolve(_identity(staff))
        assert ctx.agency_id == agency.id

    @pytest.mark.security
    def test_non_member_denied(self, db_session, settings, staff, other_agency):
        with pytest.raises(AgencyAccessDenied) as exc:
            AgencyContextResolver(db_session, settings).resolve(_identity(staff, other_agency.id))
        assert exc.value.status_code == 403
        assert exc.value.requested_agency_id == other_agency.id

    @pytest.mark.security
    def test_revoked_member_denied(self, db_session, settings, make_user, add_member, agency):
        user = make_user("Riley")
        add_member(user, agency, AgencyRole.STAFF, status=MemberStatus.REVOKED)
        with pytest.raises(AgencyAccessDenied):
            AgencyContextResolver(db_session, settings).resolve(_identity(user, agency.id))

    def test_inactive_agency(self, db_session, settings, make_user, make_agency, add_member):
        closed = make_agency("Closed Agency", is_active=False)
        user = make_user("Casey")
        add_member(user, closed, AgencyRole.OWNER)
        with pytest.raises(NotFoundError):
            AgencyContextResolver(db_session, settings).resolve(_identity(user, closed.id))

    def test_no_membership_anywhere(self, db_session, settings, make_user):
        user = make_user("Newcomer")
        with pytest.raises(ValidationError, match="Agency required"):
            AgencyContextResolver(db_session, settings).resolve(_identity(user))

    def test_super_admin_gets_owner_access(self, db_session, settings, make_user, agency):
        admin = make_user("Root", global_role=SUPER_ADMIN)
        ctx = AgencyContextResolver(db_session, settings).resolve(_identity(admin, agency.id))
        assert ctx.agency_role == AgencyRole.OWNER
        assert ctx.is_super_admin is True
        assert ctx.can(AgencyPermission.MANAGE_TEAM)
