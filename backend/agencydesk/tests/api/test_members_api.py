"""
API tests for agencies, members and invitations.

Tests cover:
- IDOR guard: path agency must match the session agency
- Role gates and privilege escalation events
- Last-owner guard through the API
- Invitation create/accept (existing and new users)
- Member routes unavailable without multi-tenancy
"""

import pytest
from fastapi.testclient import TestClient

from agencydesk.config import Settings
from agencydesk.constants.permissions import AgencyRole
from agencydesk.models.agency_member import AgencyMember
from agencydesk.models.security_event import SecurityEvent


def _events(db_session, event_type):
    db_session.expire_all()
    return db_session.query(SecurityEvent).filter(SecurityEvent.event_type == event_type).all()


def _member(db_session, user, agency):
    db_session.expire_all()
    return (
        db_session.query(AgencyMember)
        .filter(AgencyMember.user_id == user.id, AgencyMember.agency_id == agency.id)
        .first()
    )


# =============================================================================
# Agencies
# =============================================================================

class TestAgenciesApi:

    def test_create_and_list(self, client, staff, agency, login):
        headers = login(staff, agency)
        created = client.post("/api/agencies", json={"name": "Sam Solo Agency"}, headers=headers)
        assert created.status_code == 201
        assert created.json()["data"]["slug"] == "sam-solo-agency"

        listed = client.get("/api/agencies", headers=headers).json()["data"]
        assert {a["agency_name"] for a in listed} == {"Smith Insurance", "Sam Solo Agency"}

    def test_requires_session(self, client):
        assert client.get("/api/agencies").status_code == 401


# =============================================================================
# Members
# =============================================================================

class TestListMembersApi:

    def test_list(self, client, owner, staff, agency, login):
        response = client.get(f"/api/agencies/{agency.id}/members", headers=login(staff, agency))
        assert response.status_code == 200
        body = response.json()
        assert body["total_count"] == 2
        assert body["agency_id"] == agency.id

    @pytest.mark.security
    def test_idor_other_agency_rejected(self, client, db_session, staff, agency, other_owner, other_agency, login):
        response = client.get(f"/api/agencies/{other_agency.id}/members", headers=login(staff, agency))
        assert response.status_code == 403
        assert response.json()["code"] == "FORBIDDEN"

        events = _events(db_session, "access_denied")
        assert len(events) == 1
        assert events[0].severity == "high"
        assert events[0].details["requested_agency_id"] == other_agency.id

    @pytest.mark.security
    def test_idor_header_cannot_override_session(self, client, staff, agency, other_owner, other_agency, login):
        headers = {**login(staff, agency), "X-Agency-Id": other_agency.id}
        response = client.get(f"/api/agencies/{other_agency.id}/members", headers=headers)
        assert response.status_code == 403


@pytest.mark.security
class TestMemberEscalationApi:

    def test_staff_adding_owner_is_critical(self, client, db_session, staff, agency, make_user, login):
        target = make_user("Eve")
        response = client.post(
            f"/api/agencies/{agency.id}/members",
            json={"userName": "Eve", "role": "owner"},
            headers=login(staff, agency),
        )
        assert response.status_code == 403
        assert _member(db_session, target, agency) is None

        events = _events(db_session, "privilege_escalation_attempt")
        assert len(events) == 1
        assert events[0].severity == "critical"

    def test_staff_adding_staff_is_plain_denial(self, client, db_session, staff, agency, make_user, login):
        make_user("Eve")
        response = client.post(
            f"/api/agencies/{agency.id}/members",
            json={"userName": "Eve", "role": "staff"},
            headers=login(staff, agency),
        )
        assert response.status_code == 403
        assert _events(db_session, "privilege_escalation_attempt") == []

    def test_manager_promoting_to_owner(self, client, db_session, manager, staff, agency, login):
        member = _member(db_session, staff, agency)
        response = client.patch(
            f"/api/agencies/{agency.id}/members",
            json={"memberId": member.id, "newRole": "owner"},
            headers=login(manager, agency),
        )
        assert response.status_code == 403
        assert _member(db_session, staff, agency).role == "staff"
        assert len(_events(db_session, "privilege_escalation_attempt")) == 1

    def test_manager_adding_owner(self, client, db_session, manager, agency, make_user, login):
        target = make_user("Eve")
        response = client.post(
            f"/api/agencies/{agency.id}/members",
            json={"userName": "Eve", "role": "owner"},
            headers=login(manager, agency),
        )
        assert response.status_code == 403
        assert response.json()["error"] == "Only owners can add other owners"
        assert _member(db_session, target, agency) is None
        assert _events(db_session, "privilege_escalation_attempt")[0].severity == "critical"

    def test_manager_removing_owner(self, client, db_session, owner, manager, agency, login):
        member = _member(db_session, owner, agency)
        response = client.delete(
            f"/api/agencies/{agency.id}/members",
            params={"memberId": member.id},
            headers=login(manager, agency),
        )
        assert response.status_code == 403
        assert _member(db_session, owner, agency) is not None
        assert len(_events(db_session, "privilege_escalation_attempt")) == 1


class TestMemberChangesApi:

    def test_owner_adds_member(self, client, db_session, owner, agency, make_user, login):
        user = make_user("Taylor")
        response = client.post(
            f"/api/agencies/{agency.id}/members",
            json={"userName": "Taylor", "role": "manager"},
            headers=login(owner, agency),
        )
        assert response.status_code == 201
        assert response.json()["message"] == "Taylor added to agency as manager"
        assert _member(db_session, user, agency).role == "manager"

    def test_owner_updates_permissions(self, client, db_session, owner, staff, agency, login):
        member = _member(db_session, staff, agency)
        response = client.patch(
            f"/api/agencies/{agency.id}/members",
            json={"memberId": member.id, "permissions": {"can_view_all_tasks": True}},
            headers=login(owner, agency),
        )
        assert response.status_code == 200
        body = response.json()
        assert body["permissionsChanged"] == ["can_view_all_tasks"]
        assert body["data"]["permissions"]["can_view_all_tasks"] is True

    @pytest.mark.security
    def test_last_owner_cannot_demote_self(self, client, db_session, owner, agency, login):
        member = _member(db_session, owner, agency)
        response = client.patch(
            f"/api/agencies/{agency.id}/members",
            json={"memberId": member.id, "newRole": "staff"},
            headers=login(owner, agency),
        )
        assert response.status_code == 403
        assert _member(db_session, owner, agency).role == "owner"

    @pytest.mark.security
    def test_last_owner_cannot_be_removed(self, client, db_session, owner, agency, login):
        member = _member(db_session, owner, agency)
        response = client.delete(
            f"/api/agencies/{agency.id}/members",
            params={"memberId": member.id},
            headers=login(owner, agency),
        )
        assert response.status_code == 403
        assert _member(db_session, owner, agency) is not None

    def test_invalid_role_rejected(self, client, owner, agency, make_user, login):
        make_user("Taylor")
        response = client.post(
            f"/api/agencies/{agency.id}/members",
            json={"userName": "Taylor", "role": "emperor"},
            headers=login(owner, agency),
        )
        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"


class TestLegacyMode:

    def test_member_routes_not_found(self, database, owner, agency, login):
        from main import create_app

        settings = Settings(env="test", multi_tenancy_enabled=False, cookie_secure=False)
        client = TestClient(create_app(settings=settings, database=database))
        response = client.get(f"/api/agencies/{agency.id}/members", headers=login(owner, agency))
        assert response.status_code == 404


# =============================================================================
# Invitations
# =============================================================================

class TestInvitationsApi:

    def _invite(self, client, user, agency, login, **body):
        response = client.post(
            f"/api/agencies/{agency.id}/invitations",
            json={"role": "staff", **body},
            headers=login(user, agency),
        )
        assert response.status_code == 201
        return response.json()["data"]

    def test_create_returns_token_once(self, client, owner, agency, login):
        data = self._invite(client, owner, agency, login, email="casey@example.com")
        assert len(data["token"]) == 64
        assert data["invite_path"] == f"/join/{data['token']}"

        listed = client.get(f"/api/agencies/{agency.id}/invitations", headers=login(owner, agency))
        assert "token" not in listed.json()["data"][0]

    def test_staff_cannot_invite(self, client, staff, agency, login):
        response = client.post(
            f"/api/agencies/{agency.id}/invitations",
            json={"role": "staff"},
            headers=login(staff, agency),
        )
        assert response.status_code == 403

    def test_manager_cannot_invite_manager(self, client, manager, agency, login):
        response = client.post(
            f"/api/agencies/{agency.id}/invitations",
            json={"role": "manager"},
            headers=login(manager, agency),
        )
        assert response.status_code == 403

    def test_existing_user_accepts(self, client, db_session, owner, agency, make_user, login):
        token = self._invite(client, owner, agency, login)["token"]
        user = make_user("Casey")
        client.cookies.clear()

        response = client.post("/api/invitations/accept", json={"token": token}, headers=login(user))
        assert response.status_code == 200
        assert response.json()["message"] == "Joined Smith Insurance"
        assert response.json()["data"]["role"] == "staff"
        assert _member(db_session, user, agency).status == "active"

    def test_new_user_registers_and_joins(self, client, db_session, owner, agency, login):
        token = self._invite(client, owner, agency, login)["token"]
        client.cookies.clear()

        response = client.post("/api/invitations/accept", json={
            "token": token,
            "is_new_user": True,
            "name": "Casey",
            "pin": "5938",
        })
        assert response.status_code == 200
        assert "session_token" in response.cookies
        assert response.json()["data"]["agency"]["id"] == agency.id

    def test_accept_requires_login(self, client, owner, agency, login):
        token = self._invite(client, owner, agency, login)["token"]
        client.cookies.clear()
        response = client.post("/api/invitations/accept", json={"token": token})
        assert response.status_code == 401
        assert "register as a new user" in response.json()["error"]

    def test_revoke(self, client, owner, agency, login):
        invitation = self._invite(client, owner, agency, login)
        response = client.delete(
            f"/api/agencies/{agency.id}/invitations",
            params={"invitationId": invitation["id"]},
            headers=login(owner, agency),
        )
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "revoked"
