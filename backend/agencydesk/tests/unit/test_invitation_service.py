"""
Tests for agency invitations.

Tests cover:
- Role rules (managers invite staff, only owners invite managers, no owner invites)
- Token handling (returned once, stored hashed)
- Expiry defaults, duplicate pending invitations, member limit
- Acceptance (new membership, already a member, revoked, expired, reuse)
"""

from datetime import timedelta

import pytest

from agencydesk.constants.permissions import AgencyRole, MemberStatus
from agencydesk.models.agency_invitation import AgencyInvitation
from agencydesk.models.agency_member import AgencyMember
from agencydesk.models.base import as_utc, utcnow
from agencydesk.platform.errors import ConflictError, ForbiddenError, NotFoundError, ValidationError
from agencydesk.services.invitation_service import (
    InvitationService,
    accept_invitation,
    find_pending_invitation,
    hash_invitation_token,
)


@pytest.fixture
def invitations_for(db_session, make_ctx):
    def _service(user, agency) -> InvitationService:
        return InvitationService(db_session, make_ctx(user, agency))
    return _service


class TestCreateInvitation:

    def test_owner_invites_manager(self, invitations_for, owner, agency):
        invitation, token = invitations_for(owner, agency).create_invitation(
            AgencyRole.MANAGER, email="New.Hire@Example.com"
        )
        assert invitation.role == "manager"
        assert invitation.email == "new.hire@example.com"
        assert invitation.status == "pending"
        assert len(token) == 64
        assert invitation.token_hash == hash_invitation_token(token)
        assert invitation.token_hash != token

    def test_default_expiry(self, invitations_for, owner, agency):
        invitation, _ = invitations_for(owner, agency).create_invitation(AgencyRole.STAFF)
        remaining = as_utc(invitation.expires_at) - utcnow()
        assert timedelta(days=6, hours=23) < remaining <= timedelta(days=7)

    @pytest.mark.parametrize("days", [0, -1, 31])
    def test_out_of_range_expiry_uses_default(self, invitations_for, owner, agency, days):
        invitation, _ = invitations_for(owner, agency).create_invitation(AgencyRole.STAFF, expires_in_days=days)
        remaining = as_utc(invitation.expires_at) - utcnow()
        assert remaining <= timedelta(days=7)

    def test_custom_expiry(self, invitations_for, owner, agency):
        invitation, _ = invitations_for(owner, agency).create_invitation(AgencyRole.STAFF, expires_in_days=30)
        assert as_utc(invitation.expires_at) - utcnow() > timedelta(days=29)

    def test_manager_invites_staff(self, invitations_for, manager, agency):
        invitation, _ = invitations_for(manager, agency).create_invitation(AgencyRole.STAFF)
        assert invitation.role == "staff"

    @pytest.mark.security
    def test_manager_cannot_invite_manager(self, invitations_for, manager, agency):
        with pytest.raises(ForbiddenError):
            invitations_for(manager, agency).create_invitation(AgencyRole.MANAGER)

    @pytest.mark.security
    def test_owner_role_not_invitable(self, invitations_for, owner, agency):
        with pytest.raises(ValidationError):
            invitations_for(owner, agency).create_invitation(AgencyRole.OWNER)

    def test_invalid_email(self, invitations_for, owner, agency):
        with pytest.raises(ValidationError, match="email"):
            invitations_for(owner, agency).create_invitation(AgencyRole.STAFF, email="not-an-email")

    def test_duplicate_pending_email(self, invitations_for, owner, agency):
        service = invitations_for(owner, agency)
        service.create_invitation(AgencyRole.STAFF, email="casey@example.com")
        with pytest.raises(ConflictError):
            service.create_invitation(AgencyRole.STAFF, email="CASEY@example.com")

    def test_pending_invitations_count_toward_limit(self, invitations_for, make_agency, make_user, add_member):
        small = make_agency("Tiny Agency", max_users=2)
        boss = make_user("Boss")
        add_member(boss, small, AgencyRole.OWNER, is_default=True)
        service = invitations_for(boss, small)
        service.create_invitation(AgencyRole.STAFF)
        with pytest.raises(ForbiddenError, match="maximum of 2 users"):
            service.create_invitation(AgencyRole.STAFF)


class TestListAndRevoke:

    def test_list_scoped_to_agency(self, invitations_for, owner, agency, other_owner, other_agency):
        invitations_for(owner, agency).create_invitation(AgencyRole.STAFF)
        invitations_for(other_owner, other_agency).create_invitation(AgencyRole.STAFF)

        listed = invitations_for(owner, agency).list_invitations()
        assert len(listed) == 1
        assert listed[0]["agency_id"] == agency.id
        assert "token_hash" not in listed[0]

    def test_revoke(self, invitations_for, owner, agency):
        service = invitations_for(owner, agency)
        invitation, token = service.create_invitation(AgencyRole.STAFF)
        assert service.revoke_invitation(invitation.id).status == "revoked"

        with pytest.raises(ValidationError, match="no longer valid"):
            find_pending_invitation(service.session, token)

    def test_revoke_twice(self, invitations_for, owner, agency):
        service = invitations_for(owner, agency)
        invitation, _ = service.create_invitation(AgencyRole.STAFF)
        service.revoke_invitation(invitation.id)
        with pytest.raises(ValidationError):
            service.revoke_invitation(invitation.id)

    @pytest.mark.security
    def test_cannot_revoke_other_agency_invitation(self, invitations_for, owner, agency, other_owner, other_agency):
        foreign, _ = invitations_for(other_owner, other_agency).create_invitation(AgencyRole.STAFF)
        with pytest.raises(NotFoundError):
            invitations_for(owner, agency).revoke_invitation(foreign.id)


class TestAcceptInvitation:

    def test_accept_creates_membership(self, db_session, invitations_for, owner, agency, make_user):
        _, token = invitations_for(owner, agency).create_invitation(AgencyRole.MANAGER)
        user = make_user("Casey")

        invitation = find_pending_invitation(db_session, token)
        joined = accept_invitation(db_session, invitation, user)

        assert joined.id == agency.id
        member = (
            db_session.query(AgencyMember)
            .filter(AgencyMember.user_id == user.id, AgencyMember.agency_id == agency.id)
            .one()
        )
        assert member.role == "manager"
        assert member.status == "active"
        assert member.is_default_agency is True

        db_session.expire_all()
        stored = db_session.get(AgencyInvitation, invitation.id)
        assert stored.status == "accepted"
        assert stored.accepted_by == user.id

    def test_token_is_single_use(self, db_session, invitations_for, owner, agency, make_user):
        _, token = invitations_for(owner, agency).create_invitation(AgencyRole.STAFF)
        accept_invitation(db_session, find_pending_invitation(db_session, token), make_user("Casey"))
        with pytest.raises(ValidationError, match="already been accepted"):
            find_pending_invitation(db_session, token)

    @pytest.mark.parametrize("token", ["", "short", "Z" * 64])
    def test_malformed_token(self, db_session, token):
        with pytest.raises(ValidationError, match="Invalid token format"):
            find_pending_invitation(db_session, token)

    def test_unknown_token(self, db_session):
        with pytest.raises(ValidationError, match="Invalid invitation token"):
            find_pending_invitation(db_session, "ab" * 32)

    def test_expired(self, db_session, invitations_for, owner, agency):
        invitation, token = invitations_for(owner, agency).create_invitation(AgencyRole.STAFF)
        invitation.expires_at = utcnow() - timedelta(minutes=1)
        db_session.commit()
        with pytest.raises(ValidationError, match="expired"):
            find_pending_invitation(db_session, token)

    def test_already_member(self, db_session, invitations_for, owner, staff, agency):
        _, token = invitations_for(owner, agency).create_invitation(AgencyRole.STAFF)
        with pytest.raises(ConflictError):
            accept_invitation(db_session, find_pending_invitation(db_session, token), staff)

    @pytest.mark.security
    def test_revoked_member_cannot_rejoin(self, db_session, invitations_for, owner, agency, make_user, add_member):
        user = make_user("Riley")
        add_member(user, agency, AgencyRole.STAFF, status=MemberStatus.REVOKED)
        _, token = invitations_for(owner, agency).create_invitation(AgencyRole.STAFF)
        with pytest.raises(ForbiddenError, match="revoked"):
            accept_invitation(db_session, find_pending_invitation(db_session, token), user)

    def test_inactive_agency(self, db_session, invitations_for, owner, agency, make_user):
        _, token = invitations_for(owner, agency).create_invitation(AgencyRole.STAFF)
        invitation = find_pending_invitation(db_session, token)
        agency.is_active = False
        db_session.commit()
        with pytest.raises(ValidationError, match="no longer active"):
            accept_invitation(db_session, invitation, make_user("Casey"))
