"""
Agency Members Service.

Manages memberships of the caller's agency: list, add, change role /
permissions / status, and remove.

CRITICAL SECURITY REQUIREMENTS:
- The member being changed is always re-fetched with the caller's agency_id;
  a member of another agency is "not found"
- Only owners may create, demote or remove an owner. Attempts by anyone else
  are recorded as CRITICAL privilege_escalation_attempt events, then 403
- Every agency keeps at least one active owner. Demotions, revocations and
  removals are single conditional UPDATE/DELETE statements run while the
  agency's owner rows are locked; zero affected rows means the change would
  have left the agency without an owner

Usage:
    service = AgencyMembersService(db, ctx, monitor, request)
    member = service.add_member("Alice", AgencyRole.STAFF)
"""

import logging
from dataclasses import dataclass
from typing import Optional

from fastapi import Request
from sqlalchemy import and_, func, not_, or_, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, aliased

from agencydesk.auth.agency_context import AgencyAuthContext
from agencydesk.constants.permissions import (
    AgencyPermission,
    AgencyRole,
    MemberStatus,
    elevated_permissions_granted,
    get_default_permissions,
    invalid_permission_keys,
    merge_permissions,
)
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
from agencydesk.platform.security_monitor import (
    SecurityEventType,
    SecurityMonitor,
    SecuritySeverity,
)

logger = logging.getLogger(__name__)

ASSIGNABLE_STATUSES = (MemberStatus.ACTIVE, MemberStatus.REVOKED)


@dataclass
class MemberUpdateResult:
    member: AgencyMember
    action: ActivityAction
    message: str
    changed_permissions: list[str]


def count_member_slots(db: Session, agency_id: str) -> int:
    """Active members plus pending, unexpired invitations."""
    members = (
        db.query(func.count(AgencyMember.id))
        .filter(
            AgencyMember.agency_id == agency_id,
            AgencyMember.status == MemberStatus.ACTIVE.value,
        )
        .scalar()
    )
    invitations = (
        db.query(func.count(AgencyInvitation.id))
        .filter(
            AgencyInvitation.agency_id == agency_id,
            AgencyInvitation.status == InvitationStatus.PENDING.value,
            AgencyInvitation.expires_at > utcnow(),
        )
        .scalar()
    )
    return (members or 0) + (invitations or 0)


def record_privilege_escalation(
    monitor: SecurityMonitor,
    request: Optional[Request],
    ctx: AgencyAuthContext,
    action: str,
    **details,
) -> None:
    monitor.record_event(
        SecurityEventType.PRIVILEGE_ESCALATION_ATTEMPT,
        SecuritySeverity.CRITICAL,
        request=request,
        user_id=ctx.user_id,
        user_name=ctx.user_name,
        agency_id=ctx.agency_id,
        details={
            "action": action,
            "requester_role": ctx.agency_role.value,
            **details,
        },
    )


def record_role_escalation(request: Request, ctx: AgencyAuthContext, handler_kwargs: dict) -> None:
    """
    on_role_denied hook for the member routes.

    Runs when the role gate has already rejected the caller. Attempts that
    target the owner role (adding an owner, promoting to owner, changing or
    removing an existing owner) are recorded as privilege escalation.
    """
    body = handler_kwargs.get("body")
    db = handler_kwargs.get("db")
    monitor = request.app.state.security_monitor

    attempted_role = getattr(body, "role", None) or getattr(body, "new_role", None)
    member_id = getattr(body, "member_id", None) or handler_kwargs.get("member_id")

    target_role = None
    if member_id and db is not None:
        target = (
            db.query(AgencyMember.role)
            .filter(AgencyMember.id == member_id, AgencyMember.agency_id == ctx.agency_id)
            .first()
        )
        target_role = target.role if target is not None else None

    if attempted_role == AgencyRole.OWNER or target_role == AgencyRole.OWNER.value:
        record_privilege_escalation(
            monitor,
            request,
            ctx,
            action=f"{request.method.lower()}_member",
            attempted_role=AgencyRole(attempted_role).value if attempted_role else None,
            target_member_id=member_id,
            target_role=target_role,
        )


class AgencyMembersService:
    """Membership management for the caller's agency."""

    def __init__(
        self,
        session: Session,
        ctx: AgencyAuthContext,
        monitor: SecurityMonitor,
        request: Optional[Request] = None,
    ):
        if not ctx.agency_id:
            raise ValueError("AgencyMembersService requires an agency context")
        self.session = session
        self.ctx = ctx
        self.monitor = monitor
        self.request = request

    @property
    def agency_id(self) -> str:
        return self.ctx.agency_id

    def _scoped(self):
        return self.session.query(AgencyMember).filter(AgencyMember.agency_id == self.agency_id)

    def _get_member(self, member_id: str) -> AgencyMember:
        member = self._scoped().filter(AgencyMember.id == member_id).first()
        if member is None:
            raise NotFoundError("Member not found in this agency")
        return member

    def _record(self, severity: SecuritySeverity, **details) -> None:
        self.monitor.record_event(
            SecurityEventType.PERMISSION_CHANGE,
            severity,
            request=self.request,
            user_id=self.ctx.user_id,
            user_name=self.ctx.user_name,
            agency_id=self.agency_id,
            details=details,
        )

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_members(self) -> list[dict]:
        members = (
            self._scoped()
            .order_by(AgencyMember.created_at.asc(), AgencyMember.id.asc())
            .all()
        )
        return [m.to_dict() for m in members]

    # ------------------------------------------------------------------
    # Add
    # ------------------------------------------------------------------

    def add_member(self, user_name: str, role: AgencyRole = AgencyRole.STAFF) -> AgencyMember:
        """
        Add an existing user to the agency.

        Raises:
            ForbiddenError: non-owner adding an owner, or member limit reached
            NotFoundError: no user with that name
            ConflictError: already a member
        """
        role = AgencyRole(role)
        if role == AgencyRole.OWNER and not self.ctx.is_owner:
            record_privilege_escalation(
                self.monitor,
                self.request,
                self.ctx,
                action="add_member",
                attempted_role=role.value,
                target_user=user_name,
            )
            raise ForbiddenError("Only owners can add other owners")

        user = self.session.query(User).filter(User.name == user_name).first()
        if user is None:
            raise NotFoundError("User not found")

        if self._scoped().filter(AgencyMember.user_id == user.id).first() is not None:
            raise ConflictError("User is already a member of this agency")

        agency = self.session.query(Agency).filter(Agency.id == self.agency_id).first()
        if agency is None:
            raise NotFoundError("Agency not found")
        if count_member_slots(self.session, self.agency_id) >= agency.max_users:
            logger.warning(
                "Member limit reached",
                extra={**self.ctx.log_extra(), "max_users": agency.max_users},
            )
            raise ForbiddenError(
                f"Agency has reached its member limit ({agency.max_users} users)"
            )

        has_membership = (
            self.session.query(AgencyMember.id)
            .filter(AgencyMember.user_id == user.id)
            .first()
            is not None
        )
        member = AgencyMember.create(
            user_id=user.id,
            agency_id=self.agency_id,
            role=role,
            is_default_agency=not has_membership,
        )
        self.session.add(member)
        try:
            self.session.commit()
        except IntegrityError:
            self.session.rollback()
            raise ConflictError("User is already a member of this agency")
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(
                "Failed to add member",
                extra={**self.ctx.log_extra(), "target_user": user_name, "error": str(e)},
            )
            raise InternalError("Failed to add member")
        self.session.refresh(member)

        safe_log_activity(
            self.session,
            ActivityAction.MEMBER_ADDED,
            user_name=self.ctx.user_name,
            agency_id=self.agency_id,
            details={
                "added_user": user.name,
                "added_user_id": user.id,
                "role": role.value,
                "added_by_user_id": self.ctx.user_id,
            },
        )
        self._record(
            SecuritySeverity.LOW,
            action="member_added",
            added_user=user.name,
            added_user_id=user.id,
            role=role.value,
        )
        logger.info(
            "Member added",
            extra={**self.ctx.log_extra(), "member_id": member.id, "role": role.value},
        )
        return member

    # ------------------------------------------------------------------
    # Update
    # ------------------------------------------------------------------

    def update_member(
        self,
        member_id: str,
        new_role: Optional[AgencyRole] = None,
        permissions: Optional[dict[str, bool]] = None,
        status: Optional[MemberStatus] = None,
    ) -> MemberUpdateResult:
        """
        Change a member's role, permission overrides and/or status.

        Role only resets permissions to the role defaults. Permissions only
        merge into the current set. Both apply the overrides on top of the
        new role's defaults. Legacy aliases are resynced in every case.

        Raises:
            ValidationError: nothing to change, unknown permission keys, bad status
            NotFoundError: member not in this agency
            ForbiddenError: change would leave the agency without an owner
        """
        if new_role is None and permissions is None and status is None:
            raise ValidationError("Either newRole, permissions or status must be provided")
        new_role = AgencyRole(new_role) if new_role is not None else None
        if permissions is not None:
            invalid = invalid_permission_keys(permissions)
            if invalid:
                raise ValidationError(f"Invalid permission keys: {', '.join(invalid)}")
        if status is not None:
            status = MemberStatus(status)
            if status not in ASSIGNABLE_STATUSES:
                raise ValidationError("Status must be one of: active, revoked")

        member = self._get_member(member_id)
        member_name = member.user.name if member.user else None
        current_role = AgencyRole(member.role)

        if new_role == AgencyRole.OWNER and not self.ctx.is_owner:
            record_privilege_escalation(
                self.monitor,
                self.request,
                self.ctx,
                action="promote_to_owner",
                attempted_role=new_role.value,
                target_member_id=member_id,
            )
            raise ForbiddenError("Only owners can promote members to owner")

        if (
            permissions is not None
            and permissions.get(AgencyPermission.MANAGE_TEAM.value) is False
            and member.user_id == self.ctx.user_id
            and self._other_active_owners(member.id) == 0
        ):
            raise ForbiddenError("Cannot remove manage team permission as the only owner")

        final_role = new_role or current_role
        if new_role is not None and permissions is not None:
            final_permissions = merge_permissions(get_default_permissions(new_role), permissions)
        elif new_role is not None:
            final_permissions = merge_permissions(get_default_permissions(new_role))
        elif permissions is not None:
            final_permissions = merge_permissions(member.permissions or {}, permissions)
        else:
            final_permissions = merge_permissions(member.permissions or {})

        values = {"permissions": final_permissions, "updated_at": utcnow()}
        if new_role is not None:
            values["role"] = new_role.value
        if status is not None:
            values["status"] = status.value

        stays_active_owner = (
            final_role == AgencyRole.OWNER
            and (status or MemberStatus(member.status)) == MemberStatus.ACTIVE
        )
        self._conditional_update(member.id, values, guard_last_owner=not stays_active_owner)
        self.session.refresh(member)

        elevated = elevated_permissions_granted(final_role, permissions or {})
        if elevated:
            self._record(
                SecuritySeverity.MEDIUM,
                action="elevated_permissions_granted",
                target_user=member_name,
                target_user_id=member.user_id,
                target_role=final_role.value,
                elevated_permissions=elevated,
            )

        if new_role is not None and permissions is None and status is None:
            action = ActivityAction.MEMBER_ROLE_CHANGED
            message = f"{member_name}'s role changed to {new_role.value}"
        elif new_role is not None:
            action = ActivityAction.MEMBER_ROLE_CHANGED
            message = f"{member_name}'s role changed to {new_role.value} with custom permissions"
        elif permissions is not None:
            action = ActivityAction.MEMBER_PERMISSIONS_CHANGED
            message = f"{member_name}'s permissions updated"
        else:
            action = ActivityAction.MEMBER_STATUS_CHANGED
            message = f"{member_name}'s status changed to {status.value}"

        details = {
            "updated_user": member_name,
            "updated_user_id": member.user_id,
            "updated_by_user_id": self.ctx.user_id,
        }
        if new_role is not None:
            details.update(old_role=current_role.value, new_role=new_role.value)
        if permissions is not None:
            details["changed_permissions"] = dict(permissions)
        if status is not None:
            details["new_status"] = status.value

        safe_log_activity(
            self.session,
            action,
            user_name=self.ctx.user_name,
            agency_id=self.agency_id,
            details=details,
        )

        owner_involved = AgencyRole.OWNER in (current_role, new_role)
        self._record(
            SecuritySeverity.HIGH if owner_involved else SecuritySeverity.MEDIUM,
            action=action.value,
            updated_user=member_name,
            updated_user_id=member.user_id,
            old_role=current_role.value,
            new_role=final_role.value,
            changed_permissions=sorted(permissions) if permissions else [],
        )

        return MemberUpdateResult(
            member=member,
            action=action,
            message=message,
            changed_permissions=sorted(permissions) if permissions else [],
        )

    # ------------------------------------------------------------------
    # Remove
    # ------------------------------------------------------------------

    def remove_member(self, member_id: str) -> str:
        """
        Remove a member from the agency. Returns the removed user's name.

        Raises:
            NotFoundError: member not in this agency
            ForbiddenError: non-owner removing an owner, or last owner
        """
        member = self._get_member(member_id)
        removed_name = member.user.name if member.user else None
        removed_user_id = member.user_id

        if member.role == AgencyRole.OWNER.value and not self.ctx.is_owner:
            record_privilege_escalation(
                self.monitor,
                self.request,
                self.ctx,
                action="remove_owner_attempt",
                target_member_id=member_id,
            )
            raise ForbiddenError("Only owners can remove other owners")

        self._conditional_delete(member.id)

        safe_log_activity(
            self.session,
            ActivityAction.MEMBER_REMOVED,
            user_name=self.ctx.user_name,
            agency_id=self.agency_id,
            details={
                "removed_user": removed_name,
                "removed_user_id": removed_user_id,
                "removed_by_user_id": self.ctx.user_id,
            },
        )
        self._record(
            SecuritySeverity.MEDIUM,
            action="member_removed",
            removed_user=removed_name,
            removed_user_id=removed_user_id,
        )
        logger.info(
            "Member removed",
            extra={**self.ctx.log_extra(), "member_id": member_id},
        )
        return removed_name

    # ------------------------------------------------------------------
    # Last-owner guard
    # ------------------------------------------------------------------

    def _other_active_owners(self, member_id: str) -> int:
        return (
            self._scoped()
            .filter(
                AgencyMember.id != member_id,
                AgencyMember.role == AgencyRole.OWNER.value,
                AgencyMember.status == MemberStatus.ACTIVE.value,
            )
            .count()
        )

    def _lock_owner_rows(self) -> None:
        # FOR UPDATE is rendered on PostgreSQL; SQLite serializes writers instead
        (
            self.session.query(AgencyMember.id)
            .filter(
                AgencyMember.agency_id == self.agency_id,
                AgencyMember.role == AgencyRole.OWNER.value,
            )
            .with_for_update()
            .all()
        )

    def _last_owner_guard(self, member_id: str):
        """WHERE clause: target is not an active owner, or another active owner exists."""
        owners = aliased(AgencyMember)
        other_owners = (
            select(func.count(owners.id))
            .where(
                owners.agency_id == self.agency_id,
                owners.id != member_id,
                owners.role == AgencyRole.OWNER.value,
                owners.status == MemberStatus.ACTIVE.value,
            )
            .scalar_subquery()
        )
        target_is_active_owner = and_(
            AgencyMember.role == AgencyRole.OWNER.value,
            AgencyMember.status == MemberStatus.ACTIVE.value,
        )
        return or_(not_(target_is_active_owner), other_owners > 0)

    def _target_filter(self, member_id: str):
        return and_(AgencyMember.id == member_id, AgencyMember.agency_id == self.agency_id)

    def _conditional_update(self, member_id: str, values: dict, guard_last_owner: bool) -> None:
        try:
            if guard_last_owner:
                self._lock_owner_rows()
            query = self.session.query(AgencyMember).filter(self._target_filter(member_id))
            if guard_last_owner:
                query = query.filter(self._last_owner_guard(member_id))
            updated = query.update(values, synchronize_session=False)
            if updated == 0:
                self.session.rollback()
                logger.warning(
                    "Member update rejected - last owner",
                    extra={**self.ctx.log_extra(), "member_id": member_id},
                )
                raise ForbiddenError(
                    "Cannot change the role or status of the only owner. "
                    "Promote another member first."
                )
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(
                "Failed to update member",
                extra={**self.ctx.log_extra(), "member_id": member_id, "error": str(e)},
            )
            raise InternalError("Failed to update member")

    def _conditional_delete(self, member_id: str) -> None:
        try:
            self._lock_owner_rows()
            deleted = (
                self.session.query(AgencyMember)
                .filter(self._target_filter(member_id), self._last_owner_guard(member_id))
                .delete(synchronize_session=False)
            )
            if deleted == 0:
                self.session.rollback()
                logger.warning(
                    "Member removal rejected - last owner",
                    extra={**self.ctx.log_extra(), "member_id": member_id},
                )
                raise ForbiddenError(
                    "Cannot remove the only owner of the agency. Transfer ownership first."
                )
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(
                "Failed to remove member",
                extra={**self.ctx.log_extra(), "member_id": member_id, "error": str(e)},
            )
            raise InternalError("Failed to remove member")
