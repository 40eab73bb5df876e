"""
Reminder Service: agency-scoped CRUD for task reminders.

A reminder is reachable only through its todo's agency: the reminder is
fetched through ReminderRepository and its todo is re-fetched through
TodoRepository before any mutation. Either lookup failing is "not found".

Inside the agency, callers see and change only reminders they are involved
in (reminder creator or recipient, or creator/assignee/last editor of the
todo) unless they hold can_view_all_tasks (read) or can_edit_all_tasks
(write).
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from agencydesk.auth.agency_context import AgencyAuthContext
from agencydesk.constants.permissions import AgencyPermission, MemberStatus
from agencydesk.models.agency_member import AgencyMember
from agencydesk.models.base import as_utc, utcnow
from agencydesk.models.task_reminder import ReminderStatus, ReminderType, TaskReminder
from agencydesk.models.todo import Todo
from agencydesk.models.user import User
from agencydesk.platform.activity import ActivityAction, safe_log_activity
from agencydesk.platform.errors import ForbiddenError, NotFoundError, ValidationError
from agencydesk.repositories.reminder_repo import ReminderRepository
from agencydesk.repositories.todo_repo import TodoRepository

logger = logging.getLogger(__name__)

# Statuses a client may set; sent/failed belong to the processor
CLIENT_STATUSES = (ReminderStatus.PENDING, ReminderStatus.CANCELLED)


class ReminderService:

    def __init__(self, session: Session, ctx: AgencyAuthContext):
        self.session = session
        self.ctx = ctx
        self.reminders = ReminderRepository(session, ctx)
        self.todos = TodoRepository(session, ctx)

    def _is_involved(self, reminder: Optional[TaskReminder], todo: Todo) -> bool:
        if todo.is_involved(self.ctx.user_name):
            return True
        if reminder is None:
            return False
        return reminder.created_by == self.ctx.user_name or reminder.user_id == self.ctx.user_id

    def _get_todo(self, todo_id: str) -> Todo:
        todo = self.todos.get_by_id(todo_id)
        if todo is None:
            raise NotFoundError("Task not found")
        return todo

    def _get_for_write(self, reminder_id: str) -> tuple[TaskReminder, Todo]:
        reminder = self.reminders.get_by_id(reminder_id)
        if reminder is None:
            raise NotFoundError("Reminder not found")
        todo = self.todos.get_by_id(reminder.todo_id)
        if todo is None:
            raise NotFoundError("Reminder not found")
        if not (self.ctx.can(AgencyPermission.EDIT_ALL_TASKS) or self._is_involved(reminder, todo)):
            raise ForbiddenError("Access denied")
        return reminder, todo

    def _verify_recipient(self, user_id: Optional[str]) -> Optional[str]:
        if not user_id:
            return None
        query = self.session.query(User.id).filter(User.id == user_id)
        if self.ctx.is_multi_tenant:
            query = query.join(AgencyMember, AgencyMember.user_id == User.id).filter(
                AgencyMember.agency_id == self.ctx.agency_id,
                AgencyMember.status == MemberStatus.ACTIVE.value,
            )
        if query.first() is None:
            raise ValidationError("Reminder recipient is not a member of this agency")
        return user_id

    @staticmethod
    def _future_time(value: datetime) -> datetime:
        value = as_utc(value)
        if value <= utcnow():
            raise ValidationError("Reminder time must be in the future")
        return value

    # ------------------------------------------------------------------

    def list_reminders(
        self,
        todo_id: Optional[str] = None,
        user_id: Optional[str] = None,
        status: Optional[ReminderStatus] = None,
    ) -> list[dict]:
        view_all = self.ctx.can(AgencyPermission.VIEW_ALL_TASKS)
        if user_id and user_id != self.ctx.user_id and not view_all:
            raise ForbiddenError("Access denied")
        if todo_id:
            self._get_todo(todo_id)

        reminders = self.reminders.list_for(
            todo_id=todo_id,
            user_id=user_id,
            status=ReminderStatus(status).value if status else None,
            involved_user=None if view_all else (self.ctx.user_id, self.ctx.user_name),
        )
        return [r.to_dict() for r in reminders]

    def create_reminder(
        self,
        todo_id: str,
        reminder_time: datetime,
        reminder_type: ReminderType = ReminderType.BOTH,
        message: Optional[str] = None,
        user_id: Optional[str] = None,
    ) -> dict:
        reminder_time = self._future_time(reminder_time)
        todo = self._get_todo(todo_id)
        if not (self.ctx.can(AgencyPermission.EDIT_ALL_TASKS) or self._is_involved(None, todo)):
            raise ForbiddenError("Access denied")
        if todo.completed:
            raise ValidationError("Cannot add reminder to completed task")

        reminder = self.reminders.create({
            "todo_id": todo.id,
            "user_id": self._verify_recipient(user_id),
            "reminder_time": reminder_time,
            "reminder_type": ReminderType(reminder_type).value,
            "message": message or None,
            "status": ReminderStatus.PENDING.value,
            "created_by": self.ctx.user_name,
        })

        if todo.reminder_at is None or as_utc(todo.reminder_at) > reminder_time:
            self.todos.apply(todo, {
                "reminder_at": reminder_time,
                "reminder_sent": False,
                "updated_by": self.ctx.user_name,
            })

        safe_log_activity(
            self.session,
            ActivityAction.REMINDER_CREATED,
            user_name=self.ctx.user_name,
            agency_id=self.ctx.agency_id,
            todo_id=todo.id,
            todo_text=todo.text,
            details={"reminder_id": reminder.id, "reminder_type": reminder.reminder_type},
        )
        return reminder.to_dict()

    def update_reminder(
        self,
        reminder_id: str,
        reminder_time: Optional[datetime] = None,
        status: Optional[ReminderStatus] = None,
        message: Optional[str] = None,
        message_set: bool = False,
    ) -> dict:
        """message_set distinguishes an explicit null message from an absent one."""
        reminder, todo = self._get_for_write(reminder_id)

        changes = {}
        if reminder_time is not None:
            changes["reminder_time"] = self._future_time(reminder_time)
        if status is not None:
            status = ReminderStatus(status)
            if status not in CLIENT_STATUSES:
                raise ValidationError("Invalid status. Can only update to pending or cancelled")
            changes["status"] = status.value
        if message_set:
            changes["message"] = message
        if not changes:
            raise ValidationError("No valid fields to update")

        reminder = self.reminders.apply(reminder, changes)
        if status == ReminderStatus.CANCELLED:
            safe_log_activity(
                self.session,
                ActivityAction.REMINDER_CANCELLED,
                user_name=self.ctx.user_name,
                agency_id=self.ctx.agency_id,
                todo_id=todo.id,
                todo_text=todo.text,
                details={"reminder_id": reminder.id},
            )
        return reminder.to_dict()

    def delete_reminder(self, reminder_id: str) -> None:
        reminder, _ = self._get_for_write(reminder_id)
        self.reminders.delete(reminder.id)
