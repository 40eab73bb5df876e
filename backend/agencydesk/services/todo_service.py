"""
Todo Service: agency-scoped task CRUD with field-level encryption.

CRITICAL SECURITY REQUIREMENTS:
- All todo access goes through TodoRepository (agency-filtered)
- A todo of another agency is "Task not found" (404), never 403
- notes/transcription are encrypted before every write and decrypted only
  in responses

Access rules inside the agency:
- list/get: callers without can_view_all_tasks see only tasks they created
  or are assigned to
- create: can_create_tasks; assigning to someone else needs can_assign_tasks
- update: creator/assignee/last editor with can_edit_own_tasks, anyone else
  needs can_edit_all_tasks
- delete: creator with can_delete_own_tasks, anyone else needs
  can_delete_all_tasks
"""

import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy.orm import Session

from agencydesk.auth.agency_context import AgencyAuthContext
from agencydesk.constants.permissions import AgencyPermission, MemberStatus
from agencydesk.models.agency_member import AgencyMember
from agencydesk.models.todo import Todo, TodoPriority, TodoStatus
from agencydesk.models.user import User
from agencydesk.platform.activity import ActivityAction, safe_log_activity
from agencydesk.platform.errors import ForbiddenError, NotFoundError, ValidationError
from agencydesk.platform.field_encryption import ENCRYPTED_TODO_FIELDS, FieldEncryptor
from agencydesk.repositories.todo_repo import TodoRepository

logger = logging.getLogger(__name__)

# Fields a client may change through PUT
UPDATABLE_FIELDS = (
    "text",
    "completed",
    "status",
    "priority",
    "assigned_to",
    "due_date",
    "notes",
    "transcription",
    "subtasks",
    "reminder_at",
)


class TodoService:
    """Task operations for one request's agency context."""

    def __init__(self, session: Session, ctx: AgencyAuthContext, encryptor: FieldEncryptor):
        self.session = session
        self.ctx = ctx
        self.encryptor = encryptor
        self.repo = TodoRepository(session, ctx)

    def serialize(self, todo: Todo) -> dict:
        return self.encryptor.decrypt_fields(todo.to_dict())

    def _restrict_to(self) -> Optional[str]:
        if self.ctx.can(AgencyPermission.VIEW_ALL_TASKS):
            return None
        return self.ctx.user_name

    def _get_visible(self, todo_id: str) -> Todo:
        todo = self.repo.get_by_id(todo_id)
        if todo is None:
            raise NotFoundError("Task not found")
        restrict = self._restrict_to()
        if restrict is not None and restrict not in (todo.created_by, todo.assigned_to):
            raise NotFoundError("Task not found")
        return todo

    def _verify_assignee(self, assigned_to: Optional[str]) -> Optional[str]:
        """Assignee must be an active member of the caller's agency."""
        if not assigned_to:
            return None
        assigned_to = assigned_to.strip()
        if assigned_to != self.ctx.user_name and not self.ctx.can(AgencyPermission.ASSIGN_TASKS):
            raise ForbiddenError("You do not have permission to assign tasks")

        query = self.session.query(User.id).filter(User.name == assigned_to)
        if self.ctx.is_multi_tenant:
            query = query.join(AgencyMember, AgencyMember.user_id == User.id).filter(
                AgencyMember.agency_id == self.ctx.agency_id,
                AgencyMember.status == MemberStatus.ACTIVE.value,
            )
        if query.first() is None:
            raise ValidationError("Assignee is not a member of this agency")
        return assigned_to

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_todo(self, todo_id: str) -> dict:
        return self.serialize(self._get_visible(todo_id))

    def list_todos(self, page: int, page_size: int, include_completed: bool = False) -> dict:
        items, total = self.repo.list_page(
            page,
            page_size,
            restrict_to_user=self._restrict_to(),
            include_completed=include_completed,
        )
        return {
            "items": [self.serialize(t) for t in items],
            "page": page,
            "pageSize": page_size,
            "total": total,
            "hasMore": page * page_size < total,
        }

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create_todo(
        self,
        text: str,
        priority: TodoPriority = TodoPriority.MEDIUM,
        status: TodoStatus = TodoStatus.TODO,
        assigned_to: Optional[str] = None,
        due_date: Optional[datetime] = None,
        notes: Optional[str] = None,
        transcription: Optional[str] = None,
        subtasks: Optional[list] = None,
    ) -> dict:
        if not self.ctx.can(AgencyPermission.CREATE_TASKS):
            raise ForbiddenError("You do not have permission to create tasks")
        text = (text or "").strip()
        if not text:
            raise ValidationError("Task text is required")

        data = {
            "text": text,
            "completed": TodoStatus(status) == TodoStatus.DONE,
            "status": TodoStatus(status).value,
            "priority": TodoPriority(priority).value,
            "created_by": self.ctx.user_name,
            "assigned_to": self._verify_assignee(assigned_to),
            "due_date": due_date,
            "notes": notes or None,
            "transcription": transcription or None,
            "subtasks": subtasks or [],
            "display_order": self.repo.next_display_order(),
        }
        todo = self.repo.create(self.encryptor.encrypt_fields(data))

        safe_log_activity(
            self.session,
            ActivityAction.TASK_CREATED,
            user_name=self.ctx.user_name,
            agency_id=self.ctx.agency_id,
            todo_id=todo.id,
            todo_text=todo.text,
            details={"priority": todo.priority, "has_transcription": bool(transcription)},
        )
        logger.info(
            "Todo created",
            extra={
                **self.ctx.log_extra(),
                "todo_id": todo.id,
                "has_notes": bool(notes),
                "has_transcription": bool(transcription),
            },
        )
        return self.serialize(todo)

    def update_todo(self, todo_id: str, updates: dict[str, Any]) -> dict:
        todo = self._get_visible(todo_id)
        involved = todo.is_involved(self.ctx.user_name)
        can_edit = self.ctx.can(AgencyPermission.EDIT_ALL_TASKS) or (
            involved and self.ctx.can(AgencyPermission.EDIT_OWN_TASKS)
        )
        if not can_edit:
            raise ForbiddenError("You do not have permission to edit this task")

        changes = {k: v for k, v in updates.items() if k in UPDATABLE_FIELDS}
        if not changes:
            raise ValidationError("No updatable fields provided")

        if "text" in changes:
            changes["text"] = (changes["text"] or "").strip()
            if not changes["text"]:
                raise ValidationError("Task text is required")
        if "status" in changes:
            changes["status"] = TodoStatus(changes["status"]).value
            if "completed" not in changes:
                changes["completed"] = changes["status"] == TodoStatus.DONE.value
        if "priority" in changes:
            changes["priority"] = TodoPriority(changes["priority"]).value
        if "assigned_to" in changes and changes["assigned_to"] != todo.assigned_to:
            changes["assigned_to"] = self._verify_assignee(changes["assigned_to"])
        if "subtasks" in changes and changes["subtasks"] is None:
            changes["subtasks"] = []
        for name in ENCRYPTED_TODO_FIELDS:
            if name in changes and not changes[name]:
                changes[name] = None

        was_completed = todo.completed
        changes["updated_by"] = self.ctx.user_name
        todo = self.repo.apply(todo, self.encryptor.encrypt_fields(changes))

        if "completed" in changes and changes["completed"] != was_completed:
            safe_log_activity(
                self.session,
                ActivityAction.TASK_COMPLETED if todo.completed else ActivityAction.TASK_REOPENED,
                user_name=self.ctx.user_name,
                agency_id=self.ctx.agency_id,
                todo_id=todo.id,
                todo_text=todo.text,
            )
        logger.info(
            "Todo updated",
            extra={
                **self.ctx.log_extra(),
                "todo_id": todo.id,
                "updated_fields": sorted(changes),
            },
        )
        return self.serialize(todo)

    def delete_todo(self, todo_id: str) -> None:
        todo = self._get_visible(todo_id)
        own = todo.created_by == self.ctx.user_name
        can_delete = self.ctx.can(AgencyPermission.DELETE_ALL_TASKS) or (
            own and self.ctx.can(AgencyPermission.DELETE_OWN_TASKS)
        )
        if not can_delete:
            raise ForbiddenError("You do not have permission to delete this task")

        text = todo.text
        self.repo.delete(todo.id)
        safe_log_activity(
            self.session,
            ActivityAction.TASK_DELETED,
            user_name=self.ctx.user_name,
            agency_id=self.ctx.agency_id,
            todo_id=todo_id,
            todo_text=text,
        )
