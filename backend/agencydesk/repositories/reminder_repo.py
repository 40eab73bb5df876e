"""Agency-scoped task reminder queries."""

from typing import List, Optional

from sqlalchemy import or_

from agencydesk.models.task_reminder import TaskReminder
from agencydesk.models.todo import Todo
from agencydesk.repositories.base_repo import AgencyScopedRepository


class ReminderRepository(AgencyScopedRepository[TaskReminder]):

    def _get_model_class(self) -> type[TaskReminder]:
        return TaskReminder

    def list_for(
        self,
        todo_id: Optional[str] = None,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        involved_user: Optional[tuple[str, str]] = None,
    ) -> List[TaskReminder]:
        """
        List reminders ordered by reminder_time.

        involved_user is (user_id, user_name): only reminders the user
        created, is the recipient of, or whose todo they created or are
        assigned to.
        """
        query = self.query().join(Todo, Todo.id == TaskReminder.todo_id)
        if todo_id:
            query = query.filter(TaskReminder.todo_id == todo_id)
        if user_id:
            query = query.filter(TaskReminder.user_id == user_id)
        if status:
            query = query.filter(TaskReminder.status == status)
        if involved_user is not None:
            involved_id, involved_name = involved_user
            query = query.filter(
                or_(
                    TaskReminder.created_by == involved_name,
                    TaskReminder.user_id == involved_id,
                    Todo.created_by == involved_name,
                    Todo.assigned_to == involved_name,
                )
            )
        return query.order_by(TaskReminder.reminder_time.asc(), TaskReminder.id.asc()).all()
