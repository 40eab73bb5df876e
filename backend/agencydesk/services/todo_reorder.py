"""
Task reordering in list view (display_order).

Three mutually exclusive modes:
1. {todoId, newOrder}: move to an absolute position, renumber 0..n-1
2. {todoId, direction}: swap with the neighbour above or below
3. {todoId, targetTodoId}: swap with another task

The moved task and any swap target are fetched through the agency-scoped
repository; a task of another agency is "Task not found". Moving past either
end is a no-op returning an empty list.
"""

import logging
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agencydesk.auth.agency_context import AgencyAuthContext
from agencydesk.constants.permissions import AgencyPermission
from agencydesk.models.base import utcnow
from agencydesk.models.todo import Todo
from agencydesk.platform.activity import ActivityAction, safe_log_activity
from agencydesk.platform.errors import ForbiddenError, InternalError, NotFoundError, ValidationError
from agencydesk.platform.field_encryption import FieldEncryptor
from agencydesk.repositories.todo_repo import TodoRepository

logger = logging.getLogger(__name__)

DIRECTIONS = ("up", "down")


class TodoReorderService:

    def __init__(self, session: Session, ctx: AgencyAuthContext, encryptor: FieldEncryptor):
        self.session = session
        self.ctx = ctx
        self.encryptor = encryptor
        self.repo = TodoRepository(session, ctx)

    def reorder(
        self,
        todo_id: str,
        new_order: Optional[int] = None,
        direction: Optional[str] = None,
        target_todo_id: Optional[str] = None,
    ) -> list[dict]:
        """Apply one reorder mode; returns the tasks whose display_order changed."""
        if not self.ctx.can(AgencyPermission.REORDER_TASKS):
            raise ForbiddenError("You do not have permission to reorder tasks")

        modes = [m for m in (new_order, direction, target_todo_id) if m is not None]
        if len(modes) != 1:
            raise ValidationError("Provide exactly one of newOrder, direction or targetTodoId")

        todo = self.repo.get_by_id(todo_id)
        if todo is None:
            raise NotFoundError("Task not found")
        from_order = todo.display_order

        if new_order is not None:
            changed = self._move_to_position(todo, new_order)
        elif direction is not None:
            changed = self._move_relative(todo, direction)
        else:
            changed = self._swap_with(todo, target_todo_id)

        if not changed:
            return []

        self._commit(todo_id)
        for t in changed:
            self.session.refresh(t)

        safe_log_activity(
            self.session,
            ActivityAction.TASK_REORDERED,
            user_name=self.ctx.user_name,
            agency_id=self.ctx.agency_id,
            todo_id=todo.id,
            todo_text=todo.text,
            details={"from": from_order, "to": todo.display_order},
        )
        return [self.encryptor.decrypt_fields(t.to_dict()) for t in changed]

    def _commit(self, todo_id: str) -> None:
        try:
            self.session.commit()
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(
                "Failed to reorder tasks",
                extra={**self.ctx.log_extra(), "todo_id": todo_id, "error": str(e)},
            )
            raise InternalError("Failed to reorder tasks")

    @staticmethod
    def _set_order(todo: Todo, order: int) -> None:
        todo.display_order = order
        todo.updated_at = utcnow()

    def _move_to_position(self, todo: Todo, new_order: int) -> list[Todo]:
        if new_order < 0:
            raise ValidationError("newOrder must be zero or greater")

        others = [t for t in self.repo.in_display_order() if t.id != todo.id]
        others.insert(min(new_order, len(others)), todo)

        changed = []
        for index, t in enumerate(others):
            if t.display_order != index:
                self._set_order(t, index)
                changed.append(t)
        return changed

    def _move_relative(self, todo: Todo, direction: str) -> list[Todo]:
        if direction not in DIRECTIONS:
            raise ValidationError('direction must be "up" or "down"')

        neighbor = self.repo.neighbor(todo, direction)
        if neighbor is None:
            return []
        if neighbor.display_order == todo.display_order:
            ordered = [t.id for t in self.repo.in_display_order()]
            return self._move_to_position(todo, ordered.index(neighbor.id))
        return self._swap(todo, neighbor)

    def _swap_with(self, todo: Todo, target_todo_id: str) -> list[Todo]:
        if target_todo_id == todo.id:
            raise ValidationError("Cannot swap a task with itself")
        target = self.repo.get_by_id(target_todo_id)
        if target is None:
            raise NotFoundError("Target task not found")
        return self._swap(todo, target)

    def _swap(self, first: Todo, second: Todo) -> list[Todo]:
        first_order, second_order = first.display_order, second.display_order
        if first_order == second_order:
            # Duplicate orders would make the swap a no-op; separate them
            second_order = first_order + 1
        self._set_order(first, second_order)
        self._set_order(second, first_order)
        return [first, second]
