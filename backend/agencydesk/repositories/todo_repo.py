"""Agency-scoped todo queries."""

from typing import List, Optional

from sqlalchemy import or_

from agencydesk.models.todo import Todo
from agencydesk.repositories.base_repo import AgencyScopedRepository


class TodoRepository(AgencyScopedRepository[Todo]):

    def _get_model_class(self) -> type[Todo]:
        return Todo

    def visible_query(self, restrict_to_user: Optional[str] = None, include_completed: bool = True):
        """
        Scoped query for listing.

        restrict_to_user limits rows to tasks the user created or is
        assigned to (callers without can_view_all_tasks).
        """
        query = self.query()
        if restrict_to_user is not None:
            query = query.filter(
                or_(Todo.created_by == restrict_to_user, Todo.assigned_to == restrict_to_user)
            )
        if not include_completed:
            query = query.filter(Todo.completed.is_(False))
        return query

    def list_page(
        self,
        page: int,
        page_size: int,
        restrict_to_user: Optional[str] = None,
        include_completed: bool = True,
    ) -> tuple[List[Todo], int]:
        """One page ordered newest first; id breaks ties so pages are stable."""
        query = self.visible_query(restrict_to_user, include_completed)
        total = query.count()
        items = (
            query.order_by(Todo.created_at.desc(), Todo.id.asc())
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return items, total

    def in_display_order(self) -> List[Todo]:
        return self.query().order_by(
            Todo.display_order.asc(), Todo.created_at.asc(), Todo.id.asc()
        ).all()

    def neighbor(self, todo: Todo, direction: str) -> Optional[Todo]:
        """
        The adjacent task by position in display order, or None at either end.

        Position rather than display_order value, so tasks sharing an order
        still have a neighbour.
        """
        ordered = self.in_display_order()
        index = next(i for i, t in enumerate(ordered) if t.id == todo.id)
        target = index - 1 if direction == "up" else index + 1
        if 0 <= target < len(ordered):
            return ordered[target]
        return None

    def next_display_order(self) -> int:
        last = self.query().order_by(Todo.display_order.desc()).first()
        return (last.display_order + 1) if last is not None else 0
