"""Agency-scoped activity feed queries."""

from typing import List, Optional

from sqlalchemy import or_

from agencydesk.models.activity_log import ActivityLog
from agencydesk.models.todo import Todo
from agencydesk.repositories.base_repo import AgencyScopedRepository
from agencydesk.repositories.todo_repo import TodoRepository


class ActivityRepository(AgencyScopedRepository[ActivityLog]):

    def _get_model_class(self) -> type[ActivityLog]:
        return ActivityLog

    def list_feed(
        self,
        limit: int,
        offset: int = 0,
        todo_id: Optional[str] = None,
        visible_to: Optional[str] = None,
    ) -> List[ActivityLog]:
        """
        Newest first; id breaks ties so pages are stable.

        visible_to limits the feed to the user's own actions and activity on
        tasks they created or are assigned to.
        """
        query = self.query()
        if todo_id:
            query = query.filter(ActivityLog.todo_id == todo_id)
        if visible_to is not None:
            visible_todo_ids = (
                TodoRepository(self.db_session, self.ctx)
                .visible_query(restrict_to_user=visible_to)
                .with_entities(Todo.id)
            )
            query = query.filter(
                or_(
                    ActivityLog.todo_id.in_(visible_todo_ids.subquery().select()),
                    ActivityLog.user_name == visible_to,
                )
            )
        return (
            query.order_by(ActivityLog.created_at.desc(), ActivityLog.id.desc())
            .offset(offset)
            .limit(limit)
            .all()
        )
