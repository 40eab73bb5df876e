"""
Activity feed reads.

Reading the feed needs can_view_activity_log. Callers with
can_view_all_tasks see the agency's whole feed. Others see their own
actions and activity on tasks they created or are assigned to. Asking for
the history of a task they cannot see is "Task not found".
"""

import logging
from typing import Optional

from sqlalchemy.orm import Session

from agencydesk.auth.agency_context import AgencyAuthContext
from agencydesk.constants.permissions import AgencyPermission
from agencydesk.platform.errors import ForbiddenError, NotFoundError, ValidationError
from agencydesk.repositories.activity_repo import ActivityRepository
from agencydesk.repositories.todo_repo import TodoRepository

logger = logging.getLogger(__name__)

DEFAULT_FEED_LIMIT = 50
MAX_FEED_LIMIT = 500


class ActivityService:

    def __init__(self, session: Session, ctx: AgencyAuthContext):
        self.session = session
        self.ctx = ctx
        self.repo = ActivityRepository(session, ctx)

    def list_activity(
        self,
        limit: int = DEFAULT_FEED_LIMIT,
        offset: int = 0,
        todo_id: Optional[str] = None,
    ) -> list[dict]:
        if not self.ctx.can(AgencyPermission.VIEW_ACTIVITY_LOG):
            raise ForbiddenError("You do not have permission to view the activity log")
        if limit < 1 or offset < 0:
            raise ValidationError("limit must be positive and offset zero or greater")
        limit = min(limit, MAX_FEED_LIMIT)

        visible_to = None
        if not self.ctx.can(AgencyPermission.VIEW_ALL_TASKS):
            visible_to = self.ctx.user_name
            if todo_id is not None:
                todo = TodoRepository(self.session, self.ctx).get_by_id(todo_id)
                if todo is None or visible_to not in (todo.created_by, todo.assigned_to):
                    raise NotFoundError("Task not found")

        entries = self.repo.list_feed(limit, offset, todo_id=todo_id, visible_to=visible_to)
        logger.debug(
            "Activity feed read",
            extra={**self.ctx.log_extra(), "count": len(entries), "todo_id": todo_id},
        )
        return [entry.to_dict() for entry in entries]
