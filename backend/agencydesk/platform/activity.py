"""
Activity feed writer.

Writes ActivityLog rows for user-visible actions. Activity logging is a side
effect: on failure the row is rolled back, a warning is logged and the
caller continues.
"""

import logging
from enum import Enum
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agencydesk.models.activity_log import ActivityLog

logger = logging.getLogger(__name__)


class ActivityAction(str, Enum):
    AGENCY_CREATED = "agency_created"
    MEMBER_ADDED = "member_added"
    MEMBER_REMOVED = "member_removed"
    MEMBER_ROLE_CHANGED = "member_role_changed"
    MEMBER_PERMISSIONS_CHANGED = "member_permissions_changed"
    MEMBER_STATUS_CHANGED = "member_status_changed"
    INVITATION_CREATED = "invitation_created"
    INVITATION_ACCEPTED = "invitation_accepted"
    TASK_CREATED = "task_created"
    TASK_UPDATED = "task_updated"
    TASK_COMPLETED = "task_completed"
    TASK_REOPENED = "task_reopened"
    TASK_DELETED = "task_deleted"
    TASK_REORDERED = "task_reordered"
    REMINDER_CREATED = "reminder_created"
    REMINDER_CANCELLED = "reminder_cancelled"


def safe_log_activity(
    db: Session,
    action: ActivityAction,
    user_name: str,
    agency_id: Optional[str],
    todo_id: Optional[str] = None,
    todo_text: Optional[str] = None,
    details: Optional[dict[str, Any]] = None,
) -> Optional[ActivityLog]:
    """Append an activity row and commit it. Returns None on failure."""
    try:
        entry = ActivityLog(
            action=ActivityAction(action).value,
            user_name=user_name,
            agency_id=agency_id,
            todo_id=todo_id,
            todo_text=todo_text[:100] if todo_text else None,
            details=details or {},
        )
        db.add(entry)
        db.commit()
        return entry
    except SQLAlchemyError as e:
        db.rollback()
        logger.warning(
            "Failed to write activity log",
            extra={
                "action": getattr(action, "value", action),
                "agency_id": agency_id,
                "todo_id": todo_id,
                "error": str(e),
            },
        )
        return None
