"""
SQLAlchemy models for Agency Desk.

Importing this package registers every table on Base.metadata.
"""

from agencydesk.models.base import TimestampMixin, AgencyScopedMixin, generate_uuid, utcnow, as_utc
from agencydesk.models.user import User
from agencydesk.models.user_session import UserSession
from agencydesk.models.agency import Agency
from agencydesk.models.agency_member import AgencyMember
from agencydesk.models.agency_invitation import AgencyInvitation, InvitationStatus
from agencydesk.models.todo import Todo, TodoStatus, TodoPriority
from agencydesk.models.task_reminder import TaskReminder, ReminderType, ReminderStatus
from agencydesk.models.message import Message
from agencydesk.models.activity_log import ActivityLog
from agencydesk.models.security_event import SecurityEvent

__all__ = [
    "TimestampMixin",
    "AgencyScopedMixin",
    "generate_uuid",
    "utcnow",
    "as_utc",
    "User",
    "UserSession",
    "Agency",
    "AgencyMember",
    "AgencyInvitation",
    "InvitationStatus",
    "Todo",
    "TodoStatus",
    "TodoPriority",
    "TaskReminder",
    "ReminderType",
    "ReminderStatus",
    "Message",
    "ActivityLog",
    "SecurityEvent",
]
