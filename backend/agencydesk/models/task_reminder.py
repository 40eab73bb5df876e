"""
Task reminder model.

A reminder belongs to a todo and inherits its agency. agency_id is copied
from the todo at creation so reminder queries can be scoped without a join;
the todo is still re-fetched through the scoped repository before mutation.
"""

import enum

from sqlalchemy import Column, String, DateTime, ForeignKey, Text, Index
from sqlalchemy.orm import relationship

from agencydesk.db_base import Base
from agencydesk.models.base import AgencyScopedMixin, generate_uuid, utcnow, as_utc


class ReminderType(str, enum.Enum):
    PUSH_NOTIFICATION = "push_notification"
    CHAT_MESSAGE = "chat_message"
    BOTH = "both"


class ReminderStatus(str, enum.Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TaskReminder(Base, AgencyScopedMixin):
    __tablename__ = "task_reminders"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    todo_id = Column(
        String(36),
        ForeignKey("todos.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id = Column(String(36), ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    reminder_time = Column(DateTime(timezone=True), nullable=False)
    reminder_type = Column(String(30), nullable=False, default=ReminderType.BOTH.value)
    message = Column(Text, nullable=True)
    status = Column(String(20), nullable=False, default=ReminderStatus.PENDING.value)
    created_by = Column(String(100), nullable=False)
    sent_at = Column(DateTime(timezone=True), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    todo = relationship("Todo", lazy="joined")

    __table_args__ = (
        Index("ix_task_reminders_status_time", "status", "reminder_time"),
    )

    def to_dict(self, include_todo: bool = True) -> dict:
        data = {
            "id": self.id,
            "todo_id": self.todo_id,
            "user_id": self.user_id,
            "reminder_time": as_utc(self.reminder_time).isoformat(),
            "reminder_type": self.reminder_type,
            "message": self.message,
            "status": self.status,
            "created_by": self.created_by,
            "sent_at": as_utc(self.sent_at).isoformat() if self.sent_at else None,
            "error_message": self.error_message,
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
        }
        if include_todo and self.todo is not None:
            data["todo"] = {
                "id": self.todo.id,
                "text": self.todo.text,
                "priority": self.todo.priority,
                "due_date": as_utc(self.todo.due_date).isoformat() if self.todo.due_date else None,
                "assigned_to": self.todo.assigned_to,
                "completed": self.todo.completed,
                "created_by": self.todo.created_by,
            }
        return data
