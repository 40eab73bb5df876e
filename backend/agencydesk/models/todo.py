"""
Todo (task) model.

Tenant-scoped: every query MUST go through TodoRepository, which filters by
the resolved agency. notes and transcription hold ciphertext at rest
(enc:v1:...) and are decrypted only in TodoService responses.
"""

import enum

from sqlalchemy import Column, String, Boolean, DateTime, Integer, Text, JSON, Index

from agencydesk.db_base import Base
from agencydesk.models.base import TimestampMixin, AgencyScopedMixin, generate_uuid, as_utc


class TodoStatus(str, enum.Enum):
    TODO = "todo"
    IN_PROGRESS = "in_progress"
    DONE = "done"


class TodoPriority(str, enum.Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class Todo(Base, TimestampMixin, AgencyScopedMixin):
    __tablename__ = "todos"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    text = Column(Text, nullable=False)
    completed = Column(Boolean, nullable=False, default=False)
    status = Column(String(20), nullable=False, default=TodoStatus.TODO.value)
    priority = Column(String(20), nullable=False, default=TodoPriority.MEDIUM.value)

    created_by = Column(String(100), nullable=False)
    assigned_to = Column(String(100), nullable=True, index=True)
    updated_by = Column(String(100), nullable=True)

    due_date = Column(DateTime(timezone=True), nullable=True)
    notes = Column(Text, nullable=True)
    transcription = Column(Text, nullable=True)
    subtasks = Column(JSON, nullable=False, default=list)

    display_order = Column(Integer, nullable=False, default=0)
    reminder_at = Column(DateTime(timezone=True), nullable=True)
    reminder_sent = Column(Boolean, nullable=False, default=False)

    __table_args__ = (
        Index("ix_todos_agency_order", "agency_id", "display_order"),
        Index("ix_todos_agency_created", "agency_id", "created_at"),
    )

    def is_involved(self, user_name: str) -> bool:
        """True if the user created, is assigned to, or last updated this task."""
        return user_name in (self.created_by, self.assigned_to, self.updated_by)

    def to_dict(self) -> dict:
        """Serialize with stored (possibly encrypted) field values."""
        return {
            "id": self.id,
            "text": self.text,
            "completed": self.completed,
            "status": self.status,
            "priority": self.priority,
            "created_by": self.created_by,
            "assigned_to": self.assigned_to,
            "updated_by": self.updated_by,
            "due_date": as_utc(self.due_date).isoformat() if self.due_date else None,
            "notes": self.notes,
            "transcription": self.transcription,
            "subtasks": list(self.subtasks or []),
            "display_order": self.display_order,
            "reminder_at": as_utc(self.reminder_at).isoformat() if self.reminder_at else None,
            "reminder_sent": self.reminder_sent,
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
            "updated_at": as_utc(self.updated_at).isoformat() if self.updated_at else None,
        }
