"""
Activity log model.

Append-only feed of user-visible actions (task created, member added, ...).
Written through agencydesk.platform.activity.safe_log_activity only and
read back through ActivityRepository.
"""

from sqlalchemy import Column, String, DateTime, JSON, Index

from agencydesk.db_base import Base
from agencydesk.models.base import AgencyScopedMixin, as_utc, generate_uuid, utcnow


class ActivityLog(Base, AgencyScopedMixin):
    __tablename__ = "activity_log"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    action = Column(String(100), nullable=False, index=True)
    todo_id = Column(String(36), nullable=True)
    todo_text = Column(String(100), nullable=True)
    user_name = Column(String(100), nullable=False)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_activity_log_agency_created", "agency_id", "created_at"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "action": self.action,
            "todo_id": self.todo_id,
            "todo_text": self.todo_text,
            "user_name": self.user_name,
            "details": dict(self.details or {}),
            "created_at": as_utc(self.created_at).isoformat() if self.created_at else None,
        }
