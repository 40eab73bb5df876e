"""Chat message model (written by the reminder processor)."""

from sqlalchemy import Column, String, DateTime, Text, JSON

from agencydesk.db_base import Base
from agencydesk.models.base import AgencyScopedMixin, generate_uuid, utcnow


class Message(Base, AgencyScopedMixin):
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    text = Column(Text, nullable=False)
    created_by = Column(String(100), nullable=False)
    recipient = Column(String(100), nullable=True, index=True)
    related_todo_id = Column(String(36), nullable=True)
    mentions = Column(JSON, nullable=False, default=list)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
