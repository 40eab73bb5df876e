"""
Security event model.

Append-only record of authorization-relevant events: failed logins, access
denials, IDOR attempts, privilege escalation attempts, permission changes.
Rows are written by SecurityMonitor on the service tier only.
"""

from sqlalchemy import Column, String, DateTime, JSON, Text, Index

from agencydesk.db_base import Base
from agencydesk.models.base import generate_uuid, utcnow


class SecurityEvent(Base):
    __tablename__ = "security_events"

    id = Column(String(36), primary_key=True, default=generate_uuid)
    event_type = Column(String(64), nullable=False, index=True)
    severity = Column(String(16), nullable=False)
    user_id = Column(String(36), nullable=True)
    user_name = Column(String(100), nullable=True)
    agency_id = Column(String(36), nullable=True, index=True)
    ip_address = Column(String(45), nullable=True)
    user_agent = Column(Text, nullable=True)
    endpoint = Column(String(255), nullable=True)
    details = Column(JSON, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_security_events_type_created", "event_type", "created_at"),
        Index("ix_security_events_ip_created", "ip_address", "created_at"),
    )
