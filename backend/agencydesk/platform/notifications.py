"""
Reminder delivery channels.

- chat: a System message in the todo's agency, addressed to the recipient
- push: JSON POST to PUSH_NOTIFICATION_URL

Both return a DeliveryResult instead of raising so one failed channel does
not stop the other.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agencydesk.models.base import as_utc, utcnow
from agencydesk.models.message import Message
from agencydesk.models.todo import Todo

logger = logging.getLogger(__name__)

SYSTEM_SENDER = "System"
PUSH_TIMEOUT_SECONDS = 10.0


@dataclass
class DeliveryResult:
    success: bool
    error: Optional[str] = None


def format_due_date(due_date: datetime, now: Optional[datetime] = None) -> str:
    """Human-readable due date relative to today (UTC)."""
    due_date = as_utc(due_date)
    now = now or utcnow()
    days = (due_date.date() - now.date()).days
    if days < 0:
        return f"Overdue ({due_date:%b} {due_date.day})"
    if days == 0:
        return f"Today at {due_date:%H:%M}"
    if days == 1:
        return "Tomorrow"
    return f"{due_date:%A, %b} {due_date.day}"


def build_reminder_message(todo: Todo, custom_message: Optional[str] = None) -> str:
    lines = ["Reminder", ""]
    priority = f" ({todo.priority.capitalize()})" if todo.priority else ""
    lines.append(f"{todo.text}{priority}")
    if todo.due_date:
        lines.append(f"Due: {format_due_date(todo.due_date)}")
    if custom_message:
        lines.append("")
        lines.append(custom_message)
    return "\n".join(lines)


def send_chat_reminder(
    db: Session,
    todo: Todo,
    recipient: str,
    custom_message: Optional[str] = None,
) -> DeliveryResult:
    """Write the reminder as a chat message. Commits."""
    try:
        db.add(Message(
            agency_id=todo.agency_id,
            text=build_reminder_message(todo, custom_message),
            created_by=SYSTEM_SENDER,
            recipient=recipient,
            related_todo_id=todo.id,
            mentions=[recipient],
        ))
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(
            "Failed to send reminder chat notification",
            extra={"todo_id": todo.id, "error": str(e)},
        )
        return DeliveryResult(False, str(e))
    return DeliveryResult(True)


class PushNotifier:
    """Posts task_due_soon notifications to the push gateway."""

    def __init__(self, endpoint: Optional[str], http_client: Optional[httpx.Client] = None):
        self.endpoint = endpoint
        self._http_client = http_client

    def send(self, todo: Todo, user_ids: List[str]) -> DeliveryResult:
        if not self.endpoint:
            return DeliveryResult(False, "Push notifications not configured")

        payload = {
            "type": "task_due_soon",
            "payload": {
                "taskId": todo.id,
                "taskText": todo.text,
                "dueDate": as_utc(todo.due_date).isoformat() if todo.due_date else None,
            },
            "userIds": user_ids,
        }
        try:
            client = self._http_client or httpx.Client(timeout=PUSH_TIMEOUT_SECONDS)
            try:
                response = client.post(self.endpoint, json=payload)
                response.raise_for_status()
            finally:
                if self._http_client is None:
                    client.close()
        except httpx.HTTPError as e:
            logger.error(
                "Failed to send reminder push notification",
                extra={"todo_id": todo.id, "error": str(e)},
            )
            return DeliveryResult(False, str(e))
        return DeliveryResult(True)
