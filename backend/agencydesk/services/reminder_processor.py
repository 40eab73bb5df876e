"""
Due reminder processing (cron).

Runs on the service tier across ALL agencies: this is the one place where
agency scoping is intentionally not applied. Each chat message is still
written into the agency of the reminder's todo.

Invoked by POST/GET /api/reminders/process with a system credential.
"""

import logging
from datetime import timedelta
from typing import Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agencydesk.models.base import utcnow
from agencydesk.models.task_reminder import ReminderStatus, ReminderType, TaskReminder
from agencydesk.models.todo import Todo
from agencydesk.models.user import User
from agencydesk.platform.notifications import DeliveryResult, PushNotifier, send_chat_reminder

logger = logging.getLogger(__name__)

CHAT_TYPES = (ReminderType.CHAT_MESSAGE.value, ReminderType.BOTH.value)
PUSH_TYPES = (ReminderType.PUSH_NOTIFICATION.value, ReminderType.BOTH.value)


class ReminderProcessor:
    """Delivers pending reminders that are due within the window."""

    def __init__(self, session: Session, push: PushNotifier, window_minutes: int = 5):
        self.session = session
        self.push = push
        self.window = timedelta(minutes=window_minutes)

    def due_reminders(self) -> list[TaskReminder]:
        cutoff = utcnow() + self.window
        return (
            self.session.query(TaskReminder)
            .join(Todo, Todo.id == TaskReminder.todo_id)
            .filter(
                TaskReminder.status == ReminderStatus.PENDING.value,
                TaskReminder.reminder_time <= cutoff,
                Todo.completed.is_(False),
            )
            .order_by(TaskReminder.reminder_time.asc(), TaskReminder.id.asc())
            .all()
        )

    def _recipient_name(self, reminder: TaskReminder) -> Optional[str]:
        if reminder.user_id:
            user = self.session.get(User, reminder.user_id)
            if user is not None:
                return user.name
        todo = reminder.todo
        return todo.assigned_to or todo.created_by

    def process_reminder(self, reminder: TaskReminder) -> DeliveryResult:
        todo = reminder.todo
        errors = []
        chat_ok = push_ok = True

        if reminder.reminder_type in CHAT_TYPES:
            recipient = self._recipient_name(reminder)
            result = send_chat_reminder(self.session, todo, recipient, reminder.message)
            chat_ok = result.success
            if not chat_ok:
                errors.append(f"Chat: {result.error}")

        if reminder.reminder_type in PUSH_TYPES:
            if reminder.user_id:
                result = self.push.send(todo, [reminder.user_id])
                push_ok = result.success
                if not push_ok:
                    errors.append(f"Push: {result.error}")
            else:
                push_ok = False
                errors.append("Push: No user ID available")

        if reminder.reminder_type == ReminderType.BOTH.value:
            success = chat_ok and push_ok
        elif reminder.reminder_type == ReminderType.CHAT_MESSAGE.value:
            success = chat_ok
        else:
            success = push_ok

        error = "; ".join(errors) if errors else None
        reminder.status = ReminderStatus.SENT.value if success else ReminderStatus.FAILED.value
        reminder.sent_at = utcnow()
        reminder.error_message = None if success else error
        self.session.commit()
        return DeliveryResult(success, error)

    def process_due(self) -> dict:
        """Process every due reminder. Returns {processed, successful, failed}."""
        reminders = self.due_reminders()
        successful = failed = 0
        for reminder in reminders:
            try:
                result = self.process_reminder(reminder)
            except SQLAlchemyError as e:
                self.session.rollback()
                logger.error(
                    "Failed to update reminder status",
                    extra={"reminder_id": reminder.id, "error": str(e)},
                )
                failed += 1
                continue
            if result.success:
                successful += 1
            else:
                failed += 1

        logger.info(
            "Processed due reminders",
            extra={"processed": len(reminders), "successful": successful, "failed": failed},
        )
        return {"processed": len(reminders), "successful": successful, "failed": failed}
