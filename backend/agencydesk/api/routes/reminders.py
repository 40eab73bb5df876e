"""
Reminders API Routes.

- /api/reminders: agency-scoped reminder CRUD (agency_route)
- /api/reminders/process: cron entry point (system_route). Processes due
  reminders of ALL agencies on the service tier.
"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from agencydesk.auth.agency_context import AgencyAuthContext
from agencydesk.auth.route_auth import agency_route, system_route
from agencydesk.database.session import get_database, get_db_session, get_settings_from_request
from agencydesk.models.task_reminder import ReminderStatus, ReminderType
from agencydesk.platform.errors import success_response
from agencydesk.services.reminder_processor import ReminderProcessor
from agencydesk.services.reminder_service import ReminderService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/reminders", tags=["reminders"])


class CreateReminderRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    todo_id: str = Field(..., alias="todoId")
    reminder_time: datetime = Field(..., alias="reminderTime")
    reminder_type: ReminderType = Field(ReminderType.BOTH, alias="reminderType")
    message: Optional[str] = Field(None, max_length=500)
    user_id: Optional[str] = Field(None, alias="userId")


class UpdateReminderRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    reminder_id: str = Field(..., alias="reminderId")
    reminder_time: Optional[datetime] = Field(None, alias="reminderTime")
    status: Optional[ReminderStatus] = None
    message: Optional[str] = Field(None, max_length=500)


@router.get("")
@agency_route()
async def list_reminders(
    request: Request,
    ctx: AgencyAuthContext,
    todo_id: Optional[str] = Query(None, alias="todoId"),
    user_id: Optional[str] = Query(None, alias="userId"),
    reminder_status: Optional[ReminderStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db_session),
):
    reminders = ReminderService(db, ctx).list_reminders(
        todo_id=todo_id,
        user_id=user_id,
        status=reminder_status,
    )
    return success_response(reminders)


@router.post("")
@agency_route()
async def create_reminder(
    request: Request,
    body: CreateReminderRequest,
    ctx: AgencyAuthContext,
    db: Session = Depends(get_db_session),
):
    reminder = ReminderService(db, ctx).create_reminder(
        body.todo_id,
        body.reminder_time,
        reminder_type=body.reminder_type,
        message=body.message,
        user_id=body.user_id,
    )
    return success_response(reminder, status_code=status.HTTP_201_CREATED)


@router.patch("")
@agency_route()
async def update_reminder(
    request: Request,
    body: UpdateReminderRequest,
    ctx: AgencyAuthContext,
    db: Session = Depends(get_db_session),
):
    reminder = ReminderService(db, ctx).update_reminder(
        body.reminder_id,
        reminder_time=body.reminder_time,
        status=body.status,
        message=body.message,
        message_set="message" in body.model_fields_set,
    )
    return success_response(reminder)


@router.delete("")
@agency_route()
async def delete_reminder(
    request: Request,
    ctx: AgencyAuthContext,
    id: str = Query(..., min_length=1),
    db: Session = Depends(get_db_session),
):
    ReminderService(db, ctx).delete_reminder(id)
    return success_response(message="Reminder deleted")


async def _process(request: Request):
    settings = get_settings_from_request(request)
    with get_database(request).service_scope() as db:
        summary = ReminderProcessor(
            db,
            request.app.state.push_notifier,
            window_minutes=settings.reminder_window_minutes,
        ).process_due()
    return success_response(summary, message=f"Processed {summary['processed']} reminders")


@router.post("/process")
@system_route
async def process_reminders(request: Request):
    """Deliver due reminders (cron)."""
    return await _process(request)


@router.get("/process")
@system_route
async def process_reminders_get(request: Request):
    return await _process(request)
