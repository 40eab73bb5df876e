"""
Todos API Routes.

Every handler runs with an agency context (agency_route) and goes through
TodoService / TodoReorderService, which scope all queries to that agency.
Pagination: page >= 1, pageSize >= 1 and silently capped at
Settings.max_page_size.
"""

import logging
from datetime import datetime
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, Request, status
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from agencydesk.auth.agency_context import AgencyAuthContext
from agencydesk.auth.route_auth import agency_route
from agencydesk.database.session import get_db_session, get_settings_from_request
from agencydesk.models.todo import TodoPriority, TodoStatus
from agencydesk.platform.errors import ValidationError, success_response
from agencydesk.platform.field_encryption import FieldEncryptor
from agencydesk.services.todo_reorder import TodoReorderService
from agencydesk.services.todo_service import TodoService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/todos", tags=["todos"])


class CreateTodoRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    text: str = Field(..., max_length=1000)
    priority: TodoPriority = TodoPriority.MEDIUM
    status: TodoStatus = TodoStatus.TODO
    assigned_to: Optional[str] = Field(None, alias="assignedTo")
    due_date: Optional[datetime] = Field(None, alias="dueDate")
    notes: Optional[str] = None
    transcription: Optional[str] = None
    subtasks: Optional[list] = None


class UpdateTodoRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    id: str
    text: Optional[str] = Field(None, max_length=1000)
    completed: Optional[bool] = None
    status: Optional[TodoStatus] = None
    priority: Optional[TodoPriority] = None
    assigned_to: Optional[str] = Field(None, alias="assignedTo")
    due_date: Optional[datetime] = Field(None, alias="dueDate")
    notes: Optional[str] = None
    transcription: Optional[str] = None
    subtasks: Optional[list] = None
    reminder_at: Optional[datetime] = Field(None, alias="reminderAt")


class ReorderRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    todo_id: str = Field(..., alias="todoId")
    new_order: Optional[int] = Field(None, alias="newOrder")
    direction: Optional[Literal["up", "down"]] = None
    target_todo_id: Optional[str] = Field(None, alias="targetTodoId")


def _encryptor(request: Request) -> FieldEncryptor:
    return request.app.state.field_encryptor


def _page_size(request: Request, requested: Optional[int]) -> int:
    settings = get_settings_from_request(request)
    if requested is None:
        return settings.default_page_size
    if requested < 1:
        raise ValidationError("pageSize must be at least 1")
    return min(requested, settings.max_page_size)


@router.get("")
@agency_route()
async def list_todos(
    request: Request,
    ctx: AgencyAuthContext,
    id: Optional[str] = None,
    page: int = 1,
    page_size: Optional[int] = Query(None, alias="pageSize"),
    include_completed: bool = Query(False, alias="includeCompleted"),
    db: Session = Depends(get_db_session),
):
    """List tasks (paginated), or fetch one with ?id=."""
    service = TodoService(db, ctx, _encryptor(request))
    if id:
        return success_response(service.get_todo(id))
    if page < 1:
        raise ValidationError("page must be at least 1")
    result = service.list_todos(page, _page_size(request, page_size), include_completed)
    return success_response(result)


@router.post("")
@agency_route()
async def create_todo(
    request: Request,
    body: CreateTodoRequest,
    ctx: AgencyAuthContext,
    db: Session = Depends(get_db_session),
):
    todo = TodoService(db, ctx, _encryptor(request)).create_todo(
        body.text,
        priority=body.priority,
        status=body.status,
        assigned_to=body.assigned_to,
        due_date=body.due_date,
        notes=body.notes,
        transcription=body.transcription,
        subtasks=body.subtasks,
    )
    return success_response(todo, status_code=status.HTTP_201_CREATED)


@router.put("")
@agency_route()
async def update_todo(
    request: Request,
    body: UpdateTodoRequest,
    ctx: AgencyAuthContext,
    db: Session = Depends(get_db_session),
):
    updates = body.model_dump(exclude_unset=True, exclude={"id"})
    todo = TodoService(db, ctx, _encryptor(request)).update_todo(body.id, updates)
    return success_response(todo)


@router.delete("")
@agency_route()
async def delete_todo(
    request: Request,
    ctx: AgencyAuthContext,
    id: str = Query(..., min_length=1),
    db: Session = Depends(get_db_session),
):
    TodoService(db, ctx, _encryptor(request)).delete_todo(id)
    return success_response(message="Task deleted")


@router.post("/reorder")
@agency_route()
async def reorder_todos(
    request: Request,
    body: ReorderRequest,
    ctx: AgencyAuthContext,
    db: Session = Depends(get_db_session),
):
    updated = TodoReorderService(db, ctx, _encryptor(request)).reorder(
        body.todo_id,
        new_order=body.new_order,
        direction=body.direction,
        target_todo_id=body.target_todo_id,
    )
    return success_response({"updatedTasks": updated})
