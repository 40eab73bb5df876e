"""
Activity API Routes.

GET /api/activity: the agency's activity feed, newest first, optionally for
one task (todoId). Scoped by ActivityRepository to the caller's agency.
"""

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from agencydesk.auth.agency_context import AgencyAuthContext
from agencydesk.auth.route_auth import agency_route
from agencydesk.database.session import get_db_session
from agencydesk.platform.errors import success_response
from agencydesk.services.activity_service import DEFAULT_FEED_LIMIT, ActivityService

router = APIRouter(prefix="/api/activity", tags=["activity"])


@router.get("")
@agency_route()
async def list_activity(
    request: Request,
    ctx: AgencyAuthContext,
    limit: int = Query(DEFAULT_FEED_LIMIT, ge=1),
    offset: int = Query(0, ge=0),
    todo_id: Optional[str] = Query(None, alias="todoId"),
    db: Session = Depends(get_db_session),
):
    entries = ActivityService(db, ctx).list_activity(limit=limit, offset=offset, todo_id=todo_id)
    return success_response(entries)
