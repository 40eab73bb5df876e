"""Health check endpoint. No authentication."""

import logging

from fastapi import APIRouter, Request
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from agencydesk.database.session import get_database, get_settings_from_request
from agencydesk.platform.errors import error_response, success_response

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/api/health")
async def health(request: Request):
    """Report liveness and database reachability."""
    database = get_database(request)
    settings = get_settings_from_request(request)
    payload = {
        "status": "ok",
        "database": "not_configured",
        "multi_tenancy": settings.multi_tenancy_enabled,
    }
    if not database.is_configured:
        return success_response(payload)

    try:
        with database.service_scope() as db:
            db.execute(text("SELECT 1"))
    except SQLAlchemyError as e:
        logger.error("Health check database query failed", extra={"error": str(e)})
        return error_response("Database unavailable", 503, "SERVICE_UNAVAILABLE")

    payload["database"] = "ok"
    return success_response(payload)
