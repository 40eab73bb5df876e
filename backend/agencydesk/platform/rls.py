"""
Row-level-security session variables.

Defense in depth only: application-level agency filtering in the
repositories is the primary control. On PostgreSQL the resolved context is
published as transaction-local settings that RLS policies can read:

    current_setting('app.agency_id', true)
    current_setting('app.user_id', true)
    current_setting('app.user_name', true)

The values are kept in session.info["agency_context"] on every dialect.
Services commit partway through a request, so an after_begin listener
re-issues set_config at the start of every later transaction on a session
that carries a context.

A failure here is logged and never fails the request.
"""

import logging
from typing import Optional

from sqlalchemy import event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

SESSION_INFO_KEY = "agency_context"

_SET_CONFIG = text(
    "SELECT set_config('app.agency_id', :agency_id, true), "
    "set_config('app.user_id', :user_id, true), "
    "set_config('app.user_name', :user_name, true)"
)


def _is_postgres(dialect) -> bool:
    return str(dialect.name).startswith("postgres")


def _publish(connection, values: dict) -> None:
    if _is_postgres(connection.dialect):
        connection.execute(_SET_CONFIG, values)


@event.listens_for(Session, "after_begin")
def _republish_on_begin(session, transaction, connection):
    values = session.info.get(SESSION_INFO_KEY)
    if values is None:
        return
    try:
        _publish(connection, values)
    except SQLAlchemyError as e:
        logger.warning(
            "Failed to re-apply RLS session variables",
            extra={"agency_id": values.get("agency_id"), "error": str(e)},
        )


def set_session_variables(
    db: Session,
    agency_id: Optional[str],
    user_id: Optional[str],
    user_name: Optional[str],
) -> bool:
    """
    Publish agency/user identity on the database session.

    Returns True when the variables were set, False on failure.
    """
    values = {
        "agency_id": agency_id or "",
        "user_id": user_id or "",
        "user_name": user_name or "",
    }
    try:
        db.info[SESSION_INFO_KEY] = values
        if _is_postgres(db.get_bind().dialect):
            db.execute(_SET_CONFIG, values)
        return True
    except SQLAlchemyError as e:
        logger.warning(
            "Failed to set RLS session variables",
            extra={
                "agency_id": agency_id,
                "user_id": user_id,
                "error": str(e),
            },
        )
        return False


def set_agency_context(db: Session, ctx) -> bool:
    """Publish an AgencyAuthContext on the session (see set_session_variables)."""
    return set_session_variables(db, ctx.agency_id, ctx.user_id, ctx.user_name)


def get_session_variables(db: Session) -> Optional[dict]:
    """Values recorded on the session, if any."""
    return db.info.get(SESSION_INFO_KEY)
