"""
Login lockout with exponential backoff.

Failed logins are the auth_failure rows already written by SecurityMonitor.
The failure count over the last 24 hours is taken per client IP and per
attempted user name, and the higher of the two selects the lockout:

    3 failures  -> 30 seconds
    6 failures  -> 5 minutes
    10 failures -> 1 hour
    15 failures -> 24 hours

measured from the most recent failure. A successful login marks the
failures for that user name and IP as resolved; the rows stay for audit.

A lookup error fails open and is logged.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agencydesk.models.base import as_utc
from agencydesk.models.security_event import SecurityEvent
from agencydesk.platform.security_monitor import SecurityEventType

logger = logging.getLogger(__name__)

FAILURE_WINDOW = timedelta(hours=24)

# (failures, lockout seconds), ascending
LOCKOUT_THRESHOLDS = (
    (3, 30),
    (6, 300),
    (10, 3600),
    (15, 86400),
)


def lockout_seconds_for(failures: int) -> int:
    seconds = 0
    for attempts, lockout in LOCKOUT_THRESHOLDS:
        if failures >= attempts:
            seconds = lockout
    return seconds


@dataclass
class LockoutStatus:
    allowed: bool
    failures: int = 0
    retry_after: int = 0


class LoginLockout:
    """Reads and resolves auth_failure events on a service-tier session."""

    def __init__(self, session: Session):
        self.session = session

    def _recent_failures(self, ip_address: Optional[str], user_name: Optional[str]) -> list[SecurityEvent]:
        matchers = []
        if ip_address:
            matchers.append(SecurityEvent.ip_address == ip_address)
        if user_name:
            matchers.append(SecurityEvent.user_name == user_name)
        if not matchers:
            return []

        cutoff = datetime.now(timezone.utc) - FAILURE_WINDOW
        rows = (
            self.session.query(SecurityEvent)
            .filter(
                SecurityEvent.event_type == SecurityEventType.AUTH_FAILURE.value,
                SecurityEvent.created_at >= cutoff,
                or_(*matchers),
            )
            .order_by(SecurityEvent.created_at.desc())
            .all()
        )
        return [row for row in rows if not (row.details or {}).get("resolved")]

    def check(self, ip_address: Optional[str], user_name: Optional[str]) -> LockoutStatus:
        try:
            rows = self._recent_failures(ip_address, user_name)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.error(
                "Login lockout check failed",
                extra={"ip_address": ip_address, "user_name": user_name, "error": str(e)},
            )
            return LockoutStatus(allowed=True)

        by_ip = sum(1 for row in rows if ip_address and row.ip_address == ip_address)
        by_name = sum(1 for row in rows if user_name and row.user_name == user_name)
        failures = max(by_ip, by_name)

        lockout = lockout_seconds_for(failures)
        if lockout == 0:
            return LockoutStatus(allowed=True, failures=failures)

        locked_until = as_utc(rows[0].created_at) + timedelta(seconds=lockout)
        remaining = (locked_until - datetime.now(timezone.utc)).total_seconds()
        if remaining <= 0:
            return LockoutStatus(allowed=True, failures=failures)
        return LockoutStatus(allowed=False, failures=failures, retry_after=math.ceil(remaining))

    def resolve(self, ip_address: Optional[str], user_name: Optional[str]) -> int:
        """Mark recent failures for this IP and user name as resolved."""
        try:
            rows = self._recent_failures(ip_address, user_name)
            resolved_at = datetime.now(timezone.utc).isoformat()
            for row in rows:
                row.details = {**(row.details or {}), "resolved": True, "resolved_at": resolved_at}
            self.session.commit()
            return len(rows)
        except SQLAlchemyError as e:
            self.session.rollback()
            logger.warning(
                "Failed to resolve login failures",
                extra={"ip_address": ip_address, "user_name": user_name, "error": str(e)},
            )
            return 0
