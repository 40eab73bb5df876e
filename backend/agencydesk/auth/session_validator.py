"""
Server-side session validation.

Resolves the caller's identity from an opaque session token. Runs on the
service tier: user_sessions is not readable through the public (RLS) tier.

SECURITY:
- Only the sha256 hash of a session token is stored or compared
- X-User-Name is NOT accepted as standalone authentication; it is honoured
  only together with a valid X-API-Key (service callers)
- All failures surface as the same generic 401; the specific reason is
  logged server-side only

Token sources, in order:
1. HttpOnly session_token cookie
2. X-Session-Token header
3. Authorization: Bearer <token>
4. Legacy session cookie
"""

import hashlib
import hmac
import logging
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from fastapi import Request
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from agencydesk.config import Settings
from agencydesk.models.base import utcnow, as_utc
from agencydesk.models.user import User
from agencydesk.models.user_session import UserSession
from agencydesk.platform.errors import AuthenticationError
from agencydesk.platform.security_monitor import SecurityEventType, SecuritySeverity

logger = logging.getLogger(__name__)

SESSION_COOKIE_NAME = "session_token"
LEGACY_SESSION_COOKIE_NAME = "session"
SESSION_TOKEN_HEADER = "X-Session-Token"
SERVICE_API_KEY_HEADER = "X-API-Key"
SERVICE_USER_HEADER = "X-User-Name"


@dataclass(frozen=True)
class SessionIdentity:
    """Authenticated caller, before any agency is resolved."""
    user_id: str
    user_name: str
    user_role: str
    global_role: Optional[str] = None
    agency_id: Optional[str] = None
    session_id: Optional[str] = None
    via_service_key: bool = False


def hash_session_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_session_token() -> str:
    return secrets.token_urlsafe(32)


def extract_session_token(request: Request) -> Optional[str]:
    token = request.cookies.get(SESSION_COOKIE_NAME)
    if token:
        return token

    token = request.headers.get(SESSION_TOKEN_HEADER)
    if token:
        return token

    auth_header = request.headers.get("Authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header[len("Bearer "):].strip()
        if token:
            return token

    return request.cookies.get(LEGACY_SESSION_COOKIE_NAME) or None


def create_session(
    db: Session,
    user: User,
    settings: Settings,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
    agency_id: Optional[str] = None,
) -> tuple[str, datetime]:
    """
    Create a session row and return the plaintext token with its expiry.

    The plaintext token is returned exactly once; only its hash is stored.
    """
    token = generate_session_token()
    now = utcnow()
    expires_at = now + timedelta(hours=settings.session_ttl_hours)
    db.add(UserSession(
        user_id=user.id,
        token_hash=hash_session_token(token),
        expires_at=expires_at,
        is_valid=True,
        last_activity=now,
        current_agency_id=agency_id,
        ip_address=ip_address,
        user_agent=user_agent,
    ))
    db.commit()
    logger.info("Session created", extra={"user_id": user.id, "agency_id": agency_id})
    return token, expires_at


def invalidate_session(db: Session, token_hash: str) -> bool:
    updated = (
        db.query(UserSession)
        .filter(UserSession.token_hash == token_hash)
        .update({UserSession.is_valid: False}, synchronize_session=False)
    )
    db.commit()
    return updated > 0


def invalidate_all_user_sessions(db: Session, user_id: str) -> int:
    """Invalidate every session of a user (logout everywhere)."""
    updated = (
        db.query(UserSession)
        .filter(UserSession.user_id == user_id, UserSession.is_valid.is_(True))
        .update({UserSession.is_valid: False}, synchronize_session=False)
    )
    db.commit()
    logger.info("All user sessions invalidated", extra={"user_id": user_id, "count": updated})
    return updated


class SessionValidator:
    """Validates the session (or service credential) on a request."""

    def __init__(self, db: Session, settings: Settings, security_monitor=None):
        self.db = db
        self.settings = settings
        self.security_monitor = security_monitor

    def validate(self, request: Request) -> SessionIdentity:
        """
        Return the caller's identity or raise AuthenticationError (401).
        """
        api_key = request.headers.get(SERVICE_API_KEY_HEADER)
        if api_key:
            return self._validate_service_caller(request, api_key)

        token = extract_session_token(request)
        if not token:
            raise AuthenticationError("Authentication required")

        session_row = (
            self.db.query(UserSession)
            .filter(UserSession.token_hash == hash_session_token(token))
            .first()
        )
        if session_row is None:
            self._reject("Unknown session token")

        now = utcnow()
        if not session_row.is_valid or as_utc(session_row.expires_at) < now:
            self._reject("Session expired", user_id=session_row.user_id)

        idle_timeout = timedelta(minutes=self.settings.session_idle_timeout_minutes)
        if session_row.last_activity and now - as_utc(session_row.last_activity) > idle_timeout:
            session_row.is_valid = False
            self.db.commit()
            self._reject("Session expired due to inactivity", user_id=session_row.user_id)

        user = self.db.get(User, session_row.user_id)
        if user is None:
            self._reject("Session user not found", user_id=session_row.user_id)

        self._touch(session_row, now)

        return SessionIdentity(
            user_id=user.id,
            user_name=user.name,
            user_role=user.role,
            global_role=user.global_role,
            agency_id=session_row.current_agency_id,
            session_id=session_row.id,
        )

    def _validate_service_caller(self, request: Request, api_key: str) -> SessionIdentity:
        expected = self.settings.service_api_key
        if not expected or not hmac.compare_digest(api_key.encode(), expected.encode()):
            if self.security_monitor is not None:
                self.security_monitor.record_event(
                    SecurityEventType.INVALID_API_KEY,
                    SecuritySeverity.HIGH,
                    request=request,
                    details={"reason": "service key mismatch"},
                )
            self._reject("Invalid service API key")

        user_name = (request.headers.get(SERVICE_USER_HEADER) or "").strip()
        if not user_name:
            self._reject("Service call without X-User-Name")

        user = self.db.query(User).filter(User.name == user_name).first()
        if user is None:
            self._reject("Service call for unknown user")

        return SessionIdentity(
            user_id=user.id,
            user_name=user.name,
            user_role=user.role,
            global_role=user.global_role,
            via_service_key=True,
        )

    def _touch(self, session_row: UserSession, now: datetime) -> None:
        try:
            session_row.last_activity = now
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.debug("Failed to update session activity", extra={"error": str(e)})

    def _reject(self, reason: str, user_id: Optional[str] = None) -> None:
        logger.info("Session rejected", extra={"reason": reason, "user_id": user_id})
        raise AuthenticationError("Authentication required")
