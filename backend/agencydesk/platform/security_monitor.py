"""
Security event monitoring and alerting.

Records authorization-relevant events (access denials, IDOR attempts,
privilege escalation attempts, invalid credentials), logs them on the
"security" logger and raises alerts when per-user thresholds are crossed.

CRITICAL REQUIREMENTS:
- Recording an event NEVER fails the request that triggered it
- Events are written on the service tier in their own session, so a
  rolled-back handler transaction does not lose the event
- Event details must not contain session tokens, PINs or secrets

Usage:
    monitor = request.app.state.security_monitor
    monitor.record_event(
        SecurityEventType.ACCESS_DENIED,
        SecuritySeverity.HIGH,
        request=request,
        user_name=ctx.user_name,
        agency_id=ctx.agency_id,
        details={"requested_agency_id": path_agency_id},
    )
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

import httpx
from fastapi import Request
from sqlalchemy import func

from agencydesk.models.security_event import SecurityEvent
from agencydesk.platform.redaction import redact_secrets

logger = logging.getLogger(__name__)
security_logger = logging.getLogger("security")
fallback_logger = logging.getLogger("security.fallback")


class SecurityEventType(str, Enum):
    AUTH_FAILURE = "auth_failure"
    SESSION_INVALID = "session_invalid"
    ACCESS_DENIED = "access_denied"
    PRIVILEGE_ESCALATION_ATTEMPT = "privilege_escalation_attempt"
    PERMISSION_CHANGE = "permission_change"
    UNAUTHORIZED_API_ACCESS = "unauthorized_api_access"
    INVALID_API_KEY = "invalid_api_key"
    BULK_DELETE = "bulk_delete"


class SecuritySeverity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


_LOG_LEVELS = {
    SecuritySeverity.LOW: logging.INFO,
    SecuritySeverity.MEDIUM: logging.WARNING,
    SecuritySeverity.HIGH: logging.ERROR,
    SecuritySeverity.CRITICAL: logging.CRITICAL,
}

_SLACK_COLORS = {
    SecuritySeverity.LOW: "#36a64f",
    SecuritySeverity.MEDIUM: "#ff9800",
    SecuritySeverity.HIGH: "#f44336",
    SecuritySeverity.CRITICAL: "#9c27b0",
}


@dataclass(frozen=True)
class AlertThreshold:
    count: int
    window_seconds: int
    severity: SecuritySeverity


ALERT_THRESHOLDS: dict[SecurityEventType, AlertThreshold] = {
    SecurityEventType.AUTH_FAILURE: AlertThreshold(5, 300, SecuritySeverity.HIGH),
    SecurityEventType.ACCESS_DENIED: AlertThreshold(5, 300, SecuritySeverity.MEDIUM),
    SecurityEventType.INVALID_API_KEY: AlertThreshold(3, 300, SecuritySeverity.HIGH),
    SecurityEventType.PRIVILEGE_ESCALATION_ATTEMPT: AlertThreshold(1, 60, SecuritySeverity.CRITICAL),
}

ALERT_COOLDOWN = timedelta(minutes=15)


def client_ip(request: Optional[Request]) -> Optional[str]:
    """Best-effort client address (first X-Forwarded-For hop, else peer)."""
    if request is None:
        return None
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()[:45]
    return request.client.host if request.client else None


class SecurityMonitor:
    """Persists security events and sends threshold alerts."""

    def __init__(
        self,
        database,
        webhook_url: Optional[str] = None,
        http_client: Optional[httpx.Client] = None,
    ):
        self.database = database
        self.webhook_url = webhook_url
        self._http_client = http_client
        self._recent_alerts: dict[str, datetime] = {}

    def record_event(
        self,
        event_type: SecurityEventType,
        severity: SecuritySeverity,
        *,
        request: Optional[Request] = None,
        user_id: Optional[str] = None,
        user_name: Optional[str] = None,
        agency_id: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ) -> Optional[str]:
        """
        Record a security event.

        Returns the stored event id, or None if persistence failed (the event
        is then written to the fallback logger).
        """
        event_type = SecurityEventType(event_type)
        severity = SecuritySeverity(severity)
        safe_details = redact_secrets(details or {})
        ip_address = client_ip(request)
        endpoint = f"{request.method} {request.url.path}" if request is not None else None

        security_logger.log(
            _LOG_LEVELS[severity],
            "Security event: %s",
            event_type.value,
            extra={
                "event_type": event_type.value,
                "severity": severity.value,
                "user_id": user_id,
                "user_name": user_name,
                "agency_id": agency_id,
                "endpoint": endpoint,
                "ip_address": ip_address,
                "details": safe_details,
            },
        )

        event_id = self._persist(
            event_type=event_type.value,
            severity=severity.value,
            user_id=user_id,
            user_name=user_name,
            agency_id=agency_id,
            ip_address=ip_address,
            user_agent=request.headers.get("user-agent") if request is not None else None,
            endpoint=endpoint,
            details=safe_details,
        )
        if event_id is not None:
            self._check_threshold(event_type, user_name or ip_address, agency_id, safe_details)
        return event_id

    def _persist(self, **fields) -> Optional[str]:
        try:
            with self.database.service_scope() as session:
                try:
                    event = SecurityEvent(**fields)
                    session.add(event)
                    session.commit()
                    return event.id
                except Exception:
                    session.rollback()
                    raise
        except Exception as e:
            fallback_logger.error(
                "Security event persistence failed",
                extra={**fields, "error": str(e)},
            )
            return None

    def count_recent(
        self,
        event_type: SecurityEventType,
        identifier: Optional[str],
        window_seconds: int,
    ) -> int:
        """Count stored events of a type for a user name or IP within a window."""
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=window_seconds)
        with self.database.service_scope() as session:
            query = session.query(func.count(SecurityEvent.id)).filter(
                SecurityEvent.event_type == SecurityEventType(event_type).value,
                SecurityEvent.created_at >= cutoff,
            )
            if identifier:
                query = query.filter(
                    (SecurityEvent.user_name == identifier)
                    | (SecurityEvent.ip_address == identifier)
                )
            return query.scalar() or 0

    def _check_threshold(
        self,
        event_type: SecurityEventType,
        identifier: Optional[str],
        agency_id: Optional[str],
        details: dict,
    ) -> None:
        threshold = ALERT_THRESHOLDS.get(event_type)
        if threshold is None:
            return
        try:
            count = self.count_recent(event_type, identifier, threshold.window_seconds)
            if count < threshold.count:
                return
            key = f"{event_type.value}:{identifier or 'unknown'}"
            if not self._should_send(key):
                logger.debug("Security alert suppressed (cooldown)", extra={"alert_key": key})
                return
            self._send_alert(
                event_type=event_type,
                severity=threshold.severity,
                message=(
                    f"{count} {event_type.value} event(s) in "
                    f"{threshold.window_seconds}s for {identifier or 'unknown'}"
                ),
                metadata={"agency_id": agency_id, "count": count, **details},
            )
        except Exception as e:
            logger.warning(
                "Security threshold check failed",
                extra={"event_type": event_type.value, "error": str(e)},
            )

    def _should_send(self, key: str) -> bool:
        now = datetime.now(timezone.utc)
        last_sent = self._recent_alerts.get(key)
        if last_sent and now - last_sent < ALERT_COOLDOWN:
            return False
        self._recent_alerts[key] = now
        return True

    def _send_alert(
        self,
        event_type: SecurityEventType,
        severity: SecuritySeverity,
        message: str,
        metadata: dict,
    ) -> None:
        security_logger.log(
            _LOG_LEVELS[severity],
            "SECURITY ALERT: %s",
            message,
            extra={"event_type": event_type.value, "severity": severity.value},
        )
        if not self.webhook_url:
            return

        payload = {
            "attachments": [
                {
                    "color": _SLACK_COLORS[severity],
                    "title": f"Security alert: {event_type.value}",
                    "text": message,
                    "fields": [
                        {"title": key.replace("_", " ").title(), "value": str(value), "short": True}
                        for key, value in metadata.items()
                        if value is not None
                    ],
                }
            ]
        }
        try:
            client = self._http_client or httpx.Client(timeout=5.0)
            try:
                response = client.post(self.webhook_url, json=payload)
                response.raise_for_status()
            finally:
                if self._http_client is None:
                    client.close()
        except httpx.HTTPError as e:
            logger.error(
                "Failed to deliver security webhook",
                extra={"event_type": event_type.value, "error": str(e)},
            )


def get_security_monitor(request: Request) -> SecurityMonitor:
    return request.app.state.security_monitor
