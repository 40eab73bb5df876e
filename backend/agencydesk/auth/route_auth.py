"""
Route authorization decorators.

CRITICAL SECURITY REQUIREMENTS:
- Every protected endpoint MUST use one of these decorators
- Authorization is enforced before the handler body runs
- Internal error detail is logged server-side, never returned to clients

Decorators:
- agency_route: session + agency context (+ optional role gate, IDOR guard,
  RLS session variables); injects `ctx: AgencyAuthContext`
- session_route: session only; injects `identity: SessionIdentity`
- system_route: cron/system credential; no user or agency context

Usage:
    @router.get("/agencies/{agency_id}/members")
    @agency_route(required_roles=ADMIN_ROLES)
    async def list_members(
        request: Request,
        agency_id: str,
        ctx: AgencyAuthContext,
        db: Session = Depends(get_db_session),
    ):
        ...

Handlers declare the injected parameter but FastAPI never sees it: the
wrapper publishes the handler's signature without it.
"""

import hmac
import inspect
import logging
from functools import wraps
from typing import Callable, Iterable, Optional

import jwt
from fastapi import HTTPException, Request

from agencydesk.auth.agency_context import (
    AgencyAccessDenied,
    AgencyAuthContext,
    AgencyContextResolver,
)
from agencydesk.auth.session_validator import SessionIdentity, SessionValidator
from agencydesk.constants.permissions import AgencyRole
from agencydesk.database.session import DatabaseNotConfiguredError
from agencydesk.platform.errors import (
    ApiError,
    AuthenticationError,
    ForbiddenError,
    InternalError,
    NotFoundError,
    error_response,
)
from agencydesk.platform.rls import set_agency_context
from agencydesk.platform.security_monitor import SecurityEventType, SecuritySeverity

logger = logging.getLogger(__name__)

CRON_JWT_SUBJECT = "cron"

# on_role_denied(request, ctx, handler_kwargs) runs before the 403 is returned
RoleDeniedHook = Callable[[Request, AgencyAuthContext, dict], None]


def _get_request_from_args(args, kwargs) -> Request:
    """Extract Request object from function arguments."""
    for arg in args:
        if isinstance(arg, Request):
            return arg
    if "request" in kwargs:
        return kwargs["request"]
    raise ValueError("Request object not found in function arguments")


def _public_signature(func: Callable, injected: str) -> inspect.Signature:
    sig = inspect.signature(func)
    return sig.replace(
        parameters=[p for name, p in sig.parameters.items() if name != injected]
    )


def _error_boundary(request: Request, exc: Exception, component: str):
    """Map an exception raised inside a protected route to a response."""
    if isinstance(exc, ApiError):
        if exc.status_code >= 500:
            logger.error(
                "Route failed",
                extra={"component": component, "path": request.url.path, "error": exc.message},
            )
        return exc.to_response()
    if isinstance(exc, DatabaseNotConfiguredError):
        return error_response("Database not configured", 503, "SERVICE_UNAVAILABLE")

    logger.error(
        "Unhandled exception in route",
        extra={
            "component": component,
            "action": request.method,
            "path": request.url.path,
            "error": str(exc),
            "error_type": type(exc).__name__,
        },
        exc_info=True,
    )
    return InternalError().to_response()


def _app_state(request: Request):
    state = request.app.state
    return state.database, state.settings, state.security_monitor


def agency_route(
    required_roles: Optional[Iterable[AgencyRole]] = None,
    on_role_denied: Optional[RoleDeniedHook] = None,
    require_multi_tenant: bool = False,
) -> Callable:
    """
    Require an authenticated caller with an active agency context.

    Order: session -> agency context -> IDOR guard (path agency_id must equal
    ctx.agency_id) -> role gate -> RLS session variables -> handler.

    Args:
        required_roles: if set, the caller's agency role must be one of these
        on_role_denied: called with (request, ctx, handler kwargs) when the
            role gate rejects, before the 403 (used to record escalation
            attempts)
        require_multi_tenant: routes that only exist with multi-tenancy on
            return 404 in legacy mode
    """
    roles = frozenset(AgencyRole(r) for r in required_roles) if required_roles else None

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs):
            request = _get_request_from_args(args, kwargs)
            try:
                database, settings, monitor = _app_state(request)

                if require_multi_tenant and not settings.multi_tenancy_enabled:
                    raise NotFoundError("Agency not found")

                with database.service_scope() as service_db:
                    identity = SessionValidator(service_db, settings, monitor).validate(request)
                    try:
                        ctx = AgencyContextResolver(service_db, settings).resolve(identity, request)
                    except AgencyAccessDenied as e:
                        monitor.record_event(
                            SecurityEventType.ACCESS_DENIED,
                            SecuritySeverity.MEDIUM,
                            request=request,
                            user_id=identity.user_id,
                            user_name=identity.user_name,
                            agency_id=e.requested_agency_id,
                            details={"reason": e.message},
                        )
                        raise

                path_agency_id = request.path_params.get("agency_id")
                if path_agency_id is not None and ctx.is_multi_tenant and path_agency_id != ctx.agency_id:
                    monitor.record_event(
                        SecurityEventType.ACCESS_DENIED,
                        SecuritySeverity.HIGH,
                        request=request,
                        user_id=ctx.user_id,
                        user_name=ctx.user_name,
                        agency_id=ctx.agency_id,
                        details={
                            "reason": "path agency does not match session agency",
                            "requested_agency_id": path_agency_id,
                            "context_agency_id": ctx.agency_id,
                        },
                    )
                    raise ForbiddenError("Access denied")

                if roles is not None and ctx.agency_role not in roles:
                    logger.warning(
                        "Agency access denied - insufficient role",
                        extra={
                            **ctx.log_extra(),
                            "required_roles": sorted(r.value for r in roles),
                            "path": request.url.path,
                            "method": request.method,
                        },
                    )
                    if on_role_denied is not None:
                        on_role_denied(request, ctx, kwargs)
                    raise ForbiddenError()

                db = kwargs.get("db")
                if db is not None:
                    set_agency_context(db, ctx)

                return await func(*args, ctx=ctx, **kwargs)
            except HTTPException:
                raise
            except Exception as e:
                return _error_boundary(request, e, func.__name__)

        wrapper.__signature__ = _public_signature(func, "ctx")
        return wrapper
    return decorator


def session_route(func: Callable) -> Callable:
    """Require an authenticated caller; injects `identity: SessionIdentity`."""
    @wraps(func)
    async def wrapper(*args, **kwargs):
        request = _get_request_from_args(args, kwargs)
        try:
            database, settings, monitor = _app_state(request)
            with database.service_scope() as service_db:
                identity = SessionValidator(service_db, settings, monitor).validate(request)
            return await func(*args, identity=identity, **kwargs)
        except HTTPException:
            raise
        except Exception as e:
            return _error_boundary(request, e, func.__name__)

    wrapper.__signature__ = _public_signature(func, "identity")
    return wrapper


def _constant_time_equals(presented: Optional[str], expected: Optional[str]) -> bool:
    if not presented or not expected:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


def _valid_cron_jwt(token: str, secret: str) -> bool:
    try:
        claims = jwt.decode(
            token,
            secret,
            algorithms=["HS256"],
            options={"require": ["exp", "sub"]},
        )
    except jwt.InvalidTokenError:
        return False
    return claims.get("sub") == CRON_JWT_SUBJECT


def verify_system_credentials(request: Request, cron_secret: Optional[str], service_api_key: Optional[str]) -> bool:
    """
    Accept, in order:
    1. Authorization: Bearer <CRON_SECRET>
    2. Authorization: Bearer <HS256 JWT signed with CRON_SECRET, sub=cron>
    3. X-API-Key equal to CRON_SECRET or SERVICE_API_KEY
    """
    auth_header = request.headers.get("Authorization", "")
    if cron_secret and auth_header.startswith("Bearer "):
        bearer = auth_header[len("Bearer "):].strip()
        if _constant_time_equals(bearer, cron_secret):
            return True
        if bearer.count(".") == 2 and _valid_cron_jwt(bearer, cron_secret):
            return True

    api_key = request.headers.get("X-API-Key")
    return _constant_time_equals(api_key, cron_secret) or _constant_time_equals(api_key, service_api_key)


def system_route(func: Callable) -> Callable:
    """
    Require a system (cron) credential.

    System routes run with service-tier privileges across all agencies.
    """
    @wraps(func)
    async def wrapper(*args, **kwargs):
        request = _get_request_from_args(args, kwargs)
        try:
            _, settings, monitor = _app_state(request)
            if not verify_system_credentials(request, settings.cron_secret, settings.service_api_key):
                logger.warning(
                    "System auth rejected - no valid credentials",
                    extra={
                        "path": request.url.path,
                        "has_auth_header": bool(request.headers.get("Authorization")),
                        "has_api_key": bool(request.headers.get("X-API-Key")),
                    },
                )
                monitor.record_event(
                    SecurityEventType.UNAUTHORIZED_API_ACCESS,
                    SecuritySeverity.HIGH,
                    request=request,
                    details={"reason": "invalid system credentials"},
                )
                raise AuthenticationError("Unauthorized")
            return await func(*args, **kwargs)
        except HTTPException:
            raise
        except Exception as e:
            return _error_boundary(request, e, func.__name__)

    return wrapper
