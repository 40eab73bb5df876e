"""
API error types and the response envelope.

Every handler response has the shape:

    success: {"success": true, "data": ..., "message"?: "..."}
    failure: {"success": false, "error": "<safe message>", "code": "<CODE>"}

Error messages are safe to show to clients. Internal detail (stack traces,
SQL, ids of other tenants) is logged server-side and never returned.

Usage:
    from agencydesk.platform.errors import NotFoundError, success_response

    todo = repo.get_by_id(todo_id)
    if todo is None:
        raise NotFoundError("Task not found")
    return success_response(todo.to_dict())
"""

from typing import Any, Optional

from fastapi import status
from fastapi.responses import JSONResponse


class ApiError(Exception):
    """Base error carrying an HTTP status and a client-safe message."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    code: str = "INTERNAL_ERROR"
    default_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None, details: Optional[dict] = None):
        self.message = message or self.default_message
        self.details = details or {}
        super().__init__(self.message)

    def to_response(self) -> JSONResponse:
        return error_response(self.message, self.status_code, self.code)


class ValidationError(ApiError):
    status_code = status.HTTP_400_BAD_REQUEST
    code = "VALIDATION_ERROR"
    default_message = "Invalid request"


class AuthenticationError(ApiError):
    status_code = status.HTTP_401_UNAUTHORIZED
    code = "UNAUTHORIZED"
    default_message = "Unauthorized"


class ForbiddenError(ApiError):
    status_code = status.HTTP_403_FORBIDDEN
    code = "FORBIDDEN"
    default_message = "You do not have permission to perform this action"


class NotFoundError(ApiError):
    status_code = status.HTTP_404_NOT_FOUND
    code = "NOT_FOUND"
    default_message = "Not found"


class ConflictError(ApiError):
    status_code = status.HTTP_409_CONFLICT
    code = "CONFLICT"
    default_message = "Conflict"


class TooManyRequestsError(ApiError):
    status_code = status.HTTP_429_TOO_MANY_REQUESTS
    code = "RATE_LIMITED"
    default_message = "Too many attempts. Try again later."

    def __init__(self, message: Optional[str] = None, retry_after: int = 0):
        super().__init__(message, details={"retry_after": retry_after})
        self.retry_after = retry_after

    def to_response(self) -> JSONResponse:
        response = error_response(self.message, self.status_code, self.code)
        if self.retry_after > 0:
            response.headers["Retry-After"] = str(self.retry_after)
        return response


class InternalError(ApiError):
    pass


def success_response(
    data: Any = None,
    message: Optional[str] = None,
    status_code: int = status.HTTP_200_OK,
    **extra: Any,
) -> JSONResponse:
    content: dict[str, Any] = {"success": True, "data": data}
    if message:
        content["message"] = message
    content.update(extra)
    return JSONResponse(status_code=status_code, content=content)


def error_response(message: str, status_code: int, code: Optional[str] = None) -> JSONResponse:
    content: dict[str, Any] = {"success": False, "error": message}
    if code:
        content["code"] = code
    return JSONResponse(status_code=status_code, content=content)
