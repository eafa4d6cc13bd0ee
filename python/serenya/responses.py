"""API response envelope helpers and exception handlers.

All API responses use a consistent envelope:
- Success: { "data": ... }
- Error: { "error": { "code": "E_...", "message": "...", "user_message": "...", "request_id": "..." } }

The request_id is included in error responses for debugging and support.
"""

from typing import Any

from fastapi import Request
from fastapi.responses import JSONResponse
from sqlalchemy.exc import OperationalError

from serenya.errors import ApiError, ApiErrorCode
from serenya.logging import get_logger, get_request_id

logger = get_logger(__name__)


def success_response(data: Any) -> dict[str, Any]:
    """Create a success response envelope."""
    return {"data": data}


def error_response(
    code: ApiErrorCode | str,
    message: str,
    request_id: str | None = None,
    user_message: str | None = None,
) -> dict[str, Any]:
    """Create an error response envelope.

    Args:
        code: The error code enum value (or a worker-supplied code string).
        message: Human-readable error message.
        request_id: Optional request ID for correlation (auto-populated from context if None).
        user_message: Optional end-user guidance.

    Returns:
        Dict with "error" key containing code, message, and request_id.
    """
    if request_id is None:
        request_id = get_request_id()

    code_value = code.value if isinstance(code, ApiErrorCode) else code
    error = {"code": code_value, "message": message}
    if user_message:
        error["user_message"] = user_message
    if request_id:
        error["request_id"] = request_id

    return {"error": error}


async def api_error_handler(request: Request, exc: ApiError) -> JSONResponse:
    """Handle ApiError exceptions and return proper JSON response."""
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(
            getattr(exc, "error_code", None) or exc.code,
            exc.message,
            user_message=exc.user_message,
        ),
    )


async def http_exception_handler(request: Request, exc: Any) -> JSONResponse:
    """Handle FastAPI HTTPException and return proper JSON response."""
    status_to_code = {
        400: ApiErrorCode.E_INVALID_REQUEST,
        401: ApiErrorCode.E_UNAUTHENTICATED,
        403: ApiErrorCode.E_FORBIDDEN,
        404: ApiErrorCode.E_NOT_FOUND,
        405: ApiErrorCode.E_INVALID_REQUEST,
        422: ApiErrorCode.E_INVALID_REQUEST,
    }
    code = status_to_code.get(exc.status_code, ApiErrorCode.E_INTERNAL)
    message = str(exc.detail) if exc.detail else "An error occurred"
    return JSONResponse(
        status_code=exc.status_code,
        content=error_response(code, message),
    )


async def database_unavailable_handler(request: Request, exc: OperationalError) -> JSONResponse:
    """Handle a lost or refused database connection as a retryable 503.

    Driver messages can carry hostnames and SQL, so they are only logged.
    """
    logger.error(
        "database_unavailable",
        error_type=type(exc.orig).__name__ if exc.orig is not None else type(exc).__name__,
    )
    return JSONResponse(
        status_code=503,
        content=error_response(
            ApiErrorCode.E_SERVICE_UNAVAILABLE,
            "Service temporarily unavailable",
            user_message="We're having trouble right now. Please try again in a moment.",
        ),
    )


async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Handle unhandled exceptions and return 500 with E_INTERNAL.

    Logs the exception server-side but never leaks details to client.
    """
    logger.exception("unhandled_exception", error_type=type(exc).__name__)

    return JSONResponse(
        status_code=500,
        content=error_response(
            ApiErrorCode.E_INTERNAL,
            "Internal server error",
            user_message="Something went wrong. Please try again.",
        ),
    )
