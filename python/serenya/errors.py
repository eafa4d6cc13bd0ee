"""API error definitions.

All API errors are defined here with their corresponding HTTP status codes.
Domain-layer exceptions (crypto, storage, LLM) live beside the code that
raises them and are translated into ApiError at the service boundary.
"""

from enum import Enum


class ApiErrorCode(str, Enum):
    """Standardized error codes for the API.

    Format: E_CATEGORY_NAME
    """

    # Authentication errors (401)
    E_UNAUTHENTICATED = "E_UNAUTHENTICATED"

    # Authorization errors (403)
    E_FORBIDDEN = "E_FORBIDDEN"

    # Not found errors (404)
    E_NOT_FOUND = "E_NOT_FOUND"
    E_JOB_NOT_FOUND = "E_JOB_NOT_FOUND"
    E_INVALID_JOB_ID = "E_INVALID_JOB_ID"
    E_EXPIRED_JOB_ID = "E_EXPIRED_JOB_ID"

    # Validation errors (400)
    E_INVALID_REQUEST = "E_INVALID_REQUEST"
    E_MISSING_JOB_ID = "E_MISSING_JOB_ID"
    E_INVALID_JOB_ID_FORMAT = "E_INVALID_JOB_ID_FORMAT"
    E_MISSING_MESSAGE = "E_MISSING_MESSAGE"
    E_MESSAGE_TOO_LONG = "E_MESSAGE_TOO_LONG"
    E_MISSING_CONTENT_ID = "E_MISSING_CONTENT_ID"
    E_INVALID_FILE_TYPE = "E_INVALID_FILE_TYPE"
    E_FILE_TOO_LARGE = "E_FILE_TOO_LARGE"

    # Lifecycle conflicts (409 / 429)
    E_JOB_NOT_COMPLETE = "E_JOB_NOT_COMPLETE"
    E_RESULT_UNAVAILABLE = "E_RESULT_UNAVAILABLE"
    E_RETRY_NOT_ALLOWED = "E_RETRY_NOT_ALLOWED"
    E_RETRY_LIMIT_EXCEEDED = "E_RETRY_LIMIT_EXCEEDED"
    E_JOB_TOO_OLD = "E_JOB_TOO_OLD"
    E_RETRY_TOO_SOON = "E_RETRY_TOO_SOON"

    # Server errors
    E_AUTH_UNAVAILABLE = "E_AUTH_UNAVAILABLE"  # 503
    E_SERVICE_UNAVAILABLE = "E_SERVICE_UNAVAILABLE"  # 503
    E_INTERNAL = "E_INTERNAL"  # 500
    E_STORAGE_ERROR = "E_STORAGE_ERROR"  # 500
    E_ENCRYPTION_FAILED = "E_ENCRYPTION_FAILED"  # 500
    E_CHAT_PROCESSING_FAILED = "E_CHAT_PROCESSING_FAILED"  # 500


# Error code to HTTP status mapping
ERROR_CODE_TO_STATUS: dict[ApiErrorCode, int] = {
    ApiErrorCode.E_UNAUTHENTICATED: 401,
    ApiErrorCode.E_FORBIDDEN: 403,
    ApiErrorCode.E_NOT_FOUND: 404,
    ApiErrorCode.E_JOB_NOT_FOUND: 404,
    ApiErrorCode.E_INVALID_JOB_ID: 404,
    ApiErrorCode.E_EXPIRED_JOB_ID: 404,
    ApiErrorCode.E_INVALID_REQUEST: 400,
    ApiErrorCode.E_MISSING_JOB_ID: 400,
    ApiErrorCode.E_INVALID_JOB_ID_FORMAT: 400,
    ApiErrorCode.E_MISSING_MESSAGE: 400,
    ApiErrorCode.E_MESSAGE_TOO_LONG: 400,
    ApiErrorCode.E_MISSING_CONTENT_ID: 400,
    ApiErrorCode.E_INVALID_FILE_TYPE: 400,
    ApiErrorCode.E_FILE_TOO_LARGE: 400,
    ApiErrorCode.E_JOB_NOT_COMPLETE: 409,
    ApiErrorCode.E_RESULT_UNAVAILABLE: 409,
    ApiErrorCode.E_RETRY_NOT_ALLOWED: 409,
    ApiErrorCode.E_RETRY_LIMIT_EXCEEDED: 409,
    ApiErrorCode.E_JOB_TOO_OLD: 409,
    ApiErrorCode.E_RETRY_TOO_SOON: 429,
    ApiErrorCode.E_AUTH_UNAVAILABLE: 503,
    ApiErrorCode.E_SERVICE_UNAVAILABLE: 503,
    ApiErrorCode.E_INTERNAL: 500,
    ApiErrorCode.E_STORAGE_ERROR: 500,
    ApiErrorCode.E_ENCRYPTION_FAILED: 500,
    ApiErrorCode.E_CHAT_PROCESSING_FAILED: 500,
}


class ErrorCategory(str, Enum):
    """Coarse classification carried by audit records and failure artifacts."""

    TECHNICAL = "technical"
    VALIDATION = "validation"
    BUSINESS = "business"
    EXTERNAL = "external"


class ApiError(Exception):
    """Base exception for API errors.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        user_message: Optional end-user guidance shown by the app
        status_code: HTTP status code (derived from code)
    """

    def __init__(self, code: ApiErrorCode, message: str, user_message: str | None = None):
        self.code = code
        self.message = message
        self.user_message = user_message
        self.status_code = ERROR_CODE_TO_STATUS.get(code, 500)
        super().__init__(message)


class NotFoundError(ApiError):
    """Resource not found error."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_NOT_FOUND, message: str = "Not found"):
        super().__init__(code, message)


class InvalidRequestError(ApiError):
    """Invalid request error."""

    def __init__(
        self,
        code: ApiErrorCode = ApiErrorCode.E_INVALID_REQUEST,
        message: str = "Invalid request",
        user_message: str | None = None,
    ):
        super().__init__(code, message, user_message)


class ConflictError(ApiError):
    """Request conflicts with the current job lifecycle state."""

    def __init__(self, code: ApiErrorCode, message: str, user_message: str | None = None):
        super().__init__(code, message, user_message)


class ChatProcessingError(ApiError):
    """A chat worker failed; the response carries the worker's own error code."""

    def __init__(self, error_code: str | None, message: str, user_message: str | None = None):
        super().__init__(ApiErrorCode.E_CHAT_PROCESSING_FAILED, message, user_message)
        self.error_code = error_code or ApiErrorCode.E_CHAT_PROCESSING_FAILED.value
