"""LLM error classification and normalization.

Bedrock failures are classified into a small set of normalized classes, each
carrying the category, user guidance and retry hint that end up in failed
job records and chat failure artifacts:

- BEDROCK_RATE_LIMITED: ThrottlingException (external, retry after 30 s)
- INVALID_MEDICAL_DOCUMENT: ValidationException (validation)
- BEDROCK_SERVICE_UNAVAILABLE: ServiceUnavailableException or connection
  failure (external, retry after 300 s)
- BEDROCK_TIMEOUT: read/connect timeout (external)
- BEDROCK_PROCESSING_FAILED: anything else, including unparseable replies
  (technical)
"""

from dataclasses import dataclass
from enum import Enum

from botocore.exceptions import (
    ClientError,
    ConnectTimeoutError,
    EndpointConnectionError,
    ReadTimeoutError,
)

from serenya.errors import ErrorCategory
from serenya.logging import get_logger

logger = get_logger(__name__)


class LLMErrorClass(str, Enum):
    """Normalized LLM error classifications."""

    RATE_LIMITED = "BEDROCK_RATE_LIMITED"
    INVALID_DOCUMENT = "INVALID_MEDICAL_DOCUMENT"
    SERVICE_UNAVAILABLE = "BEDROCK_SERVICE_UNAVAILABLE"
    TIMEOUT = "BEDROCK_TIMEOUT"
    PROCESSING_FAILED = "BEDROCK_PROCESSING_FAILED"


@dataclass(frozen=True)
class ErrorGuidance:
    message: str
    category: ErrorCategory
    user_action: str
    retry_after: int | None = None


ERROR_GUIDANCE: dict[LLMErrorClass, ErrorGuidance] = {
    LLMErrorClass.RATE_LIMITED: ErrorGuidance(
        message="AI service is temporarily busy. Please try again in a moment.",
        category=ErrorCategory.EXTERNAL,
        user_action="Please wait a moment and try again.",
        retry_after=30,
    ),
    LLMErrorClass.INVALID_DOCUMENT: ErrorGuidance(
        message="The document format is not supported for medical analysis.",
        category=ErrorCategory.VALIDATION,
        user_action="Please upload a valid medical document (PDF, image, or text format).",
    ),
    LLMErrorClass.SERVICE_UNAVAILABLE: ErrorGuidance(
        message="AI analysis service is temporarily unavailable.",
        category=ErrorCategory.EXTERNAL,
        user_action=(
            "AI analysis is temporarily unavailable. Your document has been saved "
            "and will be processed when service resumes."
        ),
        retry_after=300,
    ),
    LLMErrorClass.TIMEOUT: ErrorGuidance(
        message="AI analysis took too long to complete.",
        category=ErrorCategory.EXTERNAL,
        user_action="Please try again in a few minutes.",
        retry_after=60,
    ),
    LLMErrorClass.PROCESSING_FAILED: ErrorGuidance(
        message="AI analysis could not be completed at this time.",
        category=ErrorCategory.TECHNICAL,
        user_action="Please try again. If the problem persists, contact support.",
    ),
}


class LLMError(Exception):
    """Exception for LLM-related errors.

    Attributes:
        error_class: The normalized error classification
        message: Client-safe message (never provider text)
        detail: Provider detail for logs only
    """

    def __init__(
        self,
        error_class: LLMErrorClass,
        message: str | None = None,
        detail: str | None = None,
    ):
        self.error_class = error_class
        self.message = message or ERROR_GUIDANCE[error_class].message
        self.detail = detail
        super().__init__(self.message)

    @property
    def code(self) -> str:
        return self.error_class.value

    @property
    def category(self) -> ErrorCategory:
        return ERROR_GUIDANCE[self.error_class].category

    @property
    def user_action(self) -> str:
        return ERROR_GUIDANCE[self.error_class].user_action

    @property
    def retry_after(self) -> int | None:
        return ERROR_GUIDANCE[self.error_class].retry_after

    def to_dict(self) -> dict:
        """Shape written into chat failure artifacts."""
        error = {
            "code": self.code,
            "message": self.message,
            "category": self.category.value,
            "user_action": self.user_action,
        }
        if self.retry_after is not None:
            error["retry_after"] = self.retry_after
        return error


def classify_bedrock_error(exception: Exception) -> LLMErrorClass:
    """Classify a boto3 Bedrock exception into a normalized error class."""
    if isinstance(exception, (ReadTimeoutError, ConnectTimeoutError)):
        return LLMErrorClass.TIMEOUT
    if isinstance(exception, EndpointConnectionError):
        return LLMErrorClass.SERVICE_UNAVAILABLE

    if isinstance(exception, ClientError):
        code = exception.response.get("Error", {}).get("Code", "")
        if code == "ThrottlingException":
            return LLMErrorClass.RATE_LIMITED
        if code == "ValidationException":
            return LLMErrorClass.INVALID_DOCUMENT
        if code in ("ServiceUnavailableException", "ModelNotReadyException"):
            return LLMErrorClass.SERVICE_UNAVAILABLE
        if code == "ModelTimeoutException":
            return LLMErrorClass.TIMEOUT
        logger.warning("unclassified_bedrock_error", error_code=code)

    return LLMErrorClass.PROCESSING_FAILED
