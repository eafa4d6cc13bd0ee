"""Chat jobs: short questions about a document result, answered asynchronously.

Chat jobs are not ProcessingJob rows. The job id itself carries the owner and
the issue time:

    {user_id}_{issued_at_ms}_{suffix}

and the only state is the response artifact at chat-responses/{job_id}.json.
Lifecycle:
    submit_chat_message   -> 202, worker enqueued            (API)
    process_chat_message  -> writes the success/failure artifact (worker)
    get_chat_status       -> "processing" until the artifact exists, then
                             returns it once and deletes it  (API)

The question travels to the worker encrypted, so the broker never holds it
in plaintext.
"""

import json
import secrets
import string
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy.orm import Session

from serenya.config import Environment, get_settings
from serenya.db.models import DataClassification, JobStatus
from serenya.errors import (
    ApiError,
    ApiErrorCode,
    ChatProcessingError,
    InvalidRequestError,
    NotFoundError,
)
from serenya.logging import get_logger
from serenya.services import providers
from serenya.services.audit import try_record_audit_event
from serenya.services.crypto import CryptoError, EnvelopeCipher
from serenya.services.documents import read_result_artifact
from serenya.services.jobs import get_job
from serenya.services.llm import LLMClient, LLMError, LLMErrorClass
from serenya.storage import (
    ObjectNotFoundError,
    ObjectStoreBase,
    StorageError,
    build_chat_response_key,
)

logger = get_logger(__name__)

MAX_MESSAGE_CHARS = 1000
SUBMIT_ESTIMATED_COMPLETION_S = 15
POLL_ESTIMATED_COMPLETION_S = 10

# Accepted issue times relative to now
JOB_ID_MAX_AGE = timedelta(hours=24)
JOB_ID_MAX_CLOCK_SKEW = timedelta(hours=1)

_SUFFIX_ALPHABET = string.ascii_lowercase + string.digits
_SUFFIX_LENGTH = 6


def _question_context(chat_job_id: str) -> dict[str, str]:
    return {"chat_job_id": chat_job_id, "purpose": "chat_question"}


# =============================================================================
# Job ids
# =============================================================================


@dataclass(frozen=True)
class ChatJobIdentity:
    """A chat job id that parsed and belongs to the caller."""

    owner_id: str
    issued_at: datetime


@dataclass(frozen=True)
class ChatJobIdRejection:
    """Why a chat job id was refused."""

    code: ApiErrorCode
    reason: str


def generate_chat_job_id(user_id: str, now: datetime | None = None) -> str:
    """Build a new chat job id for user_id.

    User ids are UUIDs or provider subjects; neither contains "_".
    """
    now = now or datetime.now(UTC)
    timestamp_ms = int(now.timestamp() * 1000)
    suffix = "".join(secrets.choice(_SUFFIX_ALPHABET) for _ in range(_SUFFIX_LENGTH))
    return f"{user_id}_{timestamp_ms}_{suffix}"


def validate_chat_job_id(
    job_id: str | None, viewer_id: str, now: datetime | None = None
) -> ChatJobIdentity | ChatJobIdRejection:
    """Parse a chat job id and check owner and issue-time window.

    Pure: never raises, never logs.
    """
    if not job_id:
        return ChatJobIdRejection(ApiErrorCode.E_MISSING_JOB_ID, "missing")

    parts = job_id.split("_")
    if len(parts) != 3 or not all(parts):
        return ChatJobIdRejection(ApiErrorCode.E_INVALID_JOB_ID_FORMAT, "format")

    owner_id, raw_timestamp, _suffix = parts
    if owner_id != viewer_id:
        return ChatJobIdRejection(ApiErrorCode.E_INVALID_JOB_ID, "owner_mismatch")

    try:
        issued_at = datetime.fromtimestamp(int(raw_timestamp) / 1000, tz=UTC)
    except (ValueError, OverflowError, OSError):
        return ChatJobIdRejection(ApiErrorCode.E_EXPIRED_JOB_ID, "bad_timestamp")

    now = now or datetime.now(UTC)
    if issued_at < now - JOB_ID_MAX_AGE or issued_at > now + JOB_ID_MAX_CLOCK_SKEW:
        return ChatJobIdRejection(ApiErrorCode.E_EXPIRED_JOB_ID, "outside_window")

    return ChatJobIdentity(owner_id=owner_id, issued_at=issued_at)


_REJECTION_MESSAGES = {
    ApiErrorCode.E_MISSING_JOB_ID: "Job ID is required",
    ApiErrorCode.E_INVALID_JOB_ID_FORMAT: "Invalid job ID format",
    ApiErrorCode.E_INVALID_JOB_ID: "Job not found",
    ApiErrorCode.E_EXPIRED_JOB_ID: "Job not found or expired",
}


def require_chat_job_owner(
    job_id: str | None, viewer_id: str, now: datetime | None = None
) -> ChatJobIdentity:
    """validate_chat_job_id for request handlers.

    Raises:
        InvalidRequestError: For a missing or malformed id.
        NotFoundError: For someone else's id or one outside the window.
    """
    outcome = validate_chat_job_id(job_id, viewer_id, now)
    if isinstance(outcome, ChatJobIdentity):
        return outcome

    message = _REJECTION_MESSAGES[outcome.code]
    if outcome.code in (ApiErrorCode.E_MISSING_JOB_ID, ApiErrorCode.E_INVALID_JOB_ID_FORMAT):
        raise InvalidRequestError(outcome.code, message)

    if outcome.reason == "owner_mismatch":
        logger.warning("chat_job_access_denied", reason=outcome.reason)
    raise NotFoundError(outcome.code, message)


# =============================================================================
# Submission (API)
# =============================================================================


def _validate_submission(content_id: str | None, message: str | None) -> str:
    if not content_id or not content_id.strip():
        raise InvalidRequestError(
            ApiErrorCode.E_MISSING_CONTENT_ID,
            "content_id is required",
            user_message="Please choose a result to ask about.",
        )

    question = (message or "").strip()
    if not question:
        raise InvalidRequestError(
            ApiErrorCode.E_MISSING_MESSAGE,
            "Message is required",
            user_message="Please type a question.",
        )
    if len(question) > MAX_MESSAGE_CHARS:
        raise InvalidRequestError(
            ApiErrorCode.E_MESSAGE_TOO_LONG,
            f"Message exceeds {MAX_MESSAGE_CHARS} characters",
            user_message=f"Please keep your question under {MAX_MESSAGE_CHARS} characters.",
        )
    return question


def submit_chat_message(
    db: Session,
    viewer_id: str,
    *,
    content_id: str | None,
    message: str | None,
    cipher: EnvelopeCipher | None = None,
    request_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Accept a question and queue it for an answer.

    Raises:
        InvalidRequestError: On a missing content id or an empty/too long message.
        ApiError(E_ENCRYPTION_FAILED): If the question cannot be sealed.
    """
    cipher = cipher or providers.get_cipher()
    now = now or datetime.now(UTC)

    question = _validate_submission(content_id, message)
    content_id = content_id.strip()

    job_id = generate_chat_job_id(viewer_id, now)
    chat_id = str(uuid4())

    try:
        sealed_question = cipher.encrypt_field(question, _question_context(job_id))
    except CryptoError as e:
        logger.error("chat_question_encrypt_failed", error=str(e))
        raise ApiError(ApiErrorCode.E_ENCRYPTION_FAILED, "Failed to accept message") from e

    try_record_audit_event(
        db,
        cipher,
        event_type="chat",
        event_subtype="chat_message_submitted",
        user_id=viewer_id,
        details={
            "chat_job_id": job_id,
            "chat_id": chat_id,
            "content_id": content_id,
            "message_chars": len(question),
        },
        classification=DataClassification.medical_phi,
        request_id=request_id,
    )

    enqueued = _enqueue_answer(job_id, viewer_id, content_id, sealed_question, request_id)
    logger.info("chat_message_submitted", chat_job_id=job_id, enqueued=enqueued)

    return {
        "job_id": job_id,
        "chat_id": chat_id,
        "status": "processing",
        "estimated_completion_seconds": SUBMIT_ESTIMATED_COMPLETION_S,
    }


def _enqueue_answer(
    chat_job_id: str,
    owner_id: str,
    content_id: str,
    sealed_question: str,
    request_id: str | None,
) -> bool:
    """Enqueue the answer_chat Celery task.

    In the test environment nothing is enqueued; tests call
    process_chat_message directly.
    """
    if get_settings().serenya_env == Environment.TEST:
        logger.debug("skipping_task_enqueue", reason="test_environment", chat_job_id=chat_job_id)
        return False

    try:
        from serenya.tasks import answer_chat

        answer_chat.apply_async(
            args=[chat_job_id, owner_id, content_id, sealed_question],
            kwargs={"request_id": request_id},
            queue="chat",
        )
        logger.info("answer_chat_enqueued", chat_job_id=chat_job_id)
        return True
    except Exception as e:
        # The client keeps polling "processing" until the chat job id expires
        logger.warning("answer_chat_enqueue_failed", chat_job_id=chat_job_id, error=str(e))
        return False


# =============================================================================
# Worker
# =============================================================================


def _load_document_context(
    db: Session,
    owner_id: str,
    content_id: str,
    store: ObjectStoreBase,
    cipher: EnvelopeCipher,
) -> dict[str, Any] | None:
    """The owner's completed document result, or None when it can't be used."""
    job = get_job(db, content_id)
    if job is None or job.user_id != owner_id or job.status != JobStatus.completed:
        return None

    try:
        analysis = read_result_artifact(job, store, cipher)
    except (StorageError, CryptoError, ValueError) as e:
        logger.warning("chat_context_unavailable", content_id=content_id, error=str(e))
        return None

    return {
        "interpretation_text": analysis.get("interpretation_text") or "",
        "confidence_score": analysis.get("confidence_score"),
        "medical_flags": ", ".join(analysis.get("medical_flags") or []),
    }


def process_chat_message(
    db: Session,
    chat_job_id: str,
    *,
    owner_id: str,
    content_id: str,
    sealed_question: str,
    store: ObjectStoreBase | None = None,
    cipher: EnvelopeCipher | None = None,
    llm: LLMClient | None = None,
) -> dict[str, Any]:
    """Answer a submitted question and write the response artifact.

    Every outcome, including failures, ends in an artifact so the polling
    client always gets an answer.

    Returns:
        Dict with "status" ("completed" or "failed").

    Raises:
        StorageError: If the artifact itself cannot be written.
    """
    store = store or providers.get_object_store()
    cipher = cipher or providers.get_cipher()
    llm = llm or providers.get_llm_client()

    started_at = datetime.now(UTC)
    try:
        question = cipher.decrypt_field(sealed_question, _question_context(chat_job_id))
        if not question:
            raise LLMError(LLMErrorClass.PROCESSING_FAILED, detail="empty_question")

        context = _load_document_context(db, owner_id, content_id, store, cipher)
        answer = llm.answer(question, context=context)
    except Exception as e:
        if isinstance(e, LLMError):
            error = e.to_dict()
        else:
            error = {
                "code": ApiErrorCode.E_CHAT_PROCESSING_FAILED.value,
                "message": "Failed to process chat message",
                "category": "technical",
                "user_action": "Please try sending your question again.",
            }
        logger.error(
            "chat_processing_failed",
            chat_job_id=chat_job_id,
            error_code=error["code"],
            error_type=type(e).__name__,
        )
        _write_artifact(store, chat_job_id, {"success": False, "error": error})
        try_record_audit_event(
            db,
            cipher,
            event_type="chat",
            event_subtype="chat_processing_failed",
            user_id=owner_id,
            details={"chat_job_id": chat_job_id, "error_code": error["code"], "error": str(e)},
            classification=DataClassification.system_error,
        )
        return {"status": "failed", "chat_job_id": chat_job_id, "error_code": error["code"]}

    duration_ms = int((datetime.now(UTC) - started_at).total_seconds() * 1000)
    usage = answer.usage.as_dict() if answer.usage else None
    _write_artifact(
        store,
        chat_job_id,
        {
            "success": True,
            "response": {
                "message": answer.message,
                "follow_up_suggestions": answer.follow_up_suggestions,
                "disclaimers": answer.disclaimers,
                "metadata": {
                    "model_id": answer.model_id,
                    "token_usage": usage,
                    "processing_time_ms": duration_ms,
                    "content_id": content_id,
                },
            },
        },
    )

    try_record_audit_event(
        db,
        cipher,
        event_type="chat",
        event_subtype="chat_response_generated",
        user_id=owner_id,
        details={
            "chat_job_id": chat_job_id,
            "content_id": content_id,
            "processing_time_ms": duration_ms,
            "response_chars": len(answer.message),
        },
        classification=DataClassification.medical_phi,
    )
    return {"status": "completed", "chat_job_id": chat_job_id, "processing_time_ms": duration_ms}


def _write_artifact(store: ObjectStoreBase, chat_job_id: str, body: dict[str, Any]) -> None:
    store.put_object(
        build_chat_response_key(chat_job_id),
        json.dumps(body).encode("utf-8"),
        content_type="application/json",
        metadata={"chat-job-id": chat_job_id},
    )


# =============================================================================
# Polling (API)
# =============================================================================


def get_chat_status(
    db: Session,
    viewer_id: str,
    chat_job_id: str | None,
    *,
    store: ObjectStoreBase | None = None,
    cipher: EnvelopeCipher | None = None,
    request_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Poll a chat job. A finished response is returned once, then deleted.

    Raises:
        InvalidRequestError / NotFoundError: For a rejected job id.
        ChatProcessingError: If the worker wrote a failure artifact.
        ApiError(E_STORAGE_ERROR): If the artifact cannot be read.
    """
    store = store or providers.get_object_store()
    cipher = cipher or providers.get_cipher()

    require_chat_job_owner(chat_job_id, viewer_id, now)
    key = build_chat_response_key(chat_job_id)

    try:
        artifact = json.loads(store.get_object(key))
    except ObjectNotFoundError:
        return {
            "job_id": chat_job_id,
            "status": "processing",
            "estimated_completion_seconds": POLL_ESTIMATED_COMPLETION_S,
        }
    except StorageError as e:
        logger.error("chat_response_read_failed", chat_job_id=chat_job_id, error=str(e))
        raise ApiError(ApiErrorCode.E_STORAGE_ERROR, "Failed to read chat response") from e

    if not store.delete_object(key):
        logger.warning("chat_response_cleanup_failed", chat_job_id=chat_job_id)

    if not artifact.get("success"):
        error = artifact.get("error") or {}
        raise ChatProcessingError(
            error.get("code"),
            error.get("message") or "Failed to process chat message",
            user_message=error.get("user_action"),
        )

    try_record_audit_event(
        db,
        cipher,
        event_type="chat",
        event_subtype="chat_response_delivered",
        user_id=viewer_id,
        details={"chat_job_id": chat_job_id},
        classification=DataClassification.internal,
        request_id=request_id,
    )
    return {"job_id": chat_job_id, "status": "complete", "response": artifact.get("response")}
