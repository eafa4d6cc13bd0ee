"""Document jobs: upload, processing, status, result and retry.

Route handlers and Celery tasks call exactly one function here. Functions
take the collaborators they use as keyword arguments and fall back to the
process-wide providers, so tests can pass fakes directly.

Lifecycle:
    create_document_job   uploaded         (API)
    process_document_job  processing -> completed | failed   (worker)
    retry_job             failed | timeout -> retrying        (API)

A worker that finishes after the sweep persisted timeout still records its
outcome. If a retry has already taken the job over, the late outcome is
dropped and its result artifact deleted.

Result artifacts live at results/{job_id}.json with the interpretation
fields encrypted under the job's context. Uploads are deleted once a result
has been written.
"""

import json
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import uuid4

from sqlalchemy.orm import Session

from serenya.config import Environment, get_settings
from serenya.db.models import DataClassification, JobStatus, ProcessingJob
from serenya.errors import ApiError, ApiErrorCode, ConflictError, InvalidRequestError
from serenya.logging import get_logger
from serenya.services import providers
from serenya.services.audit import try_record_audit_event
from serenya.services.crypto import CryptoError, EnvelopeCipher
from serenya.services.job_state import (
    RETRYABLE_STATUSES,
    InvalidTransitionError,
    RetryBlock,
    derive_job_view,
    effective_status,
    retry_block,
    retry_delay_seconds,
)
from serenya.services.jobs import create_job, get_job, get_job_for_owner, update_job_status
from serenya.services.llm import DocumentInput, LLMClient, LLMError
from serenya.services.results import assemble_result
from serenya.services.sanitize import sanitize_error_text
from serenya.storage import (
    ObjectNotFoundError,
    ObjectStoreBase,
    StorageError,
    build_result_key,
    build_upload_key,
    compute_sha256,
    sanitize_file_name,
)

logger = get_logger(__name__)

ALLOWED_FILE_TYPES = {
    "pdf": "application/pdf",
    "jpg": "image/jpeg",
    "jpeg": "image/jpeg",
    "png": "image/png",
}

MAGIC_NUMBERS = {
    "pdf": b"%PDF",
    "jpg": b"\xff\xd8\xff",
    "jpeg": b"\xff\xd8\xff",
    "png": b"\x89PNG",
}

ENCRYPTED_RESULT_FIELDS = ("interpretation_text", "detailed_interpretation", "recommendations")
RESULT_RETENTION = timedelta(hours=24)
UPLOAD_ESTIMATED_COMPLETION_S = 90
RETRY_ESTIMATED_PROCESSING_S = 120


def _timeout() -> timedelta:
    return timedelta(seconds=get_settings().job_timeout_s)


def _result_context(job_id: str) -> dict[str, str]:
    return {"job_id": job_id, "purpose": "document_result"}


def _isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


# =============================================================================
# Upload
# =============================================================================


def _validate_upload(file_name: str, file_type: str, content: bytes) -> tuple[str, str]:
    """Return (normalized file type, sanitized file name) or raise InvalidRequestError."""
    normalized_type = (file_type or "").strip().lower()
    if normalized_type not in ALLOWED_FILE_TYPES:
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_FILE_TYPE,
            f"Unsupported file type: {file_type}",
            user_message="Please upload a PDF, JPG or PNG file.",
        )

    if not content:
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_REQUEST,
            "File is empty",
            user_message="The selected file is empty. Please choose another file.",
        )

    max_bytes = get_settings().max_upload_bytes
    if len(content) > max_bytes:
        raise InvalidRequestError(
            ApiErrorCode.E_FILE_TOO_LARGE,
            f"File exceeds {max_bytes} bytes",
            user_message=f"Files must be smaller than {max_bytes // (1024 * 1024)} MB.",
        )

    if not content.startswith(MAGIC_NUMBERS[normalized_type]):
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_FILE_TYPE,
            "File content does not match the declared type",
            user_message="This file doesn't look like a valid PDF or image.",
        )

    try:
        sanitized = sanitize_file_name(file_name or "")
    except ValueError as e:
        raise InvalidRequestError(
            ApiErrorCode.E_INVALID_REQUEST,
            "Invalid file name",
            user_message="Please rename the file and try again.",
        ) from e

    return normalized_type, sanitized


def create_document_job(
    db: Session,
    viewer_id: str,
    *,
    file_name: str,
    file_type: str,
    content: bytes,
    store: ObjectStoreBase | None = None,
    cipher: EnvelopeCipher | None = None,
    request_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Accept an upload and queue it for analysis.

    Raises:
        InvalidRequestError: On a bad type, size, content or file name.
        ApiError(E_STORAGE_ERROR): If the upload cannot be stored.
    """
    store = store or providers.get_object_store()
    cipher = cipher or providers.get_cipher()
    now = now or datetime.now(UTC)

    normalized_type, sanitized = _validate_upload(file_name, file_type, content)
    checksum = compute_sha256(content)

    job_id = str(uuid4())
    upload_key = build_upload_key(viewer_id, job_id, sanitized)

    try:
        store.put_object(
            upload_key,
            content,
            content_type=ALLOWED_FILE_TYPES[normalized_type],
            metadata={"job-id": job_id, "file-type": normalized_type},
        )
    except StorageError as e:
        logger.error("upload_store_failed", job_id=job_id, error=str(e))
        try_record_audit_event(
            db,
            cipher,
            event_type="storage",
            event_subtype="upload_failed",
            user_id=viewer_id,
            details={"job_id": job_id, "error": str(e)},
            classification=DataClassification.system_error,
            request_id=request_id,
        )
        raise ApiError(
            ApiErrorCode.E_STORAGE_ERROR,
            "Failed to store upload",
            user_message="We couldn't save your file. Please try again.",
        ) from e

    job = create_job(
        db,
        user_id=viewer_id,
        file_name=file_name,
        sanitized_file_name=sanitized,
        file_type=normalized_type,
        file_size=len(content),
        file_checksum=checksum,
        upload_key=upload_key,
        job_id=job_id,
        now=now,
    )

    try_record_audit_event(
        db,
        cipher,
        event_type="document_upload",
        event_subtype="upload_completed",
        user_id=viewer_id,
        details={
            "job_id": job.id,
            "file_name": sanitized,
            "file_type": normalized_type,
            "file_size_kb": round(len(content) / 1024),
            "file_checksum": checksum[:16],
        },
        classification=DataClassification.medical_phi,
        request_id=request_id,
    )

    enqueued = _enqueue_processing(job.id, request_id)

    return {
        "job_id": job.id,
        "status": job.status.value,
        "file_name": sanitized,
        "mime_type": ALLOWED_FILE_TYPES[normalized_type],
        "file_size_bytes": len(content),
        "estimated_completion_seconds": UPLOAD_ESTIMATED_COMPLETION_S,
        "processing_enqueued": enqueued,
        "message": "File uploaded successfully and queued for processing",
    }


def _enqueue_processing(
    job_id: str, request_id: str | None, countdown: int | None = None
) -> bool:
    """Enqueue the process_document Celery task.

    In the test environment nothing is enqueued; tests call
    process_document_job directly.

    Returns:
        True if the task was enqueued.
    """
    if get_settings().serenya_env == Environment.TEST:
        logger.debug("skipping_task_enqueue", reason="test_environment", job_id=job_id)
        return False

    try:
        from serenya.tasks import process_document

        process_document.apply_async(
            args=[job_id],
            kwargs={"request_id": request_id},
            queue="documents",
            countdown=countdown,
        )
        logger.info("process_document_enqueued", job_id=job_id, countdown=countdown)
        return True
    except Exception as e:
        # The sweep reports the job as timed out and the user can retry
        logger.warning("process_document_enqueue_failed", job_id=job_id, error=str(e))
        return False


# =============================================================================
# Processing (worker)
# =============================================================================


def _build_result_artifact(
    job: ProcessingJob, analysis: dict[str, Any], cipher: EnvelopeCipher
) -> dict[str, Any]:
    record = dict(analysis)
    record["recommendations"] = json.dumps(record.get("recommendations") or [])
    encrypted = cipher.encrypt_fields(record, ENCRYPTED_RESULT_FIELDS, _result_context(job.id))
    encrypted["job_id"] = job.id
    return encrypted


def read_result_artifact(
    job: ProcessingJob, store: ObjectStoreBase, cipher: EnvelopeCipher
) -> dict[str, Any]:
    """Load and decrypt a job's result artifact.

    Raises:
        ObjectNotFoundError: If the artifact is gone.
        StorageError: On other storage failures.
        CryptoError: If any field fails to decrypt or names another job.
    """
    raw = json.loads(store.get_object(job.result_ref or build_result_key(job.id)))
    if raw.get("job_id") != job.id:
        raise CryptoError("Result artifact belongs to another job")

    decrypted = dict(raw)
    for name in ENCRYPTED_RESULT_FIELDS:
        value = raw.get(name)
        if value:
            decrypted[name] = cipher.decrypt_field(
                value, {**_result_context(job.id), "field": name}
            )
    decrypted["recommendations"] = json.loads(decrypted.get("recommendations") or "[]")
    return decrypted


def process_document_job(
    db: Session,
    job_id: str,
    *,
    store: ObjectStoreBase | None = None,
    cipher: EnvelopeCipher | None = None,
    llm: LLMClient | None = None,
    request_id: str | None = None,
) -> dict[str, Any]:
    """Analyze an uploaded document and store its encrypted result.

    Idempotent: completed jobs, jobs another worker already claimed and
    jobs that are not waiting for processing are skipped.

    Returns:
        Dict with "status" ("completed", "failed" or "skipped") and details.
    """
    store = store or providers.get_object_store()
    cipher = cipher or providers.get_cipher()
    llm = llm or providers.get_llm_client()

    job = get_job(db, job_id)
    if job is None:
        return {"status": "skipped", "reason": "job_not_found"}
    if job.status == JobStatus.completed:
        return {"status": "skipped", "reason": "already_completed"}
    if job.status not in (JobStatus.uploaded, JobStatus.retrying):
        return {"status": "skipped", "reason": f"status_{job.status.value}"}

    started_at = datetime.now(UTC)
    claimed = update_job_status(
        db,
        job_id,
        JobStatus.processing,
        now=started_at,
        expected_status=job.status,
        timeout=_timeout(),
        processing_started_at=started_at,
    )
    if claimed is None:
        return {"status": "skipped", "reason": "claimed_by_another_worker"}
    job = claimed

    result_key: str | None = None
    try:
        if not job.upload_key:
            raise StorageError("Upload is no longer available", code="upload_missing")
        content = store.get_object(job.upload_key)

        analysis = llm.analyze(
            DocumentInput(
                content=content,
                file_type=job.file_type,
                file_name=job.sanitized_file_name,
            ),
            context={"attempt": job.retry_count + 1},
        )

        artifact = _build_result_artifact(job, analysis.to_dict(), cipher)
        result_key = build_result_key(job.id)
        store.put_object(
            result_key,
            json.dumps(artifact).encode("utf-8"),
            content_type="application/json",
            metadata={"job-id": job.id},
        )

        completed_at = datetime.now(UTC)
        duration_ms = int((completed_at - started_at).total_seconds() * 1000)
        settled = _settle_claimed_job(
            db,
            job.id,
            JobStatus.completed,
            now=completed_at,
            completed_at=completed_at,
            processing_duration_ms=duration_ms,
            result_ref=result_key,
            error_message=None,
        )
    except Exception as e:
        db.rollback()
        if result_key is not None:
            store.delete_object(result_key)
        return _fail_processing(db, job, e, cipher, request_id)

    if settled is None:
        # A retry owns the job now. Once that run completes, the key holds its result
        current = get_job(db, job.id)
        if current is None or current.status != JobStatus.completed:
            store.delete_object(result_key)
        logger.warning("job_completion_superseded", job_id=job.id)
        return {"status": "skipped", "reason": "superseded", "job_id": job.id}
    job = settled

    upload_key = job.upload_key
    if store.delete_object(upload_key):
        update_job_status(db, job.id, JobStatus.completed, timeout=_timeout(), upload_key=None)
    else:
        logger.warning("upload_cleanup_failed", job_id=job.id)

    try_record_audit_event(
        db,
        cipher,
        event_type="document_processing",
        event_subtype="processing_completed",
        user_id=job.user_id,
        details={
            "job_id": job.id,
            "confidence_score": analysis.confidence_score,
            "flag_count": len(analysis.medical_flags),
            "processing_duration_ms": duration_ms,
        },
        classification=DataClassification.medical_phi,
        request_id=request_id,
    )

    return {
        "status": "completed",
        "job_id": job.id,
        "confidence_score": analysis.confidence_score,
        "processing_duration_ms": duration_ms,
    }


def _settle_claimed_job(
    db: Session, job_id: str, status: JobStatus, *, now: datetime, **changes: Any
) -> ProcessingJob | None:
    """Write the final status of a job this worker claimed.

    Applies only while the job is still processing, or was swept to timeout
    while the worker ran. Returns None once a retry has moved the job on.
    """
    for expected in (JobStatus.processing, JobStatus.timeout):
        try:
            settled = update_job_status(
                db,
                job_id,
                status,
                now=now,
                expected_status=expected,
                timeout=_timeout(),
                **changes,
            )
        except InvalidTransitionError as e:
            logger.warning("job_settle_refused", job_id=job_id, error=str(e))
            return None
        if settled is not None:
            return settled
    return None


def _fail_processing(
    db: Session,
    job: ProcessingJob,
    error: Exception,
    cipher: EnvelopeCipher,
    request_id: str | None,
) -> dict[str, Any]:
    if isinstance(error, LLMError):
        error_code = error.code
        message = error.message
        category = error.category.value
    else:
        error_code = type(error).__name__
        message = str(error)
        category = "technical"

    error_message = sanitize_error_text(message)
    logger.error(
        "document_processing_failed",
        job_id=job.id,
        error_code=error_code,
        error=error_message,
    )

    failed_at = datetime.now(UTC)
    recorded = _settle_claimed_job(
        db,
        job.id,
        JobStatus.failed,
        now=failed_at,
        error_message=error_message,
        failed_at=failed_at,
    )
    if recorded is None:
        logger.warning("job_failure_not_recorded", job_id=job.id, error_code=error_code)

    try_record_audit_event(
        db,
        cipher,
        event_type="document_processing",
        event_subtype="processing_failed",
        user_id=job.user_id,
        details={
            "job_id": job.id,
            "error_code": error_code,
            "category": category,
            "error": message,
        },
        classification=DataClassification.system_error,
        request_id=request_id,
    )
    return {"status": "failed", "job_id": job.id, "error_code": error_code}


# =============================================================================
# Status, result, retry (API)
# =============================================================================


def get_job_status(
    db: Session, viewer_id: str, job_id: str, *, now: datetime | None = None
) -> dict[str, Any]:
    """Status view for the job's owner.

    Raises:
        JobNotFoundError: If the job is missing or owned by someone else.
    """
    now = now or datetime.now(UTC)
    job = get_job_for_owner(db, job_id, viewer_id)
    view = derive_job_view(job, now, _timeout(), get_settings().max_retry_attempts)

    return {
        "job_id": job.id,
        "status": view.status.value,
        "progress_percentage": view.progress_percentage,
        "message": view.message,
        "retry_count": job.retry_count,
        "can_retry": view.can_retry,
        "error_message": view.error_message,
        "timestamps": {
            "uploaded_at": _isoformat(job.uploaded_at),
            "processing_started_at": _isoformat(job.processing_started_at),
            "completed_at": _isoformat(job.completed_at),
            "failed_at": _isoformat(job.failed_at),
            "last_retry_at": _isoformat(job.last_retry_at),
        },
    }


def get_job_result(
    db: Session,
    viewer_id: str,
    job_id: str,
    *,
    store: ObjectStoreBase | None = None,
    cipher: EnvelopeCipher | None = None,
    request_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Decrypted, assembled result for a completed job.

    Raises:
        JobNotFoundError: If the job is missing or owned by someone else.
        ConflictError: If the job is not completed, or its result has expired.
        ApiError: On storage or decryption failure.
    """
    store = store or providers.get_object_store()
    cipher = cipher or providers.get_cipher()
    now = now or datetime.now(UTC)

    job = get_job_for_owner(db, job_id, viewer_id)
    status = effective_status(
        job.status, job.uploaded_at, job.processing_started_at, now, _timeout()
    )

    if status in RETRYABLE_STATUSES:
        raise ConflictError(
            ApiErrorCode.E_RESULT_UNAVAILABLE,
            f"Job {status.value}; no result available",
            user_message="Processing did not finish. You can retry from the status screen.",
        )
    if status != JobStatus.completed:
        raise ConflictError(
            ApiErrorCode.E_JOB_NOT_COMPLETE,
            "Job is still being processed",
            user_message="Your results are not ready yet. Please check back shortly.",
        )
    if job.completed_at and now - job.completed_at > RESULT_RETENTION:
        raise ConflictError(
            ApiErrorCode.E_RESULT_UNAVAILABLE,
            "Result has expired",
            user_message="This result is no longer available. Please upload the document again.",
        )

    try:
        analysis = read_result_artifact(job, store, cipher)
    except ObjectNotFoundError as e:
        raise ConflictError(
            ApiErrorCode.E_RESULT_UNAVAILABLE,
            "Result has expired",
            user_message="This result is no longer available. Please upload the document again.",
        ) from e
    except StorageError as e:
        logger.error("result_read_failed", job_id=job.id, error=str(e))
        raise ApiError(ApiErrorCode.E_STORAGE_ERROR, "Failed to read result") from e
    except CryptoError as e:
        logger.error("result_decrypt_failed", job_id=job.id, error=str(e))
        try_record_audit_event(
            db,
            cipher,
            event_type="security",
            event_subtype="result_decryption_failed",
            user_id=viewer_id,
            details={"job_id": job.id, "error": str(e)},
            classification=DataClassification.system_error,
            request_id=request_id,
        )
        raise ApiError(ApiErrorCode.E_ENCRYPTION_FAILED, "Failed to decrypt result") from e

    result = assemble_result(job, analysis)

    try_record_audit_event(
        db,
        cipher,
        event_type="document_access",
        event_subtype="result_retrieved",
        user_id=viewer_id,
        details={
            "job_id": job.id,
            "confidence_score": result["confidence_score"],
            "confidence_level": result["confidence_level"],
        },
        classification=DataClassification.medical_phi,
        request_id=request_id,
    )
    return result


RETRY_BLOCK_ERRORS = {
    RetryBlock.NOT_RETRYABLE: (
        ApiErrorCode.E_RETRY_NOT_ALLOWED,
        "Only failed or timed out jobs can be retried",
        "This document doesn't need to be retried.",
    ),
    RetryBlock.LIMIT_EXCEEDED: (
        ApiErrorCode.E_RETRY_LIMIT_EXCEEDED,
        "Maximum retry attempts reached",
        "This document can't be retried again. Please upload it again or contact support.",
    ),
    RetryBlock.TOO_SOON: (
        ApiErrorCode.E_RETRY_TOO_SOON,
        "Retry requested too soon after the previous attempt",
        "Please wait a moment before retrying.",
    ),
    RetryBlock.TOO_OLD: (
        ApiErrorCode.E_JOB_TOO_OLD,
        "Job is too old to retry",
        "This upload has expired. Please upload the document again.",
    ),
}


def retry_job(
    db: Session,
    viewer_id: str,
    job_id: str,
    *,
    cipher: EnvelopeCipher | None = None,
    request_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Schedule another processing attempt for a failed or timed-out job.

    Raises:
        JobNotFoundError: If the job is missing or owned by someone else.
        ApiError: With the code of the first rule that blocks the retry.
    """
    cipher = cipher or providers.get_cipher()
    now = now or datetime.now(UTC)
    max_attempts = get_settings().max_retry_attempts

    job = get_job_for_owner(db, job_id, viewer_id)
    status = effective_status(
        job.status, job.uploaded_at, job.processing_started_at, now, _timeout()
    )

    block = retry_block(
        status, job.retry_count, job.uploaded_at, job.last_retry_at, now, max_attempts
    )
    if block is None and not job.upload_key:
        block = RetryBlock.TOO_OLD
    if block is not None:
        code, message, user_message = RETRY_BLOCK_ERRORS[block]
        try_record_audit_event(
            db,
            cipher,
            event_type="document_processing",
            event_subtype="retry_not_allowed",
            user_id=viewer_id,
            details={"job_id": job.id, "reason": block.value},
            classification=DataClassification.internal,
            request_id=request_id,
        )
        raise ApiError(code, message, user_message)

    attempt = job.retry_count + 1
    updated = update_job_status(
        db,
        job.id,
        JobStatus.retrying,
        now=now,
        expected_status=job.status,
        timeout=_timeout(),
        retry_count=attempt,
        last_retry_at=now,
        error_message=None,
    )
    if updated is None:
        raise ConflictError(
            ApiErrorCode.E_RETRY_NOT_ALLOWED,
            "Job changed while scheduling the retry",
            user_message="Please refresh and try again.",
        )

    delay = retry_delay_seconds(attempt)
    enqueued = _enqueue_processing(job.id, request_id, countdown=delay)

    try_record_audit_event(
        db,
        cipher,
        event_type="document_processing",
        event_subtype="retry_scheduled",
        user_id=viewer_id,
        details={"job_id": job.id, "retry_count": attempt, "delay_seconds": delay},
        classification=DataClassification.internal,
        request_id=request_id,
    )

    return {
        "job_id": job.id,
        "status": JobStatus.retrying.value,
        "message": f"Retry scheduled (attempt {attempt}/{max_attempts})",
        "retry_count": attempt,
        "max_retries": max_attempts,
        "can_retry": attempt < max_attempts,
        "retry_delay_seconds": delay,
        "estimated_completion_at": (
            now + timedelta(seconds=delay + RETRY_ESTIMATED_PROCESSING_S)
        ).isoformat(),
        "processing_enqueued": enqueued,
    }
