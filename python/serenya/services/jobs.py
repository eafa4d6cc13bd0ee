"""Job Store: durable document-job records.

The relational store is the single source of truth for job status. Each
transition is written by the component that owns it: the uploader creates
the job as uploaded, the worker moves it through processing to completed or
failed, and the retry endpoint moves it to retrying.

Write semantics:
- update_job_status() is last-writer-wins by default; applying the same
  status twice is harmless
- Passing expected_status turns it into a conditional UPDATE that only
  applies while the stored status still matches, and returns None when
  another writer got there first

Ownership:
- get_job_for_owner() refuses to return another user's job; the refusal
  is logged as an authorization failure but raised as not-found so the
  caller cannot discover other users' job ids
"""

from datetime import UTC, datetime, timedelta
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from serenya.db.models import JobStatus, ProcessingJob
from serenya.errors import ApiErrorCode, NotFoundError
from serenya.logging import get_logger
from serenya.services.job_state import (
    MAX_RETRY_ATTEMPTS,
    PROCESSING_TIMEOUT,
    effective_status,
    validate_transition,
)

logger = get_logger(__name__)

UPDATABLE_FIELDS = frozenset(
    {
        "retry_count",
        "error_message",
        "result_ref",
        "processing_duration_ms",
        "processing_started_at",
        "completed_at",
        "failed_at",
        "last_retry_at",
        "upload_key",
    }
)


class JobNotFoundError(NotFoundError):
    """The job does not exist."""

    def __init__(self, message: str = "Job not found"):
        super().__init__(ApiErrorCode.E_JOB_NOT_FOUND, message)


class JobOwnershipError(JobNotFoundError):
    """The job exists but belongs to someone else.

    Subclasses JobNotFoundError so it renders exactly like a missing job.
    """


def create_job(
    db: Session,
    *,
    user_id: str,
    file_name: str,
    sanitized_file_name: str,
    file_type: str,
    file_size: int,
    file_checksum: str,
    upload_key: str | None,
    job_id: str | None = None,
    now: datetime | None = None,
) -> ProcessingJob:
    """Insert a new job in uploaded state and commit."""
    now = now or datetime.now(UTC)
    job = ProcessingJob(
        user_id=user_id,
        status=JobStatus.uploaded,
        retry_count=0,
        file_name=file_name,
        sanitized_file_name=sanitized_file_name,
        file_type=file_type,
        file_size=file_size,
        file_checksum=file_checksum,
        upload_key=upload_key,
        uploaded_at=now,
        updated_at=now,
    )
    if job_id is not None:
        job.id = job_id
    db.add(job)
    db.commit()
    logger.info("job_created", job_id=job.id, file_type=file_type, file_size=file_size)
    return job


def get_job(db: Session, job_id: str) -> ProcessingJob | None:
    """Load a job by id without an ownership check (workers only)."""
    return db.get(ProcessingJob, job_id)


def get_job_for_owner(db: Session, job_id: str, user_id: str) -> ProcessingJob:
    """Load a job the caller owns.

    Raises:
        JobNotFoundError: If the job does not exist.
        JobOwnershipError: If the job belongs to another user.
    """
    job = db.get(ProcessingJob, job_id)
    if job is None:
        raise JobNotFoundError()
    if job.user_id != user_id:
        logger.warning("job_access_denied", job_id=job_id, reason="owner_mismatch")
        raise JobOwnershipError()
    return job


def list_jobs_for_owner(db: Session, user_id: str, limit: int = 20) -> list[ProcessingJob]:
    """Most recent jobs for a user, newest first."""
    stmt = (
        select(ProcessingJob)
        .where(ProcessingJob.user_id == user_id)
        .order_by(ProcessingJob.uploaded_at.desc())
        .limit(limit)
    )
    return list(db.execute(stmt).scalars())


def _check_changes(changes: dict[str, Any]) -> None:
    unknown = set(changes) - UPDATABLE_FIELDS
    if unknown:
        raise ValueError(f"Unknown job fields: {sorted(unknown)}")
    retry_count = changes.get("retry_count")
    if retry_count is not None and not 0 <= retry_count <= MAX_RETRY_ATTEMPTS:
        raise ValueError(f"retry_count must be between 0 and {MAX_RETRY_ATTEMPTS}")


def update_job_status(
    db: Session,
    job_id: str,
    status: JobStatus,
    *,
    now: datetime | None = None,
    expected_status: JobStatus | None = None,
    timeout: timedelta = PROCESSING_TIMEOUT,
    **changes: Any,
) -> ProcessingJob | None:
    """Set a job's status together with its metadata in one commit.

    Args:
        db: Database session.
        job_id: Job to update.
        status: Target status.
        now: Current time (defaults to datetime.now(UTC)).
        expected_status: If set, apply only while the stored status equals it.
        timeout: Processing window used to derive the effective status.
        **changes: Additional columns to set (see UPDATABLE_FIELDS).

    Returns:
        The refreshed job, or None if expected_status no longer matched.

    Raises:
        JobNotFoundError: If the job does not exist.
        InvalidTransitionError: If the move is not allowed.
        ValueError: On unknown fields or an out-of-range retry_count.
    """
    now = now or datetime.now(UTC)
    _check_changes(changes)

    job = db.get(ProcessingJob, job_id)
    if job is None:
        raise JobNotFoundError()

    effective = effective_status(
        job.status, job.uploaded_at, job.processing_started_at, now, timeout
    )
    validate_transition(job.status, status, effective)

    if expected_status is not None:
        result = db.execute(
            update(ProcessingJob)
            .where(ProcessingJob.id == job_id, ProcessingJob.status == expected_status)
            .values(status=status, updated_at=now, **changes)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        if result.rowcount == 0:
            logger.info(
                "job_conditional_update_skipped",
                job_id=job_id,
                expected_status=expected_status.value,
                target_status=status.value,
            )
            return None
        db.refresh(job)
    else:
        previous = job.status
        job.status = status
        for name, value in changes.items():
            setattr(job, name, value)
        job.updated_at = now
        db.commit()
        if previous != status:
            logger.info(
                "job_status_changed",
                job_id=job_id,
                from_status=previous.value,
                to_status=status.value,
            )

    return job


def mark_stale_jobs_timed_out(
    db: Session,
    now: datetime | None = None,
    timeout: timedelta = PROCESSING_TIMEOUT,
) -> int:
    """Persist timeout for jobs whose derived status is already timeout.

    Uses conditional UPDATEs so a worker that moved the job on in the
    meantime is never overwritten.

    Returns:
        Number of jobs updated.
    """
    now = now or datetime.now(UTC)
    cutoff = now - timeout
    message = f"Processing timeout after {int(timeout.total_seconds() // 60)} minutes"

    stale_processing = db.execute(
        update(ProcessingJob)
        .where(
            ProcessingJob.status == JobStatus.processing,
            ProcessingJob.processing_started_at.is_not(None),
            ProcessingJob.processing_started_at < cutoff,
        )
        .values(status=JobStatus.timeout, error_message=message, failed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    stale_uploaded = db.execute(
        update(ProcessingJob)
        .where(
            ProcessingJob.status == JobStatus.uploaded,
            ProcessingJob.uploaded_at < cutoff,
        )
        .values(status=JobStatus.timeout, error_message=message, failed_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.expire_all()
    return (stale_processing.rowcount or 0) + (stale_uploaded.rowcount or 0)


def list_abandoned_uploads(
    db: Session, older_than: datetime, limit: int = 100
) -> list[ProcessingJob]:
    """Unfinished jobs older than a cutoff that still reference an upload."""
    stmt = (
        select(ProcessingJob)
        .where(
            ProcessingJob.status != JobStatus.completed,
            ProcessingJob.upload_key.is_not(None),
            ProcessingJob.uploaded_at < older_than,
        )
        .order_by(ProcessingJob.uploaded_at)
        .limit(limit)
        .execution_options(populate_existing=True)
    )
    return list(db.execute(stmt).scalars())
