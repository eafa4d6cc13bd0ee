"""Document job state machine.

Stored transitions:
    uploaded   -> processing | failed | timeout
    processing -> completed | failed | timeout
    retrying   -> processing | failed
    failed     -> retrying            (while retry_count < 3)
    timeout    -> retrying            (while retry_count < 3)
    timeout    -> completed | failed  (late worker finishing a swept job)
    completed  -> (terminal)

Timeout is normally derived, not stored: a job stored as uploaded or
processing whose clock (uploaded_at or processing_started_at) is older than
the processing window is reported as timeout. Everything here is a pure
function of its arguments; callers pass `now` explicitly.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Protocol

from serenya.db.models import JobStatus

PROCESSING_TIMEOUT = timedelta(minutes=3)
MAX_RETRY_ATTEMPTS = 3
RETRY_DELAYS_S = (30, 120, 300)
MIN_RETRY_INTERVAL = timedelta(seconds=30)
MAX_RETRY_JOB_AGE = timedelta(hours=24)

PROGRESS_UPLOADED = 10
PROGRESS_RETRYING = 15
PROGRESS_PROCESSING_START = 20
PROGRESS_PROCESSING_CAP = 90
PROGRESS_COMPLETED = 100

TIMEOUT_ERROR_MESSAGE = "Processing timeout after {minutes} minutes"

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.uploaded: frozenset({JobStatus.processing, JobStatus.failed, JobStatus.timeout}),
    JobStatus.processing: frozenset({JobStatus.completed, JobStatus.failed, JobStatus.timeout}),
    JobStatus.retrying: frozenset({JobStatus.processing, JobStatus.failed}),
    JobStatus.failed: frozenset({JobStatus.retrying}),
    JobStatus.timeout: frozenset({JobStatus.retrying, JobStatus.completed, JobStatus.failed}),
    JobStatus.completed: frozenset(),
}

RETRYABLE_STATUSES = frozenset({JobStatus.failed, JobStatus.timeout})


class InvalidTransitionError(Exception):
    """Raised when a stored status change is not allowed."""

    def __init__(self, current: JobStatus, target: JobStatus):
        super().__init__(f"Invalid job transition: {current.value} -> {target.value}")
        self.current = current
        self.target = target


class RetryBlock(str, Enum):
    """Reason a retry request is refused."""

    NOT_RETRYABLE = "not_retryable"
    LIMIT_EXCEEDED = "limit_exceeded"
    TOO_SOON = "too_soon"
    TOO_OLD = "too_old"


class JobLike(Protocol):
    status: JobStatus
    retry_count: int
    uploaded_at: datetime
    processing_started_at: datetime | None
    last_retry_at: datetime | None
    error_message: str | None


def validate_transition(
    current: JobStatus, target: JobStatus, effective: JobStatus | None = None
) -> None:
    """Raise InvalidTransitionError unless current -> target is allowed.

    Re-applying the current status is allowed (idempotent writes). When the
    effective status differs from the stored one (derived timeout), moves
    allowed from either are accepted: a late worker may still complete a
    job reported as timed out, and a timed-out job may be retried.
    """
    if target == current:
        return
    if target in ALLOWED_TRANSITIONS[current]:
        return
    if effective is not None and target in ALLOWED_TRANSITIONS[effective]:
        return
    raise InvalidTransitionError(current, target)


def effective_status(
    stored: JobStatus,
    uploaded_at: datetime,
    processing_started_at: datetime | None,
    now: datetime,
    timeout: timedelta = PROCESSING_TIMEOUT,
) -> JobStatus:
    """Status as reported to callers, with timeout derived from timestamps."""
    if stored == JobStatus.uploaded:
        started = uploaded_at
    elif stored == JobStatus.processing:
        started = processing_started_at or uploaded_at
    else:
        return stored

    if now - started > timeout:
        return JobStatus.timeout
    return stored


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def progress_percentage(
    status: JobStatus,
    uploaded_at: datetime,
    processing_started_at: datetime | None,
    now: datetime,
    timeout: timedelta = PROCESSING_TIMEOUT,
) -> int:
    """Progress shown in the app for an (effective) status.

    uploaded 10, retrying 15, completed 100, failed/timeout 0, and processing
    ramps linearly from 20 to 90 across the timeout window.
    """
    if status == JobStatus.uploaded:
        return PROGRESS_UPLOADED
    if status == JobStatus.retrying:
        return PROGRESS_RETRYING
    if status == JobStatus.completed:
        return PROGRESS_COMPLETED
    if status in (JobStatus.failed, JobStatus.timeout):
        return 0

    if processing_started_at is None:
        return PROGRESS_PROCESSING_START

    elapsed_ms = max(0.0, (now - processing_started_at).total_seconds() * 1000)
    window_ms = timeout.total_seconds() * 1000
    ramp = PROGRESS_PROCESSING_START + (elapsed_ms / window_ms) * (
        PROGRESS_PROCESSING_CAP - PROGRESS_PROCESSING_START
    )
    return _round_half_up(min(float(PROGRESS_PROCESSING_CAP), ramp))


def can_retry(
    status: JobStatus, retry_count: int, max_attempts: int = MAX_RETRY_ATTEMPTS
) -> bool:
    """Whether the app should offer a retry for this (effective) status."""
    return status in RETRYABLE_STATUSES and retry_count < max_attempts


def retry_block(
    status: JobStatus,
    retry_count: int,
    uploaded_at: datetime,
    last_retry_at: datetime | None,
    now: datetime,
    max_attempts: int = MAX_RETRY_ATTEMPTS,
) -> RetryBlock | None:
    """Return why a retry must be refused, or None if it may proceed."""
    if status not in RETRYABLE_STATUSES:
        return RetryBlock.NOT_RETRYABLE
    if retry_count >= max_attempts:
        return RetryBlock.LIMIT_EXCEEDED
    if last_retry_at is not None and now - last_retry_at < MIN_RETRY_INTERVAL:
        return RetryBlock.TOO_SOON
    if now - uploaded_at > MAX_RETRY_JOB_AGE:
        return RetryBlock.TOO_OLD
    return None


def retry_delay_seconds(attempt: int) -> int:
    """Queue delay for the given retry attempt (1-based)."""
    index = min(max(attempt, 1), len(RETRY_DELAYS_S)) - 1
    return RETRY_DELAYS_S[index]


def status_message(
    status: JobStatus, retry_count: int, max_attempts: int = MAX_RETRY_ATTEMPTS
) -> str:
    """User-facing message for an (effective) status."""
    if status == JobStatus.uploaded:
        return "File uploaded successfully. Processing will start shortly."
    if status == JobStatus.processing:
        return "Your document is being analyzed. This usually takes 1-2 minutes."
    if status == JobStatus.retrying:
        return f"Retrying processing (attempt {retry_count + 1}/{max_attempts}). Please wait..."
    if status == JobStatus.completed:
        return "Analysis complete. Your results are ready."
    if status == JobStatus.failed:
        if retry_count > 0:
            return (
                f"Processing failed after {retry_count} attempt(s). "
                "You can retry or contact support."
            )
        return "Processing failed. You can retry or try uploading again."
    return "Processing timeout. You can retry or try uploading a different file."


@dataclass(frozen=True)
class JobView:
    """Derived, read-time view of a job's lifecycle."""

    status: JobStatus
    progress_percentage: int
    message: str
    can_retry: bool
    error_message: str | None


def derive_job_view(
    job: JobLike,
    now: datetime,
    timeout: timedelta = PROCESSING_TIMEOUT,
    max_attempts: int = MAX_RETRY_ATTEMPTS,
) -> JobView:
    """Compute everything a status read reports, consistently, from one job row."""
    status = effective_status(
        job.status, job.uploaded_at, job.processing_started_at, now, timeout
    )
    error_message = job.error_message
    if status == JobStatus.timeout and not error_message:
        error_message = TIMEOUT_ERROR_MESSAGE.format(minutes=int(timeout.total_seconds() // 60))
    if status not in RETRYABLE_STATUSES:
        error_message = None

    return JobView(
        status=status,
        progress_percentage=progress_percentage(
            status, job.uploaded_at, job.processing_started_at, now, timeout
        ),
        message=status_message(status, job.retry_count, max_attempts),
        can_retry=can_retry(status, job.retry_count, max_attempts),
        error_message=error_message,
    )
