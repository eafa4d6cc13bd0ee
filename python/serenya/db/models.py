"""SQLAlchemy ORM models for Serenya.

Defines the database tables using SQLAlchemy 2.x declarative patterns.
Column types are portable (string identifiers, enums stored as VARCHAR with
a check constraint, UTC-normalized timestamps) so the same models run on
Postgres in deployment and SQLite in the test suite.
"""

from datetime import UTC, datetime
from enum import Enum as PyEnum
from uuid import uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Enum,
    Index,
    Integer,
    String,
    Text,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


class UTCDateTime(TypeDecorator):
    """Timezone-aware datetime that always round-trips as UTC.

    SQLite drops tzinfo on read; this re-attaches UTC so comparisons with
    datetime.now(UTC) never mix naive and aware values.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            raise ValueError("Naive datetimes are not allowed; use datetime.now(UTC)")
        return value.astimezone(UTC)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value.astimezone(UTC)


def _new_id() -> str:
    return str(uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


# =============================================================================
# Enums
# =============================================================================


class JobStatus(str, PyEnum):
    """Document job lifecycle states.

    States:
        uploaded: File stored, waiting for the worker
        processing: Worker has claimed the job and is calling the LLM
        retrying: User requested a retry; re-queued with a delay
        completed: Result artifact written
        failed: Processing error recorded
        timeout: Exceeded the processing window (normally derived at read time)
    """

    uploaded = "uploaded"
    processing = "processing"
    retrying = "retrying"
    completed = "completed"
    failed = "failed"
    timeout = "timeout"


class DataClassification(str, PyEnum):
    """Sensitivity of audit event details."""

    public = "public"
    internal = "internal"
    restricted = "restricted"
    medical_phi = "medical_phi"
    system_error = "system_error"


# =============================================================================
# Tables
# =============================================================================


class ProcessingJob(Base):
    """Document-analysis job.

    Holds identity, ownership, lifecycle timestamps and file metadata. The
    analysis itself lives in the object store at result_ref; it is never
    stored inline.
    """

    __tablename__ = "processing_jobs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(128), nullable=False)

    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, name="job_status_enum", native_enum=False, length=16),
        default=JobStatus.uploaded,
        nullable=False,
    )
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # File metadata
    file_name: Mapped[str] = mapped_column(Text, nullable=False)
    sanitized_file_name: Mapped[str] = mapped_column(Text, nullable=False)
    file_type: Mapped[str] = mapped_column(String(16), nullable=False)
    file_size: Mapped[int] = mapped_column(BigInteger, nullable=False)
    file_checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    upload_key: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Pointer to the completed artifact
    result_ref: Mapped[str | None] = mapped_column(Text, nullable=True)
    processing_duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)

    # Lifecycle timestamps
    uploaded_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    processing_started_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    failed_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_retry_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "retry_count >= 0 AND retry_count <= 3",
            name="ck_processing_jobs_retry_count_range",
        ),
        CheckConstraint("file_size >= 0", name="ck_processing_jobs_file_size_nonneg"),
        Index("ix_processing_jobs_user_id", "user_id"),
        Index("ix_processing_jobs_status_uploaded_at", "status", "uploaded_at"),
    )


class AuditEvent(Base):
    """Append-only record of a security- or PHI-relevant action.

    Rows are inserted by services.audit and never updated or deleted by
    application code. user_id_hash is a one-way hash; details are encrypted
    when the classification is restricted or medical_phi; event_hash covers
    the canonical record for tamper detection.
    """

    __tablename__ = "audit_events"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_new_id)
    event_timestamp: Mapped[datetime] = mapped_column(
        UTCDateTime(), default=_utcnow, nullable=False
    )
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    event_subtype: Mapped[str] = mapped_column(String(128), nullable=False)
    user_id_hash: Mapped[str | None] = mapped_column(String(64), nullable=True)
    request_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    data_classification: Mapped[DataClassification] = mapped_column(
        Enum(DataClassification, name="data_classification_enum", native_enum=False, length=32),
        nullable=False,
    )
    details: Mapped[str | None] = mapped_column(Text, nullable=True)
    details_encrypted: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    event_hash: Mapped[str] = mapped_column(String(64), nullable=False)

    __table_args__ = (
        Index("ix_audit_events_type_timestamp", "event_type", "event_timestamp"),
    )
