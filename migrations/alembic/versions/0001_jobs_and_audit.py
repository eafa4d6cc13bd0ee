"""Processing jobs and audit events

Revision ID: 0001
Revises:
Create Date: 2026-09-14

processing_jobs holds document-job lifecycle state; analysis results live
in the object store and are referenced by result_ref. audit_events is
append-only.
"""

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "0001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    # ==========================================================================
    # processing_jobs table
    # ==========================================================================
    op.create_table(
        "processing_jobs",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("user_id", sa.String(128), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("retry_count", sa.Integer(), server_default="0", nullable=False),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("file_name", sa.Text(), nullable=False),
        sa.Column("sanitized_file_name", sa.Text(), nullable=False),
        sa.Column("file_type", sa.String(16), nullable=False),
        sa.Column("file_size", sa.BigInteger(), nullable=False),
        sa.Column("file_checksum", sa.String(64), nullable=False),
        sa.Column("upload_key", sa.Text(), nullable=True),
        sa.Column("result_ref", sa.Text(), nullable=True),
        sa.Column("processing_duration_ms", sa.Integer(), nullable=True),
        sa.Column(
            "uploaded_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("processing_started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("failed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("last_retry_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "status IN ('uploaded', 'processing', 'retrying', 'completed', 'failed', 'timeout')",
            name="ck_processing_jobs_status",
        ),
        sa.CheckConstraint(
            "retry_count >= 0 AND retry_count <= 3",
            name="ck_processing_jobs_retry_count_range",
        ),
        sa.CheckConstraint("file_size >= 0", name="ck_processing_jobs_file_size_nonneg"),
    )
    op.create_index("ix_processing_jobs_user_id", "processing_jobs", ["user_id"])
    # Sweep scans by status and age
    op.create_index(
        "ix_processing_jobs_status_uploaded_at", "processing_jobs", ["status", "uploaded_at"]
    )

    # ==========================================================================
    # audit_events table
    # ==========================================================================
    op.create_table(
        "audit_events",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column(
            "event_timestamp",
            sa.TIMESTAMP(timezone=True),
            server_default=sa.text("now()"),
            nullable=False,
        ),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("event_subtype", sa.String(128), nullable=False),
        sa.Column("user_id_hash", sa.String(64), nullable=True),
        sa.Column("request_id", sa.String(128), nullable=True),
        sa.Column("data_classification", sa.String(32), nullable=False),
        sa.Column("details", sa.Text(), nullable=True),
        sa.Column("details_encrypted", sa.Boolean(), server_default="false", nullable=False),
        sa.Column("event_hash", sa.String(64), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "data_classification IN "
            "('public', 'internal', 'restricted', 'medical_phi', 'system_error')",
            name="ck_audit_events_data_classification",
        ),
    )
    op.create_index(
        "ix_audit_events_type_timestamp", "audit_events", ["event_type", "event_timestamp"]
    )


def downgrade() -> None:
    op.drop_index("ix_audit_events_type_timestamp", table_name="audit_events")
    op.drop_table("audit_events")
    op.drop_index("ix_processing_jobs_status_uploaded_at", table_name="processing_jobs")
    op.drop_index("ix_processing_jobs_user_id", table_name="processing_jobs")
    op.drop_table("processing_jobs")
