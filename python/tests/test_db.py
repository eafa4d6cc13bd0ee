"""Database smoke tests.

Verifies:
- Sessions open and execute queries
- Timestamps round-trip as timezone-aware UTC
- Naive datetimes are refused
- Status columns reject values outside the enum
"""

from datetime import UTC, datetime, timedelta, timezone

import pytest
from sqlalchemy import text
from sqlalchemy.exc import StatementError
from sqlalchemy.orm import Session

from serenya.db.engine import create_db_engine
from serenya.db.models import AuditEvent, DataClassification, JobStatus
from serenya.services.jobs import get_job
from tests.helpers import create_test_user_id, make_job


class TestDatabaseConnectivity:
    """Tests for basic database operations."""

    def test_session_opens_and_executes_query(self, db_session: Session):
        row = db_session.execute(text("SELECT 1 AS value")).fetchone()
        assert row is not None
        assert row[0] == 1

    def test_sqlite_engine_from_url(self):
        engine = create_db_engine("sqlite://")
        try:
            with engine.connect() as conn:
                assert conn.execute(text("SELECT 2")).scalar() == 2
        finally:
            engine.dispose()


class TestTimestamps:
    def test_round_trip_as_utc(self, db_session: Session):
        local = timezone(timedelta(hours=2))
        uploaded_at = datetime(2024, 3, 1, 14, 0, tzinfo=local)
        job = make_job(db_session, create_test_user_id(), uploaded_at=uploaded_at)

        db_session.expire_all()
        loaded = get_job(db_session, job.id)

        assert loaded.uploaded_at == uploaded_at
        assert loaded.uploaded_at.tzinfo == UTC
        assert loaded.uploaded_at.hour == 12

    def test_naive_datetime_refused(self, db_session: Session):
        db_session.add(
            AuditEvent(
                event_timestamp=datetime(2024, 3, 1, 12, 0),
                event_type="t",
                event_subtype="s",
                data_classification=DataClassification.internal,
                event_hash="0" * 64,
            )
        )
        with pytest.raises(StatementError):
            db_session.commit()
        db_session.rollback()


class TestEnums:
    def test_status_stored_as_value(self, db_session: Session):
        job = make_job(db_session, create_test_user_id(), status=JobStatus.retrying)

        stored = db_session.execute(
            text("SELECT status FROM processing_jobs WHERE id = :id"), {"id": job.id}
        ).scalar()
        assert stored == "retrying"
