"""Tests for the audit trail.

Tests cover:
- User ids stored only as hashes
- PHI/restricted details encrypted, internal details stored as JSON
- Error text in details redacted and truncated
- Tamper detection via event_hash
- try_record_audit_event never raises
"""

import json
from datetime import UTC, datetime

import pytest
from sqlalchemy import select

from serenya.db.models import AuditEvent, DataClassification
from serenya.logging import clear_request_context, set_request_context
from serenya.services.audit import (
    compute_event_hash,
    read_audit_details,
    record_audit_event,
    try_record_audit_event,
    verify_event_hash,
)
from serenya.services.crypto import hash_for_index

NOW = datetime(2024, 3, 1, 12, 0, 0, tzinfo=UTC)


def _all_events(db):
    return list(db.execute(select(AuditEvent).order_by(AuditEvent.event_timestamp)).scalars())


class TestRecordAuditEvent:
    def test_user_id_is_hashed(self, db_session, cipher):
        event = record_audit_event(
            db_session,
            cipher,
            event_type="document_upload",
            event_subtype="upload_completed",
            user_id="user-1",
            details={"job_id": "job-1"},
            now=NOW,
        )

        assert event.user_id_hash == hash_for_index("user-1")
        assert "user-1" not in (event.details or "")

    def test_internal_details_stored_as_json(self, db_session, cipher):
        event = record_audit_event(
            db_session,
            cipher,
            event_type="document_processing",
            event_subtype="retry_scheduled",
            user_id="user-1",
            details={"job_id": "job-1", "retry_count": 1},
            classification=DataClassification.internal,
        )

        assert event.details_encrypted is False
        assert json.loads(event.details) == {"job_id": "job-1", "retry_count": 1}

    def test_phi_details_encrypted(self, db_session, cipher):
        event = record_audit_event(
            db_session,
            cipher,
            event_type="chat",
            event_subtype="chat_message_submitted",
            user_id="user-1",
            details={"content_id": "job-1", "message_chars": 42},
            classification=DataClassification.medical_phi,
        )

        assert event.details_encrypted is True
        assert "content_id" not in event.details
        assert read_audit_details(event, cipher) == {"content_id": "job-1", "message_chars": 42}

    def test_phi_without_cipher_rejected(self, db_session):
        with pytest.raises(ValueError, match="require a cipher"):
            record_audit_event(
                db_session,
                None,
                event_type="chat",
                event_subtype="chat_message_submitted",
                user_id="user-1",
                classification=DataClassification.medical_phi,
            )

    def test_error_detail_redacted_and_truncated(self, db_session, cipher):
        event = record_audit_event(
            db_session,
            cipher,
            event_type="storage",
            event_subtype="upload_failed",
            user_id="user-1",
            details={"error": "denied for pat@example.com " + "x" * 300},
            classification=DataClassification.system_error,
        )

        error = json.loads(event.details)["error"]
        assert error.startswith("denied for [EMAIL]")
        assert len(error) == 100

    def test_request_id_taken_from_context(self, db_session, cipher):
        set_request_context("req-123")
        try:
            event = record_audit_event(
                db_session, cipher, event_type="t", event_subtype="s", user_id=None
            )
        finally:
            clear_request_context()

        assert event.request_id == "req-123"
        assert event.user_id_hash is None


class TestEventHash:
    def test_fresh_event_verifies(self, db_session, cipher):
        event = record_audit_event(
            db_session,
            cipher,
            event_type="document_access",
            event_subtype="result_retrieved",
            user_id="user-1",
            details={"job_id": "job-1"},
            request_id="req-1",
            now=NOW,
        )
        assert verify_event_hash(event) is True

    def test_tampered_details_detected(self, db_session, cipher):
        event = record_audit_event(
            db_session,
            cipher,
            event_type="document_access",
            event_subtype="result_retrieved",
            user_id="user-1",
            details={"job_id": "job-1"},
            now=NOW,
        )
        event.details = json.dumps({"job_id": "job-2"})
        assert verify_event_hash(event) is False

    def test_hash_covers_every_field(self):
        base = compute_event_hash(NOW, "t", "s", "u", "r", "d")
        assert base != compute_event_hash(NOW, "t", "s", "u", "r", "other")
        assert base != compute_event_hash(NOW, "t", "s", "u", None, "d")
        assert base != compute_event_hash(NOW, "t", "x", "u", "r", "d")


class TestTryRecordAuditEvent:
    def test_success(self, db_session, cipher):
        assert try_record_audit_event(
            db_session, cipher, event_type="t", event_subtype="s", user_id="user-1"
        )
        assert len(_all_events(db_session)) == 1

    def test_failure_is_swallowed(self, db_session, cipher, kms):
        kms.fail_next = True

        written = try_record_audit_event(
            db_session,
            cipher,
            event_type="chat",
            event_subtype="chat_response_generated",
            user_id="user-1",
            details={"chat_job_id": "x"},
            classification=DataClassification.medical_phi,
        )

        assert written is False
        assert _all_events(db_session) == []
