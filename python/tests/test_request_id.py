"""Tests for X-Request-ID middleware.

Tests cover:
- Request ID generation when missing
- Request ID preservation when valid
- Request ID normalization (UUID lowercase)
- Request ID replacement when invalid
- Request ID presence on auth failures and in error bodies
- Request ID recorded on audit events
"""

from uuid import UUID

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import select

from serenya.db.models import AuditEvent
from serenya.middleware.request_id import is_valid_request_id, normalize_request_id
from tests.helpers import PDF_BYTES, auth_headers, create_test_user_id, encode_file


class TestRequestIdHelpers:
    @pytest.mark.parametrize("value", ["abc_def-123", "a" * 128, "1-5e1b4151.x"])
    def test_valid(self, value):
        assert is_valid_request_id(value)

    @pytest.mark.parametrize("value", ["", "a" * 129, "has space", "semi;colon", "new\nline"])
    def test_invalid(self, value):
        assert not is_valid_request_id(value)

    def test_uuid_lowercased(self):
        assert (
            normalize_request_id("A1B2C3D4-E5F6-4789-ABCD-EF0123456789")
            == "a1b2c3d4-e5f6-4789-abcd-ef0123456789"
        )

    def test_other_ids_unchanged(self):
        assert normalize_request_id("Req-ABC") == "Req-ABC"


class TestRequestIdMiddleware:
    """Tests for X-Request-ID middleware."""

    def test_request_id_generated_when_missing(self, client: TestClient):
        response = client.get("/health")

        assert response.status_code == 200
        UUID(response.headers["X-Request-ID"])

    def test_request_id_preserved_when_valid(self, client: TestClient):
        response = client.get("/health", headers={"X-Request-ID": "abc_def-123"})
        assert response.headers["X-Request-ID"] == "abc_def-123"

    def test_uuid_request_id_normalized(self, client: TestClient):
        response = client.get(
            "/health", headers={"X-Request-ID": "A1B2C3D4-E5F6-4789-ABCD-EF0123456789"}
        )
        assert response.headers["X-Request-ID"] == "a1b2c3d4-e5f6-4789-abcd-ef0123456789"

    def test_invalid_request_id_replaced(self, client: TestClient):
        response = client.get("/health", headers={"X-Request-ID": "x" * 200})

        request_id = response.headers["X-Request-ID"]
        assert request_id != "x" * 200
        UUID(request_id)

    def test_request_id_on_auth_failure(self, client: TestClient):
        response = client.get("/jobs/some-job/status", headers={"X-Request-ID": "req-401"})

        assert response.status_code == 401
        assert response.headers["X-Request-ID"] == "req-401"

    def test_request_id_in_error_body(self, client: TestClient):
        response = client.get(
            "/jobs/some-job/status",
            headers={**auth_headers(create_test_user_id()), "X-Request-ID": "req-404"},
        )

        assert response.status_code == 404
        assert response.json()["error"]["request_id"] == "req-404"

    def test_request_id_recorded_on_audit_event(self, client: TestClient, db_session):
        response = client.post(
            "/jobs",
            json={"file_name": "labs.pdf", "file_type": "pdf", "content": encode_file(PDF_BYTES)},
            headers={**auth_headers(create_test_user_id()), "X-Request-ID": "req-upload-1"},
        )

        assert response.status_code == 201
        event = db_session.execute(select(AuditEvent)).scalar_one()
        assert event.request_id == "req-upload-1"
