"""Tests for error handling and response envelopes.

Verifies:
- Error envelope shape, including user_message and request_id
- Every error code maps to an HTTP status
- Chat failures surface the worker's error code
- Database outages return E_SERVICE_UNAVAILABLE with 503
- Unknown exceptions return E_INTERNAL with 500
- Malformed JSON and invalid bodies return E_INVALID_REQUEST
"""

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from sqlalchemy.exc import OperationalError

from serenya.errors import (
    ERROR_CODE_TO_STATUS,
    ApiError,
    ApiErrorCode,
    ChatProcessingError,
    ConflictError,
    InvalidRequestError,
)
from serenya.logging import clear_request_context, set_request_context
from serenya.responses import (
    api_error_handler,
    database_unavailable_handler,
    error_response,
    success_response,
    unhandled_exception_handler,
)
from tests.helpers import auth_headers, create_test_user_id


class TestEnvelopes:
    def test_error_shape(self):
        assert error_response(ApiErrorCode.E_JOB_NOT_FOUND, "Job not found") == {
            "error": {"code": "E_JOB_NOT_FOUND", "message": "Job not found"}
        }

    def test_user_message_and_request_id(self):
        response = error_response(
            ApiErrorCode.E_RETRY_TOO_SOON, "Too soon", request_id="req-1", user_message="Wait"
        )
        assert response["error"] == {
            "code": "E_RETRY_TOO_SOON",
            "message": "Too soon",
            "user_message": "Wait",
            "request_id": "req-1",
        }

    def test_request_id_from_context(self):
        set_request_context("req-ctx")
        try:
            response = error_response(ApiErrorCode.E_INTERNAL, "boom")
        finally:
            clear_request_context()
        assert response["error"]["request_id"] == "req-ctx"

    def test_success_wraps_data(self):
        assert success_response({"job_id": "j"}) == {"data": {"job_id": "j"}}


class TestErrorCodes:
    def test_every_code_has_a_status(self):
        for code in ApiErrorCode:
            assert code in ERROR_CODE_TO_STATUS, f"{code} has no HTTP status"

    @pytest.mark.parametrize(
        ("error", "status"),
        [
            (InvalidRequestError(ApiErrorCode.E_FILE_TOO_LARGE, "big"), 400),
            (ConflictError(ApiErrorCode.E_JOB_NOT_COMPLETE, "wait"), 409),
            (ApiError(ApiErrorCode.E_RETRY_TOO_SOON, "slow down"), 429),
            (ApiError(ApiErrorCode.E_AUTH_UNAVAILABLE, "down"), 503),
            (ApiError(ApiErrorCode.E_ENCRYPTION_FAILED, "kms"), 500),
        ],
    )
    def test_status_derived_from_code(self, error, status):
        assert error.status_code == status

    def test_chat_processing_error_defaults_code(self):
        error = ChatProcessingError(None, "failed")
        assert error.error_code == "E_CHAT_PROCESSING_FAILED"
        assert error.status_code == 500


class TestHandlers:
    @pytest.fixture
    def handler_client(self):
        app = FastAPI()
        app.add_exception_handler(ApiError, api_error_handler)
        app.add_exception_handler(OperationalError, database_unavailable_handler)
        app.add_exception_handler(Exception, unhandled_exception_handler)

        @app.get("/db-down")
        def db_down():
            raise OperationalError(
                "SELECT 1", {}, Exception("could not connect to server at db.internal")
            )

        @app.get("/chat-failed")
        def chat_failed():
            raise ChatProcessingError(
                "BEDROCK_RATE_LIMITED", "AI service is busy", user_message="Wait a moment"
            )

        @app.get("/boom")
        def boom():
            raise RuntimeError("secret internals")

        return TestClient(app, raise_server_exceptions=False)

    def test_chat_failure_uses_worker_code(self, handler_client):
        response = handler_client.get("/chat-failed")

        assert response.status_code == 500
        assert response.json()["error"] == {
            "code": "BEDROCK_RATE_LIMITED",
            "message": "AI service is busy",
            "user_message": "Wait a moment",
        }

    def test_database_outage_is_retryable_503(self, handler_client):
        response = handler_client.get("/db-down")

        assert response.status_code == 503
        assert response.json()["error"]["code"] == "E_SERVICE_UNAVAILABLE"
        assert "db.internal" not in response.text

    def test_unhandled_exception_is_opaque(self, handler_client):
        response = handler_client.get("/boom")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "E_INTERNAL"
        assert "secret internals" not in response.text


class TestRequestBodies:
    def test_malformed_json(self, client: TestClient):
        response = client.post(
            "/jobs",
            content=b"{not json",
            headers={**auth_headers(create_test_user_id()), "Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_INVALID_REQUEST"

    def test_missing_fields(self, client: TestClient):
        response = client.post(
            "/jobs", json={"file_name": "labs.pdf"}, headers=auth_headers(create_test_user_id())
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_INVALID_REQUEST"
