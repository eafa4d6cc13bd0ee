"""HTTP tests for the document job routes.

Tests cover:
- POST /jobs: 201 envelope, base64 and type validation
- GET /jobs/{id}/status and /result through a full processing run
- POST /jobs/{id}/retry
- Other users' jobs answer 404
"""

from fastapi.testclient import TestClient

from serenya.db.models import JobStatus
from serenya.services.documents import process_document_job
from serenya.services.llm import FakeLLMClient
from tests.helpers import (
    PDF_BYTES,
    PNG_BYTES,
    auth_headers,
    create_test_user_id,
    encode_file,
    make_job,
)


def _upload(client, user_id, **overrides):
    body = {"file_name": "labs.pdf", "file_type": "pdf", "content": encode_file(PDF_BYTES)}
    body.update(overrides)
    return client.post("/jobs", json=body, headers=auth_headers(user_id))


class TestUpload:
    def test_created(self, client: TestClient):
        response = _upload(client, create_test_user_id())

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["status"] == "uploaded"
        assert data["file_name"] == "labs.pdf"
        assert data["mime_type"] == "application/pdf"
        assert data["estimated_completion_seconds"] == 90

    def test_invalid_base64(self, client: TestClient):
        response = _upload(client, create_test_user_id(), content="not base64!!")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_INVALID_REQUEST"

    def test_unsupported_type(self, client: TestClient):
        response = _upload(client, create_test_user_id(), file_type="docx")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_INVALID_FILE_TYPE"
        assert response.json()["error"]["user_message"]

    def test_content_mismatch(self, client: TestClient):
        response = _upload(client, create_test_user_id(), content=encode_file(PNG_BYTES))
        assert response.json()["error"]["code"] == "E_INVALID_FILE_TYPE"


class TestStatusAndResult:
    def test_full_flow(self, client: TestClient, db_session, app_store, app_cipher):
        user_id = create_test_user_id()
        job_id = _upload(client, user_id).json()["data"]["job_id"]

        status = client.get(f"/jobs/{job_id}/status", headers=auth_headers(user_id))
        assert status.status_code == 200
        assert status.json()["data"]["status"] == "uploaded"

        pending = client.get(f"/jobs/{job_id}/result", headers=auth_headers(user_id))
        assert pending.status_code == 409
        assert pending.json()["error"]["code"] == "E_JOB_NOT_COMPLETE"

        process_document_job(
            db_session, job_id, store=app_store, cipher=app_cipher, llm=FakeLLMClient()
        )

        status = client.get(f"/jobs/{job_id}/status", headers=auth_headers(user_id))
        assert status.json()["data"]["status"] == "completed"
        assert status.json()["data"]["progress_percentage"] == 100

        result = client.get(f"/jobs/{job_id}/result", headers=auth_headers(user_id))
        assert result.status_code == 200
        data = result.json()["data"]
        assert data["job_id"] == job_id
        assert data["confidence_level"] in ("low", "moderate", "high")
        assert data["safety_warnings"][-1]["type"] == "MEDICAL_DISCLAIMER"

    def test_other_user_gets_404(self, client: TestClient):
        owner = create_test_user_id()
        job_id = _upload(client, owner).json()["data"]["job_id"]
        stranger = auth_headers(create_test_user_id())

        for path in (f"/jobs/{job_id}/status", f"/jobs/{job_id}/result"):
            response = client.get(path, headers=stranger)
            assert response.status_code == 404
            assert response.json()["error"]["code"] == "E_JOB_NOT_FOUND"

        retry = client.post(f"/jobs/{job_id}/retry", headers=stranger)
        assert retry.status_code == 404


class TestRetry:
    def test_failed_job_retried(self, client: TestClient, db_session):
        user_id = create_test_user_id()
        job = make_job(db_session, user_id, status=JobStatus.failed, error_message="boom")

        response = client.post(f"/jobs/{job.id}/retry", headers=auth_headers(user_id))

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["status"] == "retrying"
        assert data["retry_count"] == 1
        assert data["retry_delay_seconds"] == 30

    def test_completed_job_cannot_be_retried(self, client: TestClient, db_session):
        user_id = create_test_user_id()
        job = make_job(db_session, user_id, status=JobStatus.completed)

        response = client.post(f"/jobs/{job.id}/retry", headers=auth_headers(user_id))

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "E_RETRY_NOT_ALLOWED"

    def test_limit_exceeded(self, client: TestClient, db_session):
        user_id = create_test_user_id()
        job = make_job(db_session, user_id, status=JobStatus.failed, retry_count=3)

        response = client.post(f"/jobs/{job.id}/retry", headers=auth_headers(user_id))

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "E_RETRY_LIMIT_EXCEEDED"
