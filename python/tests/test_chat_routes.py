"""HTTP tests for the chat routes.

Tests cover:
- POST /chat/messages: 202 envelope and validation codes
- GET /chat/jobs/{id}/status: processing, single delivery, failure codes
- Job id format and ownership errors
"""

from unittest.mock import patch

from fastapi.testclient import TestClient

from serenya.services.chat import generate_chat_job_id, process_chat_message
from serenya.services.llm import FakeLLMClient, LLMErrorClass
from tests.helpers import auth_headers, create_test_user_id


def _submit(client, user_id, **body):
    payload = {"content_id": "doc-1", "message": "What does my result mean?"}
    payload.update(body)
    with patch("serenya.services.chat._enqueue_answer", return_value=True) as mock_enqueue:
        response = client.post("/chat/messages", json=payload, headers=auth_headers(user_id))
    return response, mock_enqueue


class TestSubmit:
    def test_accepted(self, client: TestClient):
        user_id = create_test_user_id()
        response, _ = _submit(client, user_id)

        assert response.status_code == 202
        data = response.json()["data"]
        assert data["status"] == "processing"
        assert data["job_id"].startswith(f"{user_id}_")

    def test_missing_content_id(self, client: TestClient):
        response, mock_enqueue = _submit(client, create_test_user_id(), content_id=None)

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_MISSING_CONTENT_ID"
        mock_enqueue.assert_not_called()

    def test_message_too_long(self, client: TestClient):
        response, _ = _submit(client, create_test_user_id(), message="x" * 1001)
        assert response.json()["error"]["code"] == "E_MESSAGE_TOO_LONG"


class TestPoll:
    def test_processing_then_delivered_once(
        self, client: TestClient, db_session, app_store, app_cipher
    ):
        user_id = create_test_user_id()
        response, mock_enqueue = _submit(client, user_id)
        job_id = response.json()["data"]["job_id"]
        path = f"/chat/jobs/{job_id}/status"

        pending = client.get(path, headers=auth_headers(user_id))
        assert pending.status_code == 200
        assert pending.json()["data"]["status"] == "processing"

        chat_job_id, owner_id, content_id, sealed, _request_id = mock_enqueue.call_args.args
        process_chat_message(
            db_session,
            chat_job_id,
            owner_id=owner_id,
            content_id=content_id,
            sealed_question=sealed,
            store=app_store,
            cipher=app_cipher,
            llm=FakeLLMClient(answer_text="Here is what your result means."),
        )

        delivered = client.get(path, headers=auth_headers(user_id))
        assert delivered.status_code == 200
        assert delivered.json()["data"]["status"] == "complete"
        assert delivered.json()["data"]["response"]["message"] == "Here is what your result means."

        again = client.get(path, headers=auth_headers(user_id))
        assert again.json()["data"]["status"] == "processing"

    def test_failure_reports_worker_code(
        self, client: TestClient, db_session, app_store, app_cipher
    ):
        user_id = create_test_user_id()
        response, mock_enqueue = _submit(client, user_id)
        job_id = response.json()["data"]["job_id"]
        chat_job_id, owner_id, content_id, sealed, _request_id = mock_enqueue.call_args.args

        process_chat_message(
            db_session,
            chat_job_id,
            owner_id=owner_id,
            content_id=content_id,
            sealed_question=sealed,
            store=app_store,
            cipher=app_cipher,
            llm=FakeLLMClient(fail_with=LLMErrorClass.TIMEOUT),
        )

        failed = client.get(f"/chat/jobs/{job_id}/status", headers=auth_headers(user_id))
        assert failed.status_code == 500
        assert failed.json()["error"]["code"] == "BEDROCK_TIMEOUT"

    def test_malformed_job_id(self, client: TestClient):
        response = client.get(
            "/chat/jobs/not-a-chat-job/status", headers=auth_headers(create_test_user_id())
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "E_INVALID_JOB_ID_FORMAT"

    def test_other_users_job(self, client: TestClient):
        job_id = generate_chat_job_id(create_test_user_id())
        response = client.get(
            f"/chat/jobs/{job_id}/status", headers=auth_headers(create_test_user_id())
        )

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "E_INVALID_JOB_ID"
