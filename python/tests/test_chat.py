"""Tests for the chat service.

Tests cover:
- Chat job id generation and validation (format, owner, issue-time window)
- Submission validation order and the sealed question
- Worker success and failure artifacts
- Polling: processing until the artifact exists, single consumption,
  failure artifacts surfaced with the worker's error code
"""

import json
from datetime import UTC, datetime, timedelta
from unittest.mock import patch

import pytest

from serenya.config import clear_settings_cache
from serenya.errors import (
    ApiErrorCode,
    ChatProcessingError,
    InvalidRequestError,
    NotFoundError,
)
from serenya.services.chat import (
    ChatJobIdentity,
    ChatJobIdRejection,
    generate_chat_job_id,
    get_chat_status,
    process_chat_message,
    require_chat_job_owner,
    submit_chat_message,
    validate_chat_job_id,
)
from serenya.services.documents import create_document_job, process_document_job
from serenya.services.llm import FakeLLMClient, LLMErrorClass
from serenya.services.llm.normalize import CHAT_DISCLAIMER
from serenya.storage import build_chat_response_key
from tests.helpers import PDF_BYTES, create_test_user_id

ISSUED_AT = datetime.fromtimestamp(1699999999, tz=UTC)
QUESTION = "What does an elevated white blood cell count mean?"


@pytest.fixture
def user_id() -> str:
    return create_test_user_id()


@pytest.fixture
def document_id(db_session, store, cipher, user_id) -> str:
    """A completed document result owned by user_id."""
    created = create_document_job(
        db_session,
        user_id,
        file_name="labs.pdf",
        file_type="pdf",
        content=PDF_BYTES,
        store=store,
        cipher=cipher,
    )
    process_document_job(
        db_session,
        created["job_id"],
        store=store,
        cipher=cipher,
        llm=FakeLLMClient(
            analysis={
                "confidence_score": 8,
                "interpretation_text": "Blood work looks normal.",
                "medical_flags": [],
                "recommendations": [],
            }
        ),
    )
    return created["job_id"]


def _submit(db_session, cipher, user_id, content_id, message=QUESTION):
    """Submit a question and capture the sealed question handed to the worker."""
    with patch("serenya.services.chat._enqueue_answer", return_value=True) as mock_enqueue:
        submitted = submit_chat_message(
            db_session, user_id, content_id=content_id, message=message, cipher=cipher
        )
    sealed_question = mock_enqueue.call_args.args[3]
    return submitted, sealed_question


# =============================================================================
# Job ids
# =============================================================================


class TestChatJobIds:
    def test_valid_id(self):
        outcome = validate_chat_job_id(
            "user123_1699999999000_ab12cd", "user123", now=ISSUED_AT + timedelta(seconds=30)
        )

        assert isinstance(outcome, ChatJobIdentity)
        assert outcome.owner_id == "user123"
        assert outcome.issued_at == ISSUED_AT

    def test_generated_id_round_trips(self, user_id):
        now = datetime.now(UTC)
        job_id = generate_chat_job_id(user_id, now)

        owner, timestamp, suffix = job_id.split("_")
        assert owner == user_id
        assert int(timestamp) == int(now.timestamp() * 1000)
        assert len(suffix) == 6
        assert isinstance(validate_chat_job_id(job_id, user_id, now), ChatJobIdentity)

    @pytest.mark.parametrize(
        "job_id",
        ["user123_1699999999000", "user123_1699999999000_ab12cd_extra", "user123__ab12cd"],
    )
    def test_wrong_shape(self, job_id):
        outcome = validate_chat_job_id(job_id, "user123", now=ISSUED_AT)
        assert outcome == ChatJobIdRejection(ApiErrorCode.E_INVALID_JOB_ID_FORMAT, "format")

    def test_missing(self):
        outcome = validate_chat_job_id("", "user123")
        assert outcome.code == ApiErrorCode.E_MISSING_JOB_ID

    def test_other_owner(self):
        outcome = validate_chat_job_id("user456_1699999999000_ab12cd", "user123", now=ISSUED_AT)
        assert outcome == ChatJobIdRejection(ApiErrorCode.E_INVALID_JOB_ID, "owner_mismatch")

    def test_non_numeric_timestamp(self):
        outcome = validate_chat_job_id("user123_yesterday_ab12cd", "user123", now=ISSUED_AT)
        assert outcome == ChatJobIdRejection(ApiErrorCode.E_EXPIRED_JOB_ID, "bad_timestamp")

    @pytest.mark.parametrize(
        "now",
        [ISSUED_AT + timedelta(hours=24, seconds=1), ISSUED_AT - timedelta(hours=1, seconds=1)],
    )
    def test_outside_window(self, now):
        outcome = validate_chat_job_id("user123_1699999999000_ab12cd", "user123", now=now)
        assert outcome == ChatJobIdRejection(ApiErrorCode.E_EXPIRED_JOB_ID, "outside_window")

    def test_window_edges_accepted(self):
        job_id = "user123_1699999999000_ab12cd"
        assert isinstance(
            validate_chat_job_id(job_id, "user123", now=ISSUED_AT + timedelta(hours=23)),
            ChatJobIdentity,
        )
        assert isinstance(
            validate_chat_job_id(job_id, "user123", now=ISSUED_AT - timedelta(minutes=59)),
            ChatJobIdentity,
        )


class TestRequireChatJobOwner:
    def test_malformed_is_bad_request(self):
        with pytest.raises(InvalidRequestError) as exc_info:
            require_chat_job_owner("not-a-chat-id", "user123")
        assert exc_info.value.code == ApiErrorCode.E_INVALID_JOB_ID_FORMAT
        assert exc_info.value.status_code == 400

    def test_other_owner_is_not_found(self):
        with pytest.raises(NotFoundError) as exc_info:
            require_chat_job_owner("user456_1699999999000_ab12cd", "user123", now=ISSUED_AT)
        assert exc_info.value.code == ApiErrorCode.E_INVALID_JOB_ID
        assert exc_info.value.status_code == 404

    def test_expired_is_not_found(self):
        with pytest.raises(NotFoundError) as exc_info:
            require_chat_job_owner(
                "user123_1699999999000_ab12cd", "user123", now=ISSUED_AT + timedelta(days=2)
            )
        assert exc_info.value.code == ApiErrorCode.E_EXPIRED_JOB_ID


# =============================================================================
# Submission
# =============================================================================


class TestSubmitChatMessage:
    def test_accepted(self, db_session, cipher, user_id):
        submitted = submit_chat_message(
            db_session, user_id, content_id="doc-1", message=f"  {QUESTION}  ", cipher=cipher
        )

        assert submitted["status"] == "processing"
        assert submitted["estimated_completion_seconds"] == 15
        assert submitted["job_id"].startswith(f"{user_id}_")
        assert submitted["chat_id"]

    @pytest.mark.parametrize(
        ("content_id", "message", "code"),
        [
            (None, None, ApiErrorCode.E_MISSING_CONTENT_ID),
            ("  ", QUESTION, ApiErrorCode.E_MISSING_CONTENT_ID),
            ("doc-1", None, ApiErrorCode.E_MISSING_MESSAGE),
            ("doc-1", "   ", ApiErrorCode.E_MISSING_MESSAGE),
            ("doc-1", "x" * 1001, ApiErrorCode.E_MESSAGE_TOO_LONG),
        ],
    )
    def test_rejected(self, db_session, cipher, user_id, content_id, message, code):
        with pytest.raises(InvalidRequestError) as exc_info:
            submit_chat_message(
                db_session, user_id, content_id=content_id, message=message, cipher=cipher
            )
        assert exc_info.value.code == code

    def test_length_checked_after_trimming(self, db_session, cipher, user_id):
        submitted = submit_chat_message(
            db_session, user_id, content_id="doc-1", message=" " + "x" * 1000 + " ", cipher=cipher
        )
        assert submitted["status"] == "processing"

    def test_question_not_in_task_arguments(self, db_session, cipher, user_id, monkeypatch):
        monkeypatch.setenv("SERENYA_ENV", "local")
        clear_settings_cache()

        with patch("serenya.tasks.answer_chat.answer_chat.apply_async") as mock_apply:
            submitted = submit_chat_message(
                db_session, user_id, content_id="doc-1", message=QUESTION, cipher=cipher
            )

        mock_apply.assert_called_once()
        args = mock_apply.call_args.kwargs["args"]
        assert args[:3] == [submitted["job_id"], user_id, "doc-1"]
        assert mock_apply.call_args.kwargs["queue"] == "chat"
        assert QUESTION not in json.dumps(mock_apply.call_args.kwargs)


# =============================================================================
# Worker and polling
# =============================================================================


class TestChatRoundTrip:
    def test_answer_delivered_once(self, db_session, store, cipher, user_id, document_id):
        submitted, sealed = _submit(db_session, cipher, user_id, document_id)
        job_id = submitted["job_id"]

        pending = get_chat_status(db_session, user_id, job_id, store=store, cipher=cipher)
        assert pending == {
            "job_id": job_id,
            "status": "processing",
            "estimated_completion_seconds": 10,
        }

        outcome = process_chat_message(
            db_session,
            job_id,
            owner_id=user_id,
            content_id=document_id,
            sealed_question=sealed,
            store=store,
            cipher=cipher,
            llm=FakeLLMClient(),
        )
        assert outcome["status"] == "completed"

        delivered = get_chat_status(db_session, user_id, job_id, store=store, cipher=cipher)
        response = delivered["response"]
        assert delivered["status"] == "complete"
        assert "Blood work looks normal." in response["message"]
        assert response["disclaimers"] == [CHAT_DISCLAIMER]
        assert response["metadata"]["content_id"] == document_id
        assert response["metadata"]["model_id"] == "mock"

        again = get_chat_status(db_session, user_id, job_id, store=store, cipher=cipher)
        assert again["status"] == "processing"
        assert build_chat_response_key(job_id) not in store.keys()

    def test_someone_elses_document_is_not_used(
        self, db_session, store, cipher, document_id
    ):
        stranger = create_test_user_id()
        submitted, sealed = _submit(db_session, cipher, stranger, document_id)

        process_chat_message(
            db_session,
            submitted["job_id"],
            owner_id=stranger,
            content_id=document_id,
            sealed_question=sealed,
            store=store,
            cipher=cipher,
            llm=FakeLLMClient(),
        )

        delivered = get_chat_status(
            db_session, stranger, submitted["job_id"], store=store, cipher=cipher
        )
        assert "Blood work" not in delivered["response"]["message"]

    def test_llm_failure_artifact(self, db_session, store, cipher, user_id, document_id):
        submitted, sealed = _submit(db_session, cipher, user_id, document_id)
        job_id = submitted["job_id"]

        outcome = process_chat_message(
            db_session,
            job_id,
            owner_id=user_id,
            content_id=document_id,
            sealed_question=sealed,
            store=store,
            cipher=cipher,
            llm=FakeLLMClient(fail_with=LLMErrorClass.RATE_LIMITED),
        )

        assert outcome["status"] == "failed"
        artifact = json.loads(store.get_object(build_chat_response_key(job_id)))
        assert artifact == {
            "success": False,
            "error": {
                "code": "BEDROCK_RATE_LIMITED",
                "message": "AI service is temporarily busy. Please try again in a moment.",
                "category": "external",
                "user_action": "Please wait a moment and try again.",
                "retry_after": 30,
            },
        }

        with pytest.raises(ChatProcessingError) as exc_info:
            get_chat_status(db_session, user_id, job_id, store=store, cipher=cipher)
        assert exc_info.value.error_code == "BEDROCK_RATE_LIMITED"
        assert exc_info.value.status_code == 500
        assert store.keys().count(build_chat_response_key(job_id)) == 0

    def test_unreadable_question_artifact(self, db_session, store, cipher, user_id):
        job_id = generate_chat_job_id(user_id)

        outcome = process_chat_message(
            db_session,
            job_id,
            owner_id=user_id,
            content_id="doc-1",
            sealed_question="not-an-envelope",
            store=store,
            cipher=cipher,
            llm=FakeLLMClient(),
        )

        assert outcome["error_code"] == "E_CHAT_PROCESSING_FAILED"
        with pytest.raises(ChatProcessingError) as exc_info:
            get_chat_status(db_session, user_id, job_id, store=store, cipher=cipher)
        assert exc_info.value.error_code == "E_CHAT_PROCESSING_FAILED"

    def test_other_user_cannot_poll(self, db_session, store, cipher, user_id):
        job_id = generate_chat_job_id(user_id)
        with pytest.raises(NotFoundError):
            get_chat_status(db_session, create_test_user_id(), job_id, store=store, cipher=cipher)
