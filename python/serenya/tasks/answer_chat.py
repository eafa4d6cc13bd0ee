"""Celery task that answers one chat question.

The question arrives sealed by the envelope cipher; the task only passes it
through to services.chat.process_chat_message, which always leaves a
response artifact for the polling client.
"""

from serenya.celery import celery_app
from serenya.db.session import get_session_factory
from serenya.logging import clear_task_context, configure_task_logging, get_logger
from serenya.services.chat import process_chat_message

logger = get_logger(__name__)


@celery_app.task(bind=True, max_retries=0, name="answer_chat")
def answer_chat(
    self,
    chat_job_id: str,
    owner_id: str,
    content_id: str,
    sealed_question: str,
    request_id: str | None = None,
) -> dict:
    configure_task_logging(request_id, task_name="answer_chat", task_id=self.request.id)
    logger.info("answer_chat_started", chat_job_id=chat_job_id)

    session_factory = get_session_factory()
    db = session_factory()

    try:
        result = process_chat_message(
            db,
            chat_job_id,
            owner_id=owner_id,
            content_id=content_id,
            sealed_question=sealed_question,
        )
        logger.info(
            "answer_chat_completed", chat_job_id=chat_job_id, result_status=result["status"]
        )
        return result
    except Exception as e:
        logger.exception("answer_chat_failed", chat_job_id=chat_job_id, error=str(e))
        raise
    finally:
        db.close()
        clear_task_context()
