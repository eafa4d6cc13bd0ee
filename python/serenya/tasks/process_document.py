"""Celery task for document analysis.

Thin wrapper around services.documents.process_document_job:
- max_retries=0; retries are user-initiated through POST /jobs/{id}/retry
- idempotent; a redelivered or duplicate message is skipped by the service
"""

from serenya.celery import celery_app
from serenya.db.session import get_session_factory
from serenya.logging import (
    clear_task_context,
    configure_task_logging,
    get_logger,
    set_job_context,
)
from serenya.services.documents import process_document_job

logger = get_logger(__name__)


@celery_app.task(bind=True, max_retries=0, name="process_document")
def process_document(self, job_id: str, request_id: str | None = None) -> dict:
    """Analyze an uploaded document.

    Args:
        job_id: Processing job to run.
        request_id: Optional request ID for log correlation.

    Returns:
        Dict with result status.
    """
    configure_task_logging(request_id, task_name="process_document", task_id=self.request.id)
    set_job_context(job_id)
    logger.info("process_document_started")

    session_factory = get_session_factory()
    db = session_factory()

    try:
        result = process_document_job(db, job_id, request_id=request_id)
        logger.info("process_document_completed", result_status=result["status"])
        return result
    except Exception as e:
        logger.exception("process_document_failed", error=str(e))
        raise
    finally:
        db.close()
        clear_task_context()
