"""Maintenance sweep for document jobs.

Runs every minute from Celery beat (see serenya.celery):
- persists timeout for uploaded/processing jobs past the processing window,
  using conditional UPDATEs so a worker that finished meanwhile wins
- deletes uploads of jobs that never completed and are past the retry window
- logs counts only
"""

from datetime import UTC, datetime, timedelta

from sqlalchemy.orm import Session

from serenya.celery import celery_app
from serenya.config import get_settings
from serenya.db.session import get_session_factory
from serenya.logging import clear_task_context, configure_task_logging, get_logger
from serenya.services import providers
from serenya.services.jobs import (
    list_abandoned_uploads,
    mark_stale_jobs_timed_out,
    update_job_status,
)
from serenya.storage import ObjectStoreBase

logger = get_logger(__name__)

ABANDONED_UPLOAD_AGE = timedelta(hours=24)


def sweep_jobs(
    db: Session,
    store: ObjectStoreBase | None = None,
    now: datetime | None = None,
) -> dict[str, int]:
    """Run one sweep.

    Returns:
        Dict with timed_out, uploads_deleted and upload_delete_failures counts.
    """
    store = store or providers.get_object_store()
    now = now or datetime.now(UTC)
    timeout = timedelta(seconds=get_settings().job_timeout_s)

    timed_out = mark_stale_jobs_timed_out(db, now=now, timeout=timeout)

    deleted = 0
    failures = 0
    for job in list_abandoned_uploads(db, older_than=now - ABANDONED_UPLOAD_AGE):
        if store.delete_object(job.upload_key):
            update_job_status(db, job.id, job.status, now=now, timeout=timeout, upload_key=None)
            deleted += 1
        else:
            failures += 1

    return {"timed_out": timed_out, "uploads_deleted": deleted, "upload_delete_failures": failures}


@celery_app.task(bind=True, max_retries=0, name="sweep_stale_jobs")
def sweep_stale_jobs(self) -> dict:
    configure_task_logging(task_name="sweep_stale_jobs", task_id=self.request.id)

    session_factory = get_session_factory()
    db = session_factory()

    try:
        counts = sweep_jobs(db)
        if any(counts.values()):
            logger.info("sweep_stale_jobs_completed", **counts)
        return counts
    except Exception as e:
        logger.exception("sweep_stale_jobs_failed", error=str(e))
        raise
    finally:
        db.close()
        clear_task_context()
