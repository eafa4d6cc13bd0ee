"""Celery worker entrypoint.

Run with:
    celery -A apps.worker.main:celery_app worker -Q documents,chat --loglevel=info
    celery -A apps.worker.main:celery_app worker -Q maintenance --concurrency=1
    celery -A apps.worker.main:celery_app beat

Task definitions are in the serenya.tasks package - no autodiscovery.

Queue Configuration:
- documents: document analysis (one Bedrock call per job, up to ~2 minutes)
- chat: chat answers (short Bedrock calls; keep latency low)
- maintenance: the periodic stale-job sweep
"""

from celery.signals import worker_process_init

from serenya.celery import celery_app
from serenya.logging import configure_logging, get_logger

# Each import registers the task with the celery_app
from serenya.tasks import answer_chat, process_document, sweep_stale_jobs  # noqa: F401


@worker_process_init.connect
def setup_worker_logging(**kwargs):
    """Configure structlog when a worker process starts.

    Worker logs use the same JSON format as the API, with request_id,
    task_name, task_id and job_id when available.
    """
    configure_logging()
    logger = get_logger(__name__)
    logger.info("celery_worker_started")


# Command: celery -A apps.worker.main:celery_app worker ...
__all__ = ["celery_app"]
