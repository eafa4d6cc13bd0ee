"""Celery application configuration.

Central configuration for Celery used by both API (for enqueuing)
and worker (for executing tasks).

Usage:
    from serenya.tasks import process_document
    process_document.apply_async(args=[job_id], kwargs={"request_id": request_id}, queue="documents")
"""

from celery import Celery

from serenya.config import get_settings

settings = get_settings()

celery_app = Celery("serenya")

celery_app.conf.broker_url = settings.effective_celery_broker_url
celery_app.conf.result_backend = settings.effective_celery_result_backend

# Task configuration
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.timezone = "UTC"
celery_app.conf.enable_utc = True

# Acknowledge after the task body ran so a crashed worker's job is redelivered;
# process_document_job skips jobs another worker already claimed
celery_app.conf.task_acks_late = True
celery_app.conf.worker_prefetch_multiplier = 1

# Queue routing
celery_app.conf.task_routes = {
    "process_document": {"queue": "documents"},
    "answer_chat": {"queue": "chat"},
    "sweep_stale_jobs": {"queue": "maintenance"},
}
celery_app.conf.task_default_queue = "documents"

celery_app.conf.beat_schedule = {
    "sweep-stale-jobs": {
        "task": "sweep_stale_jobs",
        "schedule": 60.0,
    },
}

# For testing: allow eager mode (synchronous execution)
celery_app.conf.task_always_eager = False
