"""Celery tasks for Serenya.

Tasks are explicitly imported here to register them with Celery.
No autodiscovery - all tasks must be imported in this module.

Usage in API (enqueue):
    from serenya.tasks import process_document
    process_document.apply_async(
        args=[job_id],
        kwargs={"request_id": request_id},
        queue="documents",
    )
"""

from serenya.tasks.answer_chat import answer_chat
from serenya.tasks.process_document import process_document
from serenya.tasks.sweep import sweep_stale_jobs

__all__ = ["process_document", "answer_chat", "sweep_stale_jobs"]
