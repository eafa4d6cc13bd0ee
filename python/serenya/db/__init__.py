"""Database module for Serenya.

Provides engine creation, session management and ORM models.
"""

from serenya.db.engine import create_db_engine, get_engine
from serenya.db.models import AuditEvent, Base, DataClassification, JobStatus, ProcessingJob
from serenya.db.session import get_db

__all__ = [
    "create_db_engine",
    "get_engine",
    "get_db",
    "Base",
    "JobStatus",
    "DataClassification",
    "ProcessingJob",
    "AuditEvent",
]
