"""FastAPI dependencies for route handlers."""

from fastapi import Request

from serenya.db.session import get_db, get_session_factory
from serenya.middleware.request_id import get_request_id_from_request

__all__ = ["get_db", "get_request_id", "get_session_factory"]


def get_request_id(request: Request) -> str | None:
    """Request id set by RequestIDMiddleware, for audit records and task kwargs."""
    return get_request_id_from_request(request)
