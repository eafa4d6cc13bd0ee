"""API route definitions.

Uses a factory pattern to avoid import-time settings loading.
"""

from fastapi import APIRouter

from serenya.api.routes.chat import router as chat_router
from serenya.api.routes.health import router as health_router
from serenya.api.routes.jobs import router as jobs_router


def create_api_router() -> APIRouter:
    """Create the API router with all routes registered."""
    api_router = APIRouter()
    api_router.include_router(health_router, tags=["health"])
    api_router.include_router(jobs_router, tags=["jobs"])
    api_router.include_router(chat_router, tags=["chat"])
    return api_router


__all__ = ["create_api_router"]
