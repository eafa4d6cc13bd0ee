"""Chat routes.

Transport-only; see services.chat for job ids and single-read responses.
"""

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from serenya.api.deps import get_db, get_request_id
from serenya.auth.middleware import Viewer, get_viewer
from serenya.responses import success_response
from serenya.schemas.chat import ChatMessageRequest
from serenya.services import chat as chat_service

router = APIRouter()


@router.post("/chat/messages", status_code=202)
def submit_chat_message(
    request: ChatMessageRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    request_id: Annotated[str | None, Depends(get_request_id)],
) -> dict:
    """Queue a question about a document result; poll the returned job id."""
    result = chat_service.submit_chat_message(
        db,
        viewer.user_id,
        content_id=request.content_id,
        message=request.message,
        request_id=request_id,
    )
    return success_response(result)


@router.get("/chat/jobs/{job_id}/status")
def get_chat_status(
    job_id: str,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    request_id: Annotated[str | None, Depends(get_request_id)],
) -> dict:
    """Poll a chat job. A finished answer is returned once, then removed."""
    result = chat_service.get_chat_status(db, viewer.user_id, job_id, request_id=request_id)
    return success_response(result)
