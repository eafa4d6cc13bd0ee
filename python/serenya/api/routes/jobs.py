"""Document job routes.

Routes are transport-only:
- Extract viewer.user_id from request.state
- Call exactly one service function
- Return success_response(...) or raise ApiError

No domain logic or raw DB access in routes.
"""

from typing import Annotated

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from serenya.api.deps import get_db, get_request_id
from serenya.auth.middleware import Viewer, get_viewer
from serenya.responses import success_response
from serenya.schemas.jobs import UploadRequest
from serenya.services import documents as documents_service

router = APIRouter()


@router.post("/jobs", status_code=201)
def upload_document(
    request: UploadRequest,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    request_id: Annotated[str | None, Depends(get_request_id)],
) -> dict:
    """Upload a document and queue it for analysis."""
    result = documents_service.create_document_job(
        db,
        viewer.user_id,
        file_name=request.file_name,
        file_type=request.file_type,
        content=request.decoded_content(),
        request_id=request_id,
    )
    return success_response(result)


@router.get("/jobs/{job_id}/status")
def get_job_status(
    job_id: str,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
) -> dict:
    """Current status, progress and retry eligibility.

    Returns 404 if the job does not exist or belongs to someone else.
    """
    return success_response(documents_service.get_job_status(db, viewer.user_id, job_id))


@router.get("/jobs/{job_id}/result")
def get_job_result(
    job_id: str,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    request_id: Annotated[str | None, Depends(get_request_id)],
) -> dict:
    """Decrypted interpretation with confidence level and safety warnings.

    Returns 409 while the job is still running, after failure or timeout,
    and once the result has expired.
    """
    result = documents_service.get_job_result(
        db, viewer.user_id, job_id, request_id=request_id
    )
    return success_response(result)


@router.post("/jobs/{job_id}/retry")
def retry_job(
    job_id: str,
    viewer: Annotated[Viewer, Depends(get_viewer)],
    db: Annotated[Session, Depends(get_db)],
    request_id: Annotated[str | None, Depends(get_request_id)],
) -> dict:
    """Schedule another processing attempt for a failed or timed-out job."""
    result = documents_service.retry_job(db, viewer.user_id, job_id, request_id=request_id)
    return success_response(result)
