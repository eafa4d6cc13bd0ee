"""Test helpers for authentication and common test operations.

Provides:
- Token minting for test authentication
- Header generation for test requests
- Sample document bytes and job creation helpers
"""

import base64
import time
from datetime import UTC, datetime
from uuid import uuid4

import jwt
from sqlalchemy.orm import Session

from serenya.db.models import JobStatus, ProcessingJob
from serenya.services.jobs import create_job
from serenya.services.providers import LOCAL_JWT_SECRET

# Default test token settings (match Settings defaults)
DEFAULT_ISSUER = "serenya.health"
DEFAULT_AUDIENCE = "serenya-app"
DEFAULT_EXPIRES_IN = 3600  # 1 hour

PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<< /Type /Catalog >>\nendobj\ntrailer\n%%EOF\n"
PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32
JPEG_BYTES = b"\xff\xd8\xff\xe0" + b"\x00" * 32


def create_test_user_id() -> str:
    """A user id shaped like a provider subject (no underscores)."""
    return str(uuid4())


def mint_test_token(
    user_id: str,
    expires_in: int = DEFAULT_EXPIRES_IN,
    issuer: str = DEFAULT_ISSUER,
    audience: str = DEFAULT_AUDIENCE,
    secret: str = LOCAL_JWT_SECRET,
    **extra_claims,
) -> str:
    """Mint a valid HS256 test token signed with the local jwtSecret.

    Args:
        user_id: The user ID to set as the `sub` claim.
        expires_in: Token validity in seconds from now.
        issuer: The `iss` claim value.
        audience: The `aud` claim value.
        secret: Signing secret.
        **extra_claims: Additional claims to include in the token.
    """
    now = int(time.time())
    payload = {
        "sub": str(user_id),
        "iss": issuer,
        "aud": audience,
        "iat": now,
        "exp": now + expires_in,
        **extra_claims,
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def mint_expired_token(user_id: str) -> str:
    """Mint a token that expired well outside the clock skew allowance."""
    return mint_test_token(user_id, expires_in=-3600)


def auth_headers(user_id: str, **kwargs) -> dict[str, str]:
    """Authorization header for a freshly minted token."""
    return {"Authorization": f"Bearer {mint_test_token(user_id, **kwargs)}"}


def encode_file(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def make_job(
    db: Session,
    user_id: str,
    *,
    status: JobStatus = JobStatus.uploaded,
    uploaded_at: datetime | None = None,
    upload_key: str | None = "uploads/test/labs.pdf",
    **fields,
) -> ProcessingJob:
    """Insert a job row and force it into the given state.

    Bypasses the transition rules so tests can start from any state.
    """
    uploaded_at = uploaded_at or datetime.now(UTC)
    job = create_job(
        db,
        user_id=user_id,
        file_name="Lab Results.pdf",
        sanitized_file_name="Lab_Results.pdf",
        file_type="pdf",
        file_size=len(PDF_BYTES),
        file_checksum="0" * 64,
        upload_key=upload_key,
        now=uploaded_at,
    )
    job.status = status
    for name, value in fields.items():
        setattr(job, name, value)
    db.commit()
    return job
