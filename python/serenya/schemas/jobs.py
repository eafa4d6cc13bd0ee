"""Document job request schemas."""

import base64
import binascii

from pydantic import BaseModel, Field, field_validator


class UploadRequest(BaseModel):
    """Request body for POST /jobs.

    The file travels base64-encoded in JSON. Type, size and content checks
    happen in services.documents so they map to specific error codes.
    """

    file_name: str = Field(..., min_length=1, max_length=255)
    file_type: str = Field(..., min_length=1, max_length=10)
    content: str = Field(..., min_length=1, description="Base64-encoded file bytes")

    @field_validator("content")
    @classmethod
    def validate_base64(cls, v: str) -> str:
        try:
            base64.b64decode(v, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError("content must be base64-encoded") from e
        return v

    def decoded_content(self) -> bytes:
        return base64.b64decode(self.content, validate=True)
