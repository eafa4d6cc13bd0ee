"""Pydantic request models.

All schemas are re-exported here for convenient imports.
"""

from serenya.schemas.chat import ChatMessageRequest
from serenya.schemas.jobs import UploadRequest

__all__ = ["UploadRequest", "ChatMessageRequest"]
