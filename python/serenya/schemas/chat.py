"""Chat request schemas."""

from pydantic import BaseModel


class ChatMessageRequest(BaseModel):
    """Request body for POST /chat/messages.

    Both fields are optional here so that a missing content id or message
    is reported with its own error code by services.chat.
    """

    content_id: str | None = None
    message: str | None = None
