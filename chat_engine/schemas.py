"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Response models for API responses, including hydrated messages
"""

from datetime import datetime
from typing import Annotated, Literal, Optional

from pydantic import BaseModel, Field, PlainSerializer, StringConstraints


def _serialize_utc(value: datetime) -> str:
    """Render a naive-UTC datetime as ISO-8601 with a Z suffix."""
    if value.tzinfo is None:
        return value.isoformat() + "Z"
    return value.isoformat()


UtcDatetime = Annotated[
    datetime, PlainSerializer(_serialize_utc, return_type=str, when_used="json")
]

CursorType = Literal["before", "after"]

# Attachment kinds that carry width/height
MEDIA_TYPE_PREFIXES = ("image/", "video/")

MAX_CONTENT_LENGTH = 2000

# Trimmed before the length check, so surrounding whitespace never counts
MessageContent = Annotated[
    str, StringConstraints(strip_whitespace=True, max_length=MAX_CONTENT_LENGTH)
]


# =============================================================================
# Pydantic Request Models
# =============================================================================

class UploadAttachment(BaseModel):
    """
    Descriptor of an already-uploaded file, bound to a message on send.

    Validates:
    - name/url/type: non-empty strings (type is a MIME type, e.g. image/png)
    - bytes: non-negative size
    - width/height: optional, only kept for image and video types
    """
    name: str = Field(..., min_length=1, description="Original file name")
    url: str = Field(..., min_length=1, description="Storage locator of the uploaded file")
    type: str = Field(..., min_length=1, description="MIME type of the file")
    bytes: int = Field(..., ge=0, description="File size in bytes")
    width: Optional[int] = Field(None, ge=0, description="Width in pixels (image/video only)")
    height: Optional[int] = Field(None, ge=0, description="Height in pixels (image/video only)")

    def is_media(self) -> bool:
        return self.type.startswith(MEDIA_TYPE_PREFIXES)


class SendMessageRequest(BaseModel):
    """
    Body of a send request.

    Content may be empty only when an attachment is present; that rule is
    enforced by the message store so the failure is a 400, not a 422.
    """
    content: MessageContent = Field(default="", description="Message text, trimmed")
    attachment: Optional[UploadAttachment] = Field(None, description="Uploaded attachment")
    reply: Optional[int] = Field(None, description="Id of the message being replied to")
    nonce: Optional[int] = Field(None, description="Client token echoed back in the response")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"content": "hello", "reply": None, "nonce": 1}
            ]
        }
    }


class UpdateMessageRequest(BaseModel):
    """Body of an edit request. Only the content of a message can change."""
    content: MessageContent


class GenerateTextRequest(BaseModel):
    text: Annotated[str, StringConstraints(strip_whitespace=True)] = Field(
        ..., description="Prompt forwarded to the text generation service"
    )


# =============================================================================
# Pydantic Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class UserProfile(BaseModel):
    """Public profile embedded in messages and realtime events."""
    id: str
    name: str
    image: Optional[str] = None

    model_config = {"from_attributes": True}


class AttachmentResponse(BaseModel):
    id: str
    name: str
    url: str
    type: str
    bytes: int
    width: Optional[int] = None
    height: Optional[int] = None

    model_config = {"from_attributes": True}


class ReplyMessage(BaseModel):
    """Snapshot of the parent message content at read time."""
    content: str


class MessageResponse(BaseModel):
    """
    A hydrated message: the stored row joined with its author profile,
    attachment and reply snapshot.

    reply_message/reply_user are null when the message is not a reply or
    when the parent message has been deleted.
    """
    id: int
    author_id: str
    channel_id: str
    content: str
    attachment_id: Optional[str] = None
    reply_id: Optional[int] = None
    timestamp: UtcDatetime
    author: Optional[UserProfile] = None
    attachment: Optional[AttachmentResponse] = None
    reply_message: Optional[ReplyMessage] = None
    reply_user: Optional[UserProfile] = None


class SendMessageResponse(MessageResponse):
    """Hydrated message returned to the sender, with the client nonce echoed."""
    nonce: Optional[int] = None


class CheckoutResponse(BaseModel):
    """Read cursor as it was before the checkout advanced it."""
    last_read: Optional[UtcDatetime] = Field(
        None,
        description="Previous read cursor (null if the channel was never read)"
    )


class GenerateTextResponse(BaseModel):
    text: str


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
