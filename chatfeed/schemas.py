"""
Pydantic schemas for request/response validation.

This module contains:
- Request models for incoming data validation
- Event and response models for API responses
"""

from typing import Optional

from pydantic import BaseModel, Field

from chatfeed.models import Message


# =============================================================================
# Pydantic Request Models
# =============================================================================

class AddMessageRequest(BaseModel):
    """
    Body of POST /api/v0/add_message.

    Only shapes are checked here; the message policy (blank content, length
    limits) is enforced by the ingestion service.
    """
    id: str = Field(
        ...,
        min_length=1,
        description="Client generated idempotency key, e.g. a UUIDv7"
    )
    sender: str = Field(..., description="Display name of the author")
    content: str = Field(..., description="Message text")

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "id": "019c0a7f-3d8e-7cf8-bea4-3a8614c8da09",
                    "sender": "Bob",
                    "content": "Hello, Alice!"
                }
            ]
        }
    }


# =============================================================================
# Pydantic Response Models
# =============================================================================

class MessageEvent(BaseModel):
    """A committed message as delivered on the event stream and in history."""
    id: str = Field(..., description="Client generated message identifier")
    sender: str = Field(..., description="Display name of the author")
    content: str = Field(..., description="Message text")
    timestamp_ms: int = Field(..., ge=0, description="Server commit time, epoch milliseconds")

    @classmethod
    def from_message(cls, message: Message) -> "MessageEvent":
        return cls(
            id=message.message_id,
            sender=message.sender,
            content=message.content,
            timestamp_ms=message.created_at,
        )


class HistoryEntry(MessageEvent):
    """A message in the history listing, with its position in the chat."""
    sequence: int = Field(..., ge=1, description="Server assigned order")

    @classmethod
    def from_message(cls, message: Message) -> "HistoryEntry":
        return cls(
            id=message.message_id,
            sender=message.sender,
            content=message.content,
            timestamp_ms=message.created_at,
            sequence=message.sequence,
        )


class HistoryResponse(BaseModel):
    """
    Response model for GET /api/v0/messages.

    Contains:
    - data: messages ordered by sequence ascending
    - last_sequence: sequence of the newest message in data (or the `after` value)
    """
    data: list[HistoryEntry] = Field(default_factory=list, description="Messages in order")
    last_sequence: int = Field(..., ge=0, description="Resume the event stream after this sequence")


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
