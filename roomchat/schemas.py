"""
Pydantic schemas for request/response validation.

This module contains:
- Wire models for WebSocket events (incoming messages, send requests)
- Request models for the REST routes
- Response models, including the serialized message record that is broadcast

Field names are snake_case in Python and camelCase on the wire.
"""

from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field, field_serializer


def _isoformat_utc(value: Optional[datetime]) -> Optional[str]:
    """Render a naive UTC datetime as ISO-8601 with a Z suffix."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.isoformat() + "Z"
    return value.isoformat()


# =============================================================================
# Message Ingest Models
# =============================================================================

class IncomingMessage(BaseModel):
    """
    The message body a client sends with a send-message event.

    Which fields are meaningful depends on type:
    - text: content
    - file: fileUrl, fileType, fileName, blobName, expiresAt
    """
    type: Literal["text", "file"] = Field(..., description="Message type")
    sender: Optional[str] = Field(None, description="Sender, if not given on the request")
    content: Optional[str] = Field(None, description="Text content (text messages)")
    file_url: Optional[str] = Field(None, alias="fileUrl", description="URL of the uploaded file")
    file_type: Optional[str] = Field(None, alias="fileType", description="MIME type of the file")
    file_name: Optional[str] = Field(None, alias="fileName", description="Original file name")
    blob_name: Optional[str] = Field(None, alias="blobName", description="Name of the blob in the blob store")
    timestamp: Optional[datetime] = Field(None, description="Client timestamp")
    expires_at: Optional[datetime] = Field(None, alias="expiresAt", description="When the file expires")
    encrypted: bool = Field(False, description="Advisory flag, content is stored as given")

    model_config = {"populate_by_name": True, "extra": "ignore"}


class SendMessageRequest(BaseModel):
    """Payload of a send-message event or POST /api/messages."""
    room_id: Optional[str] = Field(None, alias="roomId", description="Target room code")
    sender: Optional[str] = Field(None, description="Sender identifier")
    message: IncomingMessage
    expiry_hours: Optional[float] = Field(
        None,
        alias="expiryHours",
        description="Lifetime of a file message in hours, used when expiresAt is not given"
    )

    model_config = {"populate_by_name": True, "extra": "ignore"}


class TextMessageRequest(BaseModel):
    """Body of POST /api/messages."""
    room_id: Optional[str] = Field(None, alias="roomId")
    sender: Optional[str] = None
    content: Optional[str] = None

    model_config = {"populate_by_name": True}


# =============================================================================
# Room Models
# =============================================================================

class RoomCreateRequest(BaseModel):
    creator: str = Field(..., min_length=1, description="Client creating the room")
    code: Optional[str] = Field(None, min_length=1, description="Requested room code, generated if absent")


class MembershipRequest(BaseModel):
    client_id: str = Field(..., min_length=1, alias="clientId", description="Client joining or leaving")

    model_config = {"populate_by_name": True}


class RoomResponse(BaseModel):
    code: str
    creator: str
    members: list[str] = Field(default_factory=list)
    created_at: datetime = Field(..., alias="createdAt")
    expires_at: Optional[datetime] = Field(None, alias="expiresAt")

    model_config = {"populate_by_name": True}

    @field_serializer("created_at", "expires_at")
    def serialize_datetimes(self, value: Optional[datetime]) -> Optional[str]:
        return _isoformat_utc(value)

    @classmethod
    def from_room(cls, room) -> "RoomResponse":
        return cls(
            code=room.code,
            creator=room.creator,
            members=room.member_ids,
            created_at=room.created_at,
            expires_at=room.expires_at,
        )


# =============================================================================
# Message Response Models
# =============================================================================

class MessageResponse(BaseModel):
    """
    A persisted message as broadcast to the room and returned by the API.
    Serialize with exclude_none so the unused type's fields are absent.
    """
    id: str = Field(..., description="Store-assigned message id")
    room_id: str = Field(..., alias="roomId")
    sender: str
    type: Literal["text", "file"]
    content: Optional[str] = None
    file_url: Optional[str] = Field(None, alias="fileUrl")
    file_type: Optional[str] = Field(None, alias="fileType")
    file_name: Optional[str] = Field(None, alias="fileName")
    blob_name: Optional[str] = Field(None, alias="blobName")
    timestamp: datetime
    expires_at: Optional[datetime] = Field(None, alias="expiresAt")
    encrypted: bool = False

    model_config = {
        "populate_by_name": True,
        "from_attributes": True,  # Allow creating from ORM objects
    }

    @field_serializer("timestamp", "expires_at")
    def serialize_datetimes(self, value: Optional[datetime]) -> Optional[str]:
        return _isoformat_utc(value)

    def to_payload(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MessagesListResponse(BaseModel):
    messages: list[dict] = Field(default_factory=list, description="Messages, oldest first")


class UploadResponse(BaseModel):
    """Returned by POST /api/upload; used by the client to build a file message."""
    success: bool = True
    file_url: str = Field(..., alias="fileUrl")
    file_name: str = Field(..., alias="fileName")
    blob_name: str = Field(..., alias="blobName")
    file_type: str = Field(..., alias="fileType")
    size: int = Field(..., ge=0)
    expires_at: Optional[datetime] = Field(None, alias="expiresAt")

    model_config = {"populate_by_name": True}

    @field_serializer("expires_at")
    def serialize_expires_at(self, value: Optional[datetime]) -> Optional[str]:
        return _isoformat_utc(value)


# =============================================================================
# Sweep Models
# =============================================================================

class SweepReport(BaseModel):
    """Counts for one sweep."""
    deleted_messages: int = 0
    deleted_files: int = 0
    deleted_blobs: int = 0
    deleted_rooms: int = 0
    failures: int = 0


class SweepResponse(BaseModel):
    triggered: bool = Field(..., description="False when a sweep was already running")
    report: Optional[SweepReport] = None


# =============================================================================
# Misc Response Models
# =============================================================================

class ErrorResponse(BaseModel):
    """Response model for error responses."""
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
