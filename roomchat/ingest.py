"""
Message ingest pipeline.

validate -> persist -> broadcast. The broadcast only happens after the
record store has acknowledged the write, and goes to every connection in
the room including the sender, so clients render the server-confirmed
record. Validation and store failures are reported to the sender alone.
"""

import logging
from typing import Any, Optional

from fastapi import WebSocket
from pydantic import ValidationError as PydanticValidationError

from roomchat.broadcast import RoomBroadcastChannel
from roomchat.errors import StoreError, ValidationError
from roomchat.metrics import record_ingest_outcome
from roomchat.schemas import MessageResponse, SendMessageRequest
from roomchat.storage import RecordStore
from roomchat.utils import expiry_from_hours, normalize_room_code, to_naive_utc, utc_now

logger = logging.getLogger(__name__)

RECEIVE_EVENT = "receive-message"
ERROR_EVENT = "error-message"


def parse_send_request(data: Any) -> SendMessageRequest:
    """Parse a raw send-message payload, mapping schema errors to ValidationError."""
    if isinstance(data, SendMessageRequest):
        return data
    if not isinstance(data, dict):
        raise ValidationError("Invalid message payload.")
    try:
        return SendMessageRequest.model_validate(data)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first.get("loc", ()))
        raise ValidationError(f"Invalid message payload: {location} {first.get('msg')}".strip()) from e


def build_message_fields(request: SendMessageRequest) -> dict:
    """
    Validate a send request and build the record to persist.

    Only the fields relevant to the message type are included.

    Raises:
        ValidationError: if roomId/sender are missing, a text message has no
            content or a file message has no fileUrl
    """
    message = request.message
    sender = request.sender or message.sender

    if not request.room_id or not request.room_id.strip():
        raise ValidationError("Room ID is required.")
    if not sender:
        raise ValidationError("Sender is required.")

    fields = {
        "room_id": normalize_room_code(request.room_id),
        "sender": sender,
        "type": message.type,
        "timestamp": to_naive_utc(message.timestamp) or utc_now(),
        "encrypted": bool(message.encrypted),
    }

    if message.type == "text":
        if not message.content:
            raise ValidationError("Message content is required.")
        fields["content"] = message.content
    else:
        if not message.file_url:
            raise ValidationError("File URL is required.")
        fields["file_url"] = message.file_url
        optional = {
            "file_type": message.file_type,
            "file_name": message.file_name,
            "blob_name": message.blob_name,
        }
        fields.update({key: value for key, value in optional.items() if value is not None})
        expires_at = to_naive_utc(message.expires_at) or expiry_from_hours(request.expiry_hours)
        if expires_at is not None:
            fields["expires_at"] = expires_at

    return fields


class MessageIngestPipeline:
    """Validates, persists and broadcasts incoming messages."""

    def __init__(self, store: RecordStore, channel: RoomBroadcastChannel):
        self.store = store
        self.channel = channel

    async def ingest(self, data: Any) -> MessageResponse:
        """
        Validate, persist and broadcast one message.

        Returns:
            The persisted message as broadcast to the room

        Raises:
            ValidationError: nothing was persisted or broadcast
            StoreError: the write failed, nothing was broadcast
        """
        try:
            request = parse_send_request(data)
            fields = build_message_fields(request)
        except ValidationError:
            record_ingest_outcome("validation_error")
            raise

        try:
            saved = await self.store.create_message(fields)
        except StoreError:
            record_ingest_outcome("store_error")
            raise

        record_ingest_outcome("created")
        message = MessageResponse.model_validate(saved)
        await self.channel.broadcast(message.room_id, RECEIVE_EVENT, message.to_payload())
        logger.info(f"Message {message.id} broadcast to room {message.room_id}")
        return message

    async def handle_send(self, data: Any, sender_connection: WebSocket) -> Optional[MessageResponse]:
        """
        Ingest a message received on a connection.

        Failures are sent back on that connection only, as an error-message
        event, and None is returned.
        """
        try:
            return await self.ingest(data)
        except ValidationError as e:
            logger.warning(f"Rejected message: {e}")
            await self.channel.send(sender_connection, ERROR_EVENT, {"error": str(e)})
        except StoreError as e:
            logger.error(f"Error saving message: {e}")
            await self.channel.send(sender_connection, ERROR_EVENT, {"error": "Failed to save message."})
        return None
