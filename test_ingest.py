"""
Tests for the message ingest pipeline.

Tests cover:
- Text and file messages persist only the fields of their type
- Validation failures reach the sender only and persist nothing
- Persistence happens strictly before the broadcast
- Store failures suppress the broadcast
"""

import asyncio
from datetime import datetime, timedelta

import pytest

from roomchat.broadcast import RoomBroadcastChannel
from roomchat.errors import StoreError, ValidationError
from roomchat.ingest import MessageIngestPipeline, build_message_fields, parse_send_request
from roomchat.storage import RecordStore
from roomchat.utils import utc_now


class RecordingStore(RecordStore):
    """Record store that notes when a write has been acknowledged."""

    def __init__(self, log):
        super().__init__()
        self.log = log

    async def create_message(self, fields):
        saved = await super().create_message(fields)
        self.log.append("persisted")
        return saved


class FailingStore(RecordStore):
    async def create_message(self, fields):
        raise StoreError("Failed to create message")


def text_payload(content="Hello", room_id="ab12cd", sender="alice"):
    return {
        "roomId": room_id,
        "message": {"type": "text", "sender": sender, "content": content},
    }


def file_payload(**overrides):
    message = {
        "type": "file",
        "sender": "alice",
        "fileUrl": "/blobs/1700000000000-report.pdf",
        "fileType": "application/pdf",
        "fileName": "report.pdf",
        "blobName": "1700000000000-report.pdf",
    }
    message.update(overrides)
    return {"roomId": "AB12CD", "message": message}


@pytest.fixture
def channel():
    return RoomBroadcastChannel()


class TestBuildMessageFields:
    """Validation and field selection without the store."""

    def test_text_message_has_no_file_fields(self):
        fields = build_message_fields(parse_send_request(text_payload()))

        assert fields["content"] == "Hello"
        assert fields["room_id"] == "AB12CD"
        for key in ("file_url", "file_type", "file_name", "blob_name", "expires_at"):
            assert key not in fields

    def test_file_message_has_no_content(self):
        fields = build_message_fields(parse_send_request(file_payload()))

        assert fields["file_url"] == "/blobs/1700000000000-report.pdf"
        assert fields["blob_name"] == "1700000000000-report.pdf"
        assert "content" not in fields

    def test_sender_at_top_level(self):
        payload = {"roomId": "AB12CD", "sender": "bob", "message": {"type": "text", "content": "hi"}}
        fields = build_message_fields(parse_send_request(payload))
        assert fields["sender"] == "bob"

    def test_expiry_hours_sets_expires_at(self):
        payload = file_payload()
        payload["expiryHours"] = 2
        before = utc_now()

        fields = build_message_fields(parse_send_request(payload))

        assert fields["expires_at"] >= before + timedelta(hours=2) - timedelta(seconds=1)

    def test_explicit_expires_at_wins(self):
        payload = file_payload(expiresAt="2030-01-01T00:00:00Z")
        payload["expiryHours"] = 5

        fields = build_message_fields(parse_send_request(payload))

        assert fields["expires_at"] == datetime(2030, 1, 1)

    def test_zero_expiry_hours_means_no_expiry(self):
        payload = file_payload()
        payload["expiryHours"] = 0
        fields = build_message_fields(parse_send_request(payload))
        assert "expires_at" not in fields

    @pytest.mark.parametrize(
        "payload, error",
        [
            (text_payload(content=""), "Message content is required."),
            (text_payload(content=None), "Message content is required."),
            (file_payload(fileUrl=None), "File URL is required."),
            (text_payload(room_id=""), "Room ID is required."),
            (text_payload(sender=None), "Sender is required."),
        ],
    )
    def test_invalid_messages(self, payload, error):
        with pytest.raises(ValidationError, match=error):
            build_message_fields(parse_send_request(payload))

    def test_unknown_type_rejected(self):
        payload = {"roomId": "AB12CD", "message": {"type": "image", "sender": "alice"}}
        with pytest.raises(ValidationError):
            parse_send_request(payload)

    def test_non_object_payload_rejected(self):
        with pytest.raises(ValidationError):
            parse_send_request("hello")


class TestIngestPipeline:
    """End-to-end ingest against the record store and broadcast channel."""

    def test_text_message_persisted_and_broadcast_to_all(self, store, channel, make_connection):
        alice, bob = make_connection("alice"), make_connection("bob")
        channel.join(alice, "AB12CD")
        channel.join(bob, "AB12CD")
        pipeline = MessageIngestPipeline(store, channel)

        async def scenario():
            saved = await pipeline.handle_send(text_payload(), alice)
            stored = await store.find_messages_by_room("AB12CD")
            return saved, stored

        saved, stored = asyncio.run(scenario())

        assert len(stored) == 1
        assert stored[0].content == "Hello"
        assert stored[0].file_url is None
        for conn in (alice, bob):
            assert conn.events() == ["receive-message"]
            payload = conn.sent[0]["data"]
            assert payload["id"] == saved.id == stored[0].id
            assert payload["content"] == "Hello"
            assert payload["roomId"] == "AB12CD"
            assert "timestamp" in payload
            assert "fileUrl" not in payload
            assert "fileName" not in payload

    def test_file_message_payload_has_no_content(self, store, channel, make_connection):
        alice = make_connection("alice")
        channel.join(alice, "AB12CD")
        pipeline = MessageIngestPipeline(store, channel)

        asyncio.run(pipeline.handle_send(file_payload(), alice))

        payload = alice.sent[0]["data"]
        assert payload["type"] == "file"
        assert payload["fileUrl"] == "/blobs/1700000000000-report.pdf"
        assert "content" not in payload

    def test_invalid_message_only_reported_to_sender(self, store, channel, make_connection):
        alice, bob = make_connection("alice"), make_connection("bob")
        channel.join(alice, "AB12CD")
        channel.join(bob, "AB12CD")
        pipeline = MessageIngestPipeline(store, channel)

        async def scenario():
            result = await pipeline.handle_send(text_payload(content=""), alice)
            stored = await store.find_messages_by_room("AB12CD")
            return result, stored

        result, stored = asyncio.run(scenario())

        assert result is None
        assert stored == []
        assert alice.events() == ["error-message"]
        assert alice.sent[0]["data"] == {"error": "Message content is required."}
        assert bob.sent == []

    def test_persist_happens_before_broadcast(self, db, channel, make_connection):
        log = []
        alice = make_connection("alice", log=log)
        bob = make_connection("bob", log=log)
        channel.join(alice, "AB12CD")
        channel.join(bob, "AB12CD")
        pipeline = MessageIngestPipeline(RecordingStore(log), channel)

        asyncio.run(pipeline.handle_send(text_payload(), alice))

        assert log[0] == "persisted"
        assert sorted(log[1:]) == ["alice:receive-message", "bob:receive-message"]

    def test_store_failure_suppresses_broadcast(self, channel, make_connection):
        alice, bob = make_connection("alice"), make_connection("bob")
        channel.join(alice, "AB12CD")
        channel.join(bob, "AB12CD")
        pipeline = MessageIngestPipeline(FailingStore(), channel)

        result = asyncio.run(pipeline.handle_send(text_payload(), alice))

        assert result is None
        assert alice.sent == [{"event": "error-message", "data": {"error": "Failed to save message."}}]
        assert bob.sent == []

    def test_ingest_raises_for_callers_without_connection(self, store, channel):
        pipeline = MessageIngestPipeline(store, channel)
        with pytest.raises(ValidationError):
            asyncio.run(pipeline.ingest(text_payload(content="")))

    def test_pipeline_survives_failures(self, store, channel, make_connection):
        alice = make_connection("alice")
        channel.join(alice, "AB12CD")
        pipeline = MessageIngestPipeline(store, channel)

        async def scenario():
            await pipeline.handle_send(text_payload(content=""), alice)
            return await pipeline.handle_send(text_payload(content="second try"), alice)

        saved = asyncio.run(scenario())

        assert saved is not None
        assert alice.events() == ["error-message", "receive-message"]
