"""
Tests for the /ws WebSocket endpoint.

Tests cover:
- Joining a room, with and without a client id
- Messages are broadcast to everyone in the room, sender included
- Invalid messages are reported to the sender only
- Malformed frames and unknown events
- Expired file messages take their uploaded blob with them
"""

import os

import pytest
from fastapi.testclient import TestClient

from roomchat.main import app


@pytest.fixture(scope="function")
def client(db):
    with TestClient(app) as test_client:
        yield test_client


def join(ws, room_id, client_id=None):
    data = {"roomId": room_id, "clientId": client_id} if client_id else room_id
    ws.send_json({"event": "join-room", "data": data})
    frame = ws.receive_json()
    assert frame == {"event": "joined-room", "data": {"roomId": room_id.upper()}}


def send_text(ws, room_id, sender, content):
    ws.send_json({
        "event": "send-message",
        "data": {
            "roomId": room_id,
            "message": {"type": "text", "sender": sender, "content": content, "encrypted": True},
        },
    })


class TestWebSocketRooms:

    def test_join_with_client_id_tracks_membership(self, client):
        with client.websocket_connect("/ws") as ws:
            join(ws, "ab12cd", "alice")

        response = client.get("/api/rooms/AB12CD")
        assert response.status_code == 200
        assert response.json()["members"] == ["alice"]

    def test_join_without_client_id_only_subscribes(self, client):
        with client.websocket_connect("/ws") as ws:
            join(ws, "ab12cd")

        assert client.get("/api/rooms/AB12CD").status_code == 404

    def test_leave_room(self, client):
        with client.websocket_connect("/ws") as ws:
            join(ws, "AB12CD", "alice")
            ws.send_json({"event": "leave-room", "data": {"roomId": "AB12CD", "clientId": "alice"}})
            assert ws.receive_json() == {"event": "left-room", "data": {"roomId": "AB12CD"}}

        assert client.get("/api/rooms/AB12CD").json()["members"] == []

    def test_join_requires_room_id(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"event": "join-room", "data": {"clientId": "alice"}})
            assert ws.receive_json() == {"event": "error-message", "data": {"error": "Room ID is required."}}


class TestWebSocketMessages:

    def test_message_broadcast_to_sender_and_members(self, client):
        with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as bob:
            join(alice, "AB12CD", "alice")
            join(bob, "AB12CD", "bob")

            send_text(alice, "AB12CD", "alice", "ciphertext")

            for ws in (alice, bob):
                frame = ws.receive_json()
                assert frame["event"] == "receive-message"
                assert frame["data"]["content"] == "ciphertext"
                assert frame["data"]["sender"] == "alice"
                assert frame["data"]["encrypted"] is True
                assert "id" in frame["data"]
                assert "fileUrl" not in frame["data"]

        history = client.get("/api/messages", params={"roomId": "ab12cd"}).json()["messages"]
        assert [m["content"] for m in history] == ["ciphertext"]

    def test_other_rooms_do_not_receive(self, client):
        with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as carol:
            join(alice, "AB12CD")
            join(carol, "ZZ99ZZ")

            send_text(alice, "AB12CD", "alice", "hello")
            send_text(carol, "ZZ99ZZ", "carol", "elsewhere")

            assert alice.receive_json()["data"]["content"] == "hello"
            assert carol.receive_json()["data"]["content"] == "elsewhere"

    def test_invalid_message_reported_only_to_sender(self, client):
        with client.websocket_connect("/ws") as alice, client.websocket_connect("/ws") as bob:
            join(alice, "AB12CD")
            join(bob, "AB12CD")

            send_text(alice, "AB12CD", "alice", "")
            assert alice.receive_json() == {
                "event": "error-message",
                "data": {"error": "Message content is required."},
            }

            # Bob's next frame is the valid message, nothing came from the invalid one
            send_text(alice, "AB12CD", "alice", "second")
            assert bob.receive_json()["data"]["content"] == "second"
            assert alice.receive_json()["data"]["content"] == "second"

        history = client.get("/api/messages", params={"roomId": "AB12CD"}).json()["messages"]
        assert len(history) == 1

    def test_file_message(self, client):
        with client.websocket_connect("/ws") as ws:
            join(ws, "AB12CD")
            ws.send_json({
                "event": "send-message",
                "data": {
                    "roomId": "AB12CD",
                    "sender": "alice",
                    "expiryHours": 1,
                    "message": {
                        "type": "file",
                        "fileUrl": "/blobs/1-notes.txt",
                        "fileName": "notes.txt",
                        "fileType": "text/plain",
                        "blobName": "1-notes.txt",
                    },
                },
            })
            data = ws.receive_json()["data"]

        assert data["type"] == "file"
        assert data["blobName"] == "1-notes.txt"
        assert data["expiresAt"].endswith("Z")
        assert "content" not in data

    def test_invalid_json_and_unknown_event(self, client):
        with client.websocket_connect("/ws") as ws:
            ws.send_text("not json")
            assert ws.receive_json() == {"event": "error-message", "data": {"error": "Invalid JSON"}}

            ws.send_json({"event": "dance", "data": {}})
            assert ws.receive_json() == {"event": "error-message", "data": {"error": "Unknown event: dance"}}

            # Connection is still usable
            join(ws, "AB12CD")


class TestFileMessageExpiry:

    def test_sweep_removes_upload_of_message_without_blob_name(self, client, blob_dir):
        upload = client.post(
            "/api/upload",
            files={"file": ("a.txt", b"short lived", "text/plain")},
            data={"roomId": "AB12CD"},
        ).json()
        blob_path = os.path.join(blob_dir, upload["blobName"])
        assert upload["blobName"] != "a.txt"
        assert os.path.exists(blob_path)

        with client.websocket_connect("/ws") as ws:
            join(ws, "AB12CD")
            ws.send_json({
                "event": "send-message",
                "data": {
                    "roomId": "AB12CD",
                    "sender": "alice",
                    "message": {
                        "type": "file",
                        "fileUrl": upload["fileUrl"],
                        "fileName": upload["fileName"],
                        "fileType": upload["fileType"],
                        "expiresAt": "2000-01-01T00:00:00Z",
                    },
                },
            })
            assert "blobName" not in ws.receive_json()["data"]

        report = client.post("/api/sweep").json()["report"]

        assert report["deleted_messages"] == 1
        assert report["deleted_blobs"] == 1
        assert not os.path.exists(blob_path)
        assert client.get("/api/messages", params={"roomId": "AB12CD"}).json()["messages"] == []
