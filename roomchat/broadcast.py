"""
Room broadcast channel over WebSocket connections.

Events are delivered only to connections that are currently joined to a
room; disconnected clients do not receive anything they missed. Every frame
has the shape {"event": <name>, "data": <payload>}.

This is designed for a single event loop and is not thread-safe.
"""

import asyncio
import logging
from typing import Any, Dict, List, Set

from fastapi import WebSocket

logger = logging.getLogger(__name__)


class RoomBroadcastChannel:
    """Tracks which connections are joined to which rooms and fans out events."""

    def __init__(self) -> None:
        self.active_connections: Dict[str, List[WebSocket]] = {}

    def join(self, connection: WebSocket, room_id: str) -> None:
        """Subscribe a connection to a room. Joining twice is a no-op."""
        connections = self.active_connections.setdefault(room_id, [])
        if connection not in connections:
            connections.append(connection)
            logger.debug(f"Connection joined room {room_id} ({len(connections)} connected)")

    def leave(self, connection: WebSocket, room_id: str) -> None:
        connections = self.active_connections.get(room_id)
        if not connections or connection not in connections:
            return
        connections.remove(connection)
        if not connections:
            del self.active_connections[room_id]

    def disconnect(self, connection: WebSocket) -> Set[str]:
        """Remove a connection from every room; returns the rooms it was in."""
        rooms = {room_id for room_id, conns in self.active_connections.items() if connection in conns}
        for room_id in rooms:
            self.leave(connection, room_id)
        return rooms

    def get_room_size(self, room_id: str) -> int:
        """Get the number of active connections in a room."""
        return len(self.active_connections.get(room_id, []))

    async def send(self, connection: WebSocket, event: str, payload: Any) -> bool:
        """Send one event to a single connection."""
        return await self._safe_send(connection, {"event": event, "data": payload})

    async def broadcast(self, room_id: str, event: str, payload: Any) -> None:
        """
        Broadcast an event to all connections in a room concurrently.

        Connections that fail to receive are dropped from the room.
        """
        connections = list(self.active_connections.get(room_id, []))
        if not connections:
            return

        frame = {"event": event, "data": payload}
        results = await asyncio.gather(
            *[self._safe_send(conn, frame) for conn in connections],
            return_exceptions=True
        )

        failed_connections = [
            conn for conn, success in zip(connections, results)
            if success is not True
        ]
        for conn in failed_connections:
            self.leave(conn, room_id)
            logger.debug(f"Removed dead connection from room {room_id}")

    async def _safe_send(self, connection: WebSocket, frame: dict) -> bool:
        try:
            await connection.send_json(frame)
            return True
        except Exception as e:
            logger.debug(f"Failed to send to connection: {e}")
            return False
