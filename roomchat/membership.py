import logging
from typing import Optional

from roomchat.config import settings
from roomchat.errors import ValidationError
from roomchat.storage import RecordStore
from roomchat.utils import expiry_from_hours, normalize_room_code

logger = logging.getLogger(__name__)


class MembershipTracker:
    """
    Maintains each room's member set as clients join and leave.

    The member set is what the sweeper's empty-room pass looks at: a room
    with no members is deleted on the next sweep.
    """

    def __init__(self, store: RecordStore, room_ttl_hours: Optional[float] = None):
        self.store = store
        self.room_ttl_hours = settings.ROOM_TTL_HOURS if room_ttl_hours is None else room_ttl_hours

    async def create_room(self, code: str, creator: str):
        """
        Create a room with its creator as the first member, stamping it with
        an expiry when room TTLs are enabled.

        Returns:
            Tuple of (room, created); created is False if the code was taken.
        """
        code = normalize_room_code(code)
        expires_at = expiry_from_hours(self.room_ttl_hours)
        return await self.store.get_or_create_room(code, creator, expires_at, members=[creator])

    async def join(self, room_id: str, client_id: str):
        """
        Add client_id to the room's members. Re-joining is a no-op.

        A room that does not exist yet is created with the joining client as
        its creator.
        """
        if not room_id or not client_id:
            raise ValidationError("roomId and clientId are required.")
        code = normalize_room_code(room_id)

        room, created, added = await self.store.join_room(code, client_id, expiry_from_hours(self.room_ttl_hours))
        if created:
            logger.info(f"Room {code} created on first join by {client_id}")
        if added:
            logger.info(f"Client {client_id} joined room {code}")
        else:
            logger.debug(f"Client {client_id} already in room {code}")
        return room

    async def leave(self, room_id: str, client_id: str) -> bool:
        """Remove client_id from the room's members. Returns False if absent."""
        if not room_id or not client_id:
            raise ValidationError("roomId and clientId are required.")
        code = normalize_room_code(room_id)

        removed = await self.store.remove_member(code, client_id)
        if removed:
            logger.info(f"Client {client_id} left room {code}")
        else:
            logger.debug(f"Client {client_id} was not in room {code}")
        return removed
