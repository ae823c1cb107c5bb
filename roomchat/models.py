"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.

Messages and files reference their room by code only. There is no foreign
key: deleting a room never cascades in the database, the expiry sweeper
does it explicitly.
"""

import uuid

from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from roomchat.storage import Base
from roomchat.utils import utc_now


def _new_id() -> str:
    return uuid.uuid4().hex


class Room(Base):
    """
    A chat room.

    Table: rooms
    Primary Key: code (upper-case, unique for the room's lifetime)
    """
    __tablename__ = "rooms"

    code = Column(String, primary_key=True, index=True)
    creator = Column(String, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    # Only set when room TTLs are enabled
    expires_at = Column(DateTime, nullable=True, index=True)

    members = relationship(
        "RoomMember",
        back_populates="room",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    @property
    def member_ids(self) -> list[str]:
        return sorted(m.client_id for m in self.members)


class RoomMember(Base):
    """One client in a room's member set."""
    __tablename__ = "room_members"
    __table_args__ = (UniqueConstraint("room_code", "client_id", name="uq_room_member"),)

    id = Column(String, primary_key=True, default=_new_id)
    room_code = Column(String, ForeignKey("rooms.code", ondelete="CASCADE"), nullable=False, index=True)
    client_id = Column(String, nullable=False)

    room = relationship("Room", back_populates="members")


class Message(Base):
    """
    A text or file message posted to a room.

    Text messages populate content; file messages populate the file_* and
    blob_name columns. The unused columns stay NULL.
    """
    __tablename__ = "messages"

    id = Column(String, primary_key=True, default=_new_id)
    room_id = Column(String, nullable=False, index=True)
    sender = Column(String, nullable=False)
    type = Column(String, nullable=False, index=True)
    content = Column(Text, nullable=True)
    file_url = Column(String, nullable=True)
    file_type = Column(String, nullable=True)
    file_name = Column(String, nullable=True)
    blob_name = Column(String, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utc_now)
    expires_at = Column(DateTime, nullable=True, index=True)
    encrypted = Column(Boolean, nullable=False, default=False)


class StoredFile(Base):
    """
    Metadata for an uploaded blob.

    expires_at is uploaded_at + expiry_hours, or NULL for permanent files.
    """
    __tablename__ = "files"

    id = Column(String, primary_key=True, default=_new_id)
    blob_name = Column(String, nullable=False, unique=True)
    room_id = Column(String, nullable=False, index=True)
    url = Column(String, nullable=False, index=True)
    uploaded_at = Column(DateTime, nullable=False, default=utc_now)
    expiry_hours = Column(Float, nullable=False, default=0)
    expires_at = Column(DateTime, nullable=True, index=True)
