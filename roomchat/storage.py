import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Callable, Iterator, Optional, Sequence, Tuple

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from starlette.concurrency import run_in_threadpool

from roomchat.config import settings
from roomchat.errors import StoreError

logger = logging.getLogger(__name__)


def _connect_args(database_url: str) -> dict:
    # check_same_thread=False is required for SQLite since store calls run
    # in the threadpool
    if database_url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine = create_engine(
    settings.DATABASE_URL,
    connect_args=_connect_args(settings.DATABASE_URL),
    echo=False,
)

# expire_on_commit=False keeps records readable after their session closes,
# records are handed to the ingest pipeline and sweeper detached
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()

REQUIRED_TABLES = ("rooms", "room_members", "messages", "files")


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from roomchat import models  # noqa: F401

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and schema exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            logger.debug("Database connectivity OK")
        existing = set(inspect(engine).get_table_names())
        missing = [name for name in REQUIRED_TABLES if name not in existing]
        if missing:
            logger.error(f"Database schema not applied, missing tables: {missing}")
            return False
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Record Store
# =============================================================================

class RecordStore:
    """
    Async record store over Message, Room and File entities.

    Every operation opens its own session and runs in the threadpool, so each
    call is a suspension point for the event loop. Single-record operations
    are atomic; nothing here spans more than one logical entity, multi-step
    cascades are the caller's business.

    Failures surface as StoreError.
    """

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    @contextmanager
    def _session_scope(self, action: str) -> Iterator[Session]:
        db = self._session_factory()
        try:
            yield db
        except SQLAlchemyError as e:
            db.rollback()
            logger.error(f"Record store failed to {action}: {e}")
            raise StoreError(f"Failed to {action}") from e
        finally:
            db.close()

    async def _run(self, fn: Callable[..., Any], *args: Any) -> Any:
        return await run_in_threadpool(fn, *args)

    # -------------------------------------------------------------------------
    # Messages
    # -------------------------------------------------------------------------

    def _create_message(self, fields: dict):
        from roomchat.models import Message

        with self._session_scope("create message") as db:
            message = Message(**fields)
            db.add(message)
            db.commit()
            logger.info(f"Message created: id={message.id}, room={message.room_id}, type={message.type}")
            return message

    async def create_message(self, fields: dict):
        """Persist one message and return it with its store-assigned id."""
        return await self._run(self._create_message, fields)

    def _find_messages_by_room(self, room_id: str) -> list:
        from roomchat.models import Message

        with self._session_scope("find messages by room") as db:
            return (
                db.query(Message)
                .filter(Message.room_id == room_id)
                .order_by(Message.timestamp.asc(), Message.id.asc())
                .all()
            )

    async def find_messages_by_room(self, room_id: str) -> list:
        """All messages of a room, oldest first."""
        return await self._run(self._find_messages_by_room, room_id)

    def _find_expired_file_messages(self, now: datetime) -> list:
        from roomchat.models import Message

        with self._session_scope("find expired file messages") as db:
            return (
                db.query(Message)
                .filter(Message.type == "file")
                .filter(Message.expires_at.isnot(None))
                .filter(Message.expires_at <= now)
                .all()
            )

    async def find_expired_file_messages(self, now: datetime) -> list:
        return await self._run(self._find_expired_file_messages, now)

    # -------------------------------------------------------------------------
    # Files
    # -------------------------------------------------------------------------

    def _create_file_record(self, fields: dict):
        from roomchat.models import StoredFile

        with self._session_scope("create file record") as db:
            record = StoredFile(**fields)
            db.add(record)
            db.commit()
            logger.info(f"File record created: blob={record.blob_name}, room={record.room_id}")
            return record

    async def create_file_record(self, fields: dict):
        return await self._run(self._create_file_record, fields)

    def _find_expired_files(self, now: datetime) -> list:
        from roomchat.models import StoredFile

        with self._session_scope("find expired files") as db:
            return (
                db.query(StoredFile)
                .filter(StoredFile.expires_at.isnot(None))
                .filter(StoredFile.expires_at <= now)
                .all()
            )

    async def find_expired_files(self, now: datetime) -> list:
        return await self._run(self._find_expired_files, now)

    def _find_files_by_room(self, room_id: str) -> list:
        from roomchat.models import StoredFile

        with self._session_scope("find files by room") as db:
            return db.query(StoredFile).filter(StoredFile.room_id == room_id).all()

    async def find_files_by_room(self, room_id: str) -> list:
        return await self._run(self._find_files_by_room, room_id)

    def _find_file_by_url(self, url: str):
        from roomchat.models import StoredFile

        with self._session_scope("find file by url") as db:
            return db.query(StoredFile).filter(StoredFile.url == url).first()

    async def find_file_by_url(self, url: str):
        """The upload record served at url, or None."""
        return await self._run(self._find_file_by_url, url)

    # -------------------------------------------------------------------------
    # Rooms
    # -------------------------------------------------------------------------

    def _get_room(self, code: str):
        from roomchat.models import Room

        with self._session_scope("get room") as db:
            return db.get(Room, code)

    async def get_room(self, code: str):
        return await self._run(self._get_room, code)

    def _get_or_create_room(
        self, code: str, creator: str, expires_at: Optional[datetime], members: Sequence[str]
    ) -> Tuple[Any, bool]:
        from roomchat.models import Room, RoomMember

        with self._session_scope("create room") as db:
            existing = db.get(Room, code)
            if existing is not None:
                return existing, False
            # Initial members go in with the room so it is never seen empty
            room = Room(
                code=code,
                creator=creator,
                expires_at=expires_at,
                members=[RoomMember(client_id=client_id) for client_id in dict.fromkeys(members)],
            )
            db.add(room)
            try:
                db.commit()
            except IntegrityError:
                # Created concurrently by someone else
                db.rollback()
                logger.info(f"Room already exists: {code}")
                return db.get(Room, code), False
            logger.info(f"Room created: code={code}, creator={creator}")
            return room, True

    async def get_or_create_room(
        self,
        code: str,
        creator: str,
        expires_at: Optional[datetime] = None,
        members: Sequence[str] = (),
    ) -> Tuple[Any, bool]:
        """
        Fetch a room by code, creating it with the given members if it does
        not exist. An existing room's members are left alone.

        Returns:
            Tuple of (room, created)
        """
        return await self._run(self._get_or_create_room, code, creator, expires_at, members)

    def _find_expired_rooms(self, now: datetime) -> list:
        from roomchat.models import Room

        with self._session_scope("find expired rooms") as db:
            return (
                db.query(Room)
                .filter(Room.expires_at.isnot(None))
                .filter(Room.expires_at <= now)
                .all()
            )

    async def find_expired_rooms(self, now: datetime) -> list:
        return await self._run(self._find_expired_rooms, now)

    def _find_empty_rooms(self) -> list:
        from roomchat.models import Room

        with self._session_scope("find empty rooms") as db:
            return db.query(Room).filter(~Room.members.any()).all()

    async def find_empty_rooms(self) -> list:
        """Rooms whose member set is empty."""
        return await self._run(self._find_empty_rooms)

    def _join_room(self, code: str, client_id: str, expires_at: Optional[datetime]) -> Tuple[Any, bool, bool]:
        from roomchat.models import Room, RoomMember

        with self._session_scope("join room") as db:
            # A second attempt covers a concurrent create or join of the same pair
            for _ in range(2):
                room = db.get(Room, code)
                created = room is None
                if created:
                    room = Room(
                        code=code,
                        creator=client_id,
                        expires_at=expires_at,
                        members=[RoomMember(client_id=client_id)],
                    )
                    db.add(room)
                elif client_id in room.member_ids:
                    return room, False, False
                else:
                    room.members.append(RoomMember(room_code=code, client_id=client_id))
                try:
                    db.commit()
                except IntegrityError:
                    db.rollback()
                    logger.info(f"Concurrent join of room {code} by {client_id}, retrying")
                    continue
                return room, created, True
            raise StoreError(f"Failed to join room {code}")

    async def join_room(
        self, code: str, client_id: str, expires_at: Optional[datetime] = None
    ) -> Tuple[Any, bool, bool]:
        """
        Add a member to a room, creating the room first if needed.

        The room and the membership are written in one transaction, so a room
        created here is never visible without its member.

        Returns:
            Tuple of (room, created, added); added is False if the client
            was already a member.
        """
        return await self._run(self._join_room, code, client_id, expires_at)

    def _remove_member(self, code: str, client_id: str) -> bool:
        from roomchat.models import RoomMember

        with self._session_scope("remove room member") as db:
            removed = (
                db.query(RoomMember)
                .filter(RoomMember.room_code == code, RoomMember.client_id == client_id)
                .delete(synchronize_session=False)
            )
            db.commit()
            return removed > 0

    async def remove_member(self, code: str, client_id: str) -> bool:
        """Remove a member; returns False if it was not present."""
        return await self._run(self._remove_member, code, client_id)

    # -------------------------------------------------------------------------
    # Deletion
    # -------------------------------------------------------------------------

    def _delete_one(self, record) -> bool:
        model = type(record)
        key = inspect(record).identity

        with self._session_scope(f"delete {model.__tablename__} record") as db:
            current = db.get(model, key)
            if current is None:
                return False
            db.delete(current)
            db.commit()
            return True

    async def delete_one(self, record) -> bool:
        """
        Delete a single record.

        Returns:
            True if the record was deleted, False if it was already gone
        """
        return await self._run(self._delete_one, record)
