"""
Expiry sweeper and its scheduler.

A sweep runs three passes in order:

1. Expired files: file messages and file records whose expiresAt has passed.
   The blob goes first; the record is only deleted once the blob is gone
   (or was already missing), so a failed blob delete is retried next sweep.
2. Expired rooms: every message and file of the room is deleted, blob
   failures are logged but never keep the record, then the room itself.
3. Empty rooms: rooms with no members are deleted, without cascading.

Every entity is handled independently. A failure is logged and counted and
the sweep moves on; nothing here is transactional.

The scheduler guarantees at most one sweep at a time. Timer fires while a
sweep is running are dropped, not queued.
"""

import asyncio
import logging
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Optional, Set

from roomchat.blob_store import BlobStore
from roomchat.errors import BlobNotFoundError, BlobStoreError, RoomChatError
from roomchat.metrics import record_sweep_failure, record_sweep_run, record_swept
from roomchat.schemas import SweepReport
from roomchat.storage import RecordStore
from roomchat.utils import utc_now

logger = logging.getLogger(__name__)


class ExpirySweeper:
    """Garbage-collects expired files, expired rooms and empty rooms."""

    def __init__(self, store: RecordStore, blob_store: BlobStore):
        self.store = store
        self.blob_store = blob_store

    async def sweep(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or utc_now()
        report = SweepReport()
        logger.info(f"Sweep started at {now.isoformat()}Z")

        await self._run_pass("expired files", self._sweep_expired_files, now, report)
        await self._run_pass("expired rooms", self._sweep_expired_rooms, now, report)
        await self._run_pass("empty rooms", self._sweep_empty_rooms, now, report)

        record_swept("message", report.deleted_messages)
        record_swept("file", report.deleted_files)
        record_swept("blob", report.deleted_blobs)
        record_swept("room", report.deleted_rooms)
        logger.info(
            "Sweep finished",
            extra={
                "deleted_messages": report.deleted_messages,
                "deleted_files": report.deleted_files,
                "deleted_blobs": report.deleted_blobs,
                "deleted_rooms": report.deleted_rooms,
                "failures": report.failures,
            },
        )
        return report

    async def _run_pass(self, name: str, sweep_pass, now: datetime, report: SweepReport) -> None:
        # A failed query skips the rest of this pass only
        try:
            await sweep_pass(now, report)
        except RoomChatError as e:
            logger.error(f"Sweep pass '{name}' aborted: {e}")
            self._failed(report)

    def _failed(self, report: SweepReport) -> None:
        report.failures += 1
        record_sweep_failure()

    # -------------------------------------------------------------------------
    # Blob helpers
    # -------------------------------------------------------------------------

    async def _blob_name_for(self, message) -> Optional[str]:
        """
        The exact blob backing a file message.

        Messages without blobName are matched to their upload record by URL;
        fileName is the last resort.
        """
        if message.blob_name:
            return message.blob_name
        if message.file_url:
            record = await self.store.find_file_by_url(message.file_url)
            if record is not None:
                return record.blob_name
        return message.file_name

    async def _delete_blob(self, name: str, report: SweepReport) -> None:
        """Delete a blob; a missing blob counts as deleted. Other errors propagate."""
        try:
            await self.blob_store.delete_blob(name)
            report.deleted_blobs += 1
        except BlobNotFoundError:
            logger.debug(f"Blob already deleted: {name}")

    async def _delete_blob_best_effort(self, name: Optional[str], report: SweepReport) -> None:
        if not name:
            return
        try:
            await self._delete_blob(name, report)
        except BlobStoreError as e:
            logger.error(f"Failed to delete blob {name}: {e}")
            self._failed(report)

    # -------------------------------------------------------------------------
    # Passes
    # -------------------------------------------------------------------------

    async def _sweep_expired_files(self, now: datetime, report: SweepReport) -> None:
        for message in await self.store.find_expired_file_messages(now):
            name = None
            try:
                name = await self._blob_name_for(message)
                if name:
                    await self._delete_blob(name, report)
                if await self.store.delete_one(message):
                    report.deleted_messages += 1
                logger.info(f"Deleted expired file message {message.id} (blob={name})")
            except RoomChatError as e:
                # Record stays for the next sweep
                logger.error(f"Failed to delete expired file message {message.id}: {e}")
                self._failed(report)

        for record in await self.store.find_expired_files(now):
            try:
                await self._delete_blob(record.blob_name, report)
                if await self.store.delete_one(record):
                    report.deleted_files += 1
                logger.info(f"Deleted expired file {record.blob_name}")
            except RoomChatError as e:
                logger.error(f"Failed to delete expired file {record.blob_name}: {e}")
                self._failed(report)

    async def _sweep_expired_rooms(self, now: datetime, report: SweepReport) -> None:
        for room in await self.store.find_expired_rooms(now):
            try:
                await self._cascade_room(room, report)
                if await self.store.delete_one(room):
                    report.deleted_rooms += 1
                logger.info(f"Deleted expired room and its messages/files: {room.code}")
            except RoomChatError as e:
                logger.error(f"Failed to delete expired room {room.code}: {e}")
                self._failed(report)

    async def _cascade_room(self, room, report: SweepReport) -> None:
        for message in await self.store.find_messages_by_room(room.code):
            if message.type == "file":
                try:
                    name = await self._blob_name_for(message)
                except RoomChatError as e:
                    logger.error(f"Failed to resolve blob of message {message.id}: {e}")
                    self._failed(report)
                    name = None
                await self._delete_blob_best_effort(name, report)
            try:
                if await self.store.delete_one(message):
                    report.deleted_messages += 1
            except RoomChatError as e:
                logger.error(f"Failed to delete message {message.id} of room {room.code}: {e}")
                self._failed(report)

        for record in await self.store.find_files_by_room(room.code):
            await self._delete_blob_best_effort(record.blob_name, report)
            try:
                if await self.store.delete_one(record):
                    report.deleted_files += 1
            except RoomChatError as e:
                logger.error(f"Failed to delete file {record.blob_name} of room {room.code}: {e}")
                self._failed(report)

    async def _sweep_empty_rooms(self, now: datetime, report: SweepReport) -> None:
        for room in await self.store.find_empty_rooms():
            try:
                if await self.store.delete_one(room):
                    report.deleted_rooms += 1
                logger.info(f"Deleted empty room: {room.code}")
            except RoomChatError as e:
                logger.error(f"Failed to delete room {room.code}: {e}")
                self._failed(report)


# =============================================================================
# Scheduler
# =============================================================================

class SweepState(str, Enum):
    IDLE = "idle"
    SWEEPING = "sweeping"


class SweepScheduler:
    """
    Runs a sweep at start and then every interval_seconds.

    The Idle/Sweeping state is only changed by _begin and _finish. A trigger
    while Sweeping returns immediately without running anything.
    """

    def __init__(
        self,
        sweep: Callable[[], Awaitable[SweepReport]],
        interval_seconds: float,
    ):
        self._sweep = sweep
        self.interval_seconds = interval_seconds
        self._state = SweepState.IDLE
        self._timer_task: Optional[asyncio.Task] = None
        self._running: Set[asyncio.Task] = set()

    @property
    def state(self) -> SweepState:
        return self._state

    @property
    def is_sweeping(self) -> bool:
        return self._state is SweepState.SWEEPING

    def _begin(self) -> bool:
        if self._state is SweepState.SWEEPING:
            return False
        self._state = SweepState.SWEEPING
        return True

    def _finish(self) -> None:
        self._state = SweepState.IDLE

    async def trigger(self) -> Optional[SweepReport]:
        """
        Run one sweep unless one is already in progress.

        Returns:
            The sweep report, or None if the trigger was dropped or the
            sweep raised.
        """
        if not self._begin():
            logger.info("Sweep already in progress, skipping")
            record_sweep_run("skipped")
            return None
        try:
            report = await self._sweep()
            record_sweep_run("completed")
            return report
        except Exception:
            logger.exception("Sweep failed")
            record_sweep_run("failed")
            return None
        finally:
            self._finish()

    def _fire(self) -> None:
        task = asyncio.create_task(self.trigger())
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _timer(self) -> None:
        self._fire()
        while True:
            await asyncio.sleep(self.interval_seconds)
            self._fire()

    def start(self) -> None:
        """Start the timer; the first sweep fires immediately."""
        if self._timer_task is not None:
            return
        logger.info(f"Sweep scheduler started, interval={self.interval_seconds}s")
        self._timer_task = asyncio.create_task(self._timer())

    async def stop(self) -> None:
        tasks = list(self._running)
        if self._timer_task is not None:
            tasks.append(self._timer_task)
            self._timer_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Sweep scheduler stopped")
