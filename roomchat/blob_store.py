"""
Blob storage for uploaded files.

Blobs are addressed by name. Deleting a missing blob raises
BlobNotFoundError so callers can treat it as already deleted; every other
failure raises BlobOtherError.
"""

import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Optional

from starlette.concurrency import run_in_threadpool

from roomchat.errors import BlobNotFoundError, BlobOtherError

logger = logging.getLogger(__name__)


class BlobStore(ABC):
    """Interface the upload path and the expiry sweeper depend on."""

    @abstractmethod
    async def put(self, name: str, stream: BinaryIO, content_type: Optional[str] = None) -> str:
        """Store a blob and return the URL it is served from."""

    @abstractmethod
    async def delete_blob(self, name: str) -> None:
        """Delete a blob by name."""


class LocalBlobStore(BlobStore):
    """Blob store backed by a directory on disk."""

    def __init__(self, root_dir: str, base_url: str):
        self._root = Path(root_dir)
        self._base_url = base_url.rstrip("/")

    def ensure_root(self) -> None:
        """Ensure the storage directory exists."""
        self._root.mkdir(parents=True, exist_ok=True)

    @staticmethod
    def _is_flat(name: str) -> bool:
        return bool(name) and Path(name).name == name

    def _path_for(self, name: str) -> Path:
        # Blob names are flat; refuse anything that would escape the root
        if not self._is_flat(name):
            raise BlobOtherError(name, f"Invalid blob name: {name!r}")
        return self._root / name

    def url_for(self, name: str) -> str:
        return f"{self._base_url}/{name}"

    def _write(self, name: str, stream: BinaryIO) -> None:
        path = self._path_for(name)
        try:
            self.ensure_root()
            with path.open("wb") as out:
                shutil.copyfileobj(stream, out)
        except OSError as e:
            logger.error(f"Failed to write blob {name}: {e}")
            raise BlobOtherError(name, str(e)) from e

    async def put(self, name: str, stream: BinaryIO, content_type: Optional[str] = None) -> str:
        await run_in_threadpool(self._write, name, stream)
        logger.info(f"Stored blob: {name} ({content_type or 'application/octet-stream'})")
        return self.url_for(name)

    def _unlink(self, name: str) -> None:
        # put() never stores a non-flat name, so there is nothing to delete
        if not self._is_flat(name):
            raise BlobNotFoundError(name, f"Blob not found: {name!r}")
        path = self._path_for(name)
        try:
            path.unlink()
        except FileNotFoundError as e:
            raise BlobNotFoundError(name, f"Blob not found: {name}") from e
        except OSError as e:
            raise BlobOtherError(name, str(e)) from e

    async def delete_blob(self, name: str) -> None:
        await run_in_threadpool(self._unlink, name)
        logger.info(f"Deleted blob: {name}")

    def is_writable(self) -> bool:
        try:
            self.ensure_root()
        except OSError:
            return False
        return self._root.is_dir()
