"""
Pytest configuration and shared fixtures.

Test settings are put in the environment here, before any roomchat import,
so the cached settings and the engine pick them up.
"""

import os
import shutil
import tempfile

_BLOB_DIR = tempfile.mkdtemp(prefix="roomchat-blobs-")

os.environ["DATABASE_URL"] = "sqlite:///./test_roomchat.db"
os.environ["LOG_LEVEL"] = "WARNING"
os.environ["SWEEP_ENABLED"] = "false"
os.environ["ROOM_TTL_HOURS"] = "0"
os.environ["BLOB_STORAGE_DIR"] = _BLOB_DIR

import pytest

from roomchat.config import get_settings
get_settings.cache_clear()

from roomchat import models  # noqa: E402,F401
from roomchat.blob_store import BlobStore  # noqa: E402
from roomchat.errors import BlobNotFoundError  # noqa: E402
from roomchat.storage import Base, RecordStore, engine  # noqa: E402


class FakeBlobStore(BlobStore):
    """In-memory blob store that records deletes and can be told to fail."""

    def __init__(self):
        self.blobs = {}
        self.deleted = []
        self.errors = {}

    async def put(self, name, stream, content_type=None):
        self.blobs[name] = stream.read()
        return f"/blobs/{name}"

    async def delete_blob(self, name):
        self.deleted.append(name)
        if name in self.errors:
            raise self.errors[name]
        if name not in self.blobs:
            raise BlobNotFoundError(name)
        del self.blobs[name]


class FakeConnection:
    """Stands in for a WebSocket; keeps every frame it is sent."""

    def __init__(self, name="conn", log=None, fail=False):
        self.name = name
        self.sent = []
        self.log = log
        self.fail = fail

    async def send_json(self, frame):
        if self.fail:
            raise RuntimeError("connection closed")
        self.sent.append(frame)
        if self.log is not None:
            self.log.append(f"{self.name}:{frame['event']}")

    def events(self):
        return [frame["event"] for frame in self.sent]


@pytest.fixture(scope="function")
def db():
    """Fresh tables for each test."""
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def store(db):
    return RecordStore()


@pytest.fixture
def blobs():
    return FakeBlobStore()


@pytest.fixture
def blob_dir():
    return _BLOB_DIR


@pytest.fixture
def make_connection():
    """Factory for fake WebSocket connections."""
    return FakeConnection


def pytest_sessionfinish(session, exitstatus):
    shutil.rmtree(_BLOB_DIR, ignore_errors=True)
