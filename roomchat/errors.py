"""
Error taxonomy for the chat backend.

- ValidationError: malformed ingest request, reported to the sender only
- StoreError: the record store failed to read or write
- BlobNotFoundError: the blob is already gone (treated as deleted by the sweeper)
- BlobOtherError: any other blob store failure, retried on the next sweep
"""


class RoomChatError(Exception):
    """Base class for all roomchat errors."""


class ValidationError(RoomChatError):
    """An incoming message or request failed validation."""


class StoreError(RoomChatError):
    """A record store operation failed."""


class BlobStoreError(RoomChatError):
    """Base class for blob store failures."""

    def __init__(self, blob_name: str, message: str = ""):
        self.blob_name = blob_name
        super().__init__(message or blob_name)


class BlobNotFoundError(BlobStoreError):
    """The named blob does not exist."""


class BlobOtherError(BlobStoreError):
    """The blob store failed for a reason other than a missing blob."""
