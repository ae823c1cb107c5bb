"""
Utility functions for the chat backend.
"""

import logging
import secrets
import string
from datetime import datetime, timedelta, timezone
from typing import Optional

logger = logging.getLogger(__name__)

ROOM_CODE_ALPHABET = string.ascii_uppercase + string.digits
ROOM_CODE_LENGTH = 6


def utc_now() -> datetime:
    """
    Current time as a naive UTC datetime.

    All timestamps are persisted naive in UTC so that comparisons in the
    record store behave the same on every backend.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are assumed UTC."""
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def expiry_from_hours(expiry_hours: Optional[float], start: Optional[datetime] = None) -> Optional[datetime]:
    """
    Compute an expiry timestamp from a lifetime in hours.

    Returns None (no expiry) when expiry_hours is missing or not positive,
    so a computed expiry is never in the past.
    """
    if expiry_hours is None or expiry_hours <= 0:
        return None
    return (start or utc_now()) + timedelta(hours=expiry_hours)


def normalize_room_code(code: str) -> str:
    """Room codes are case-insensitive and stored upper-case."""
    return code.strip().upper()


def generate_room_code() -> str:
    """Generate a random room code such as 'AB12CD'."""
    code = "".join(secrets.choice(ROOM_CODE_ALPHABET) for _ in range(ROOM_CODE_LENGTH))
    logger.debug(f"Generated room code: {code}")
    return code
