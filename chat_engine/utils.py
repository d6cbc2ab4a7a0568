"""
Utility functions for the chat engine.
"""

import logging
import uuid
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    """
    Current UTC time as a naive datetime.

    All stored timestamps are naive UTC so they compare consistently on
    every backend, SQLite included.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: datetime) -> datetime:
    """
    Normalize a client-supplied datetime to naive UTC.

    Naive input is assumed to already be UTC.
    """
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def generate_attachment_id() -> str:
    """
    Generate a collision-resistant, non-sequential attachment identifier.

    Returns:
        32-character lowercase hex string derived from a random UUID4
    """
    return uuid.uuid4().hex
