"""
Per (channel, user) read cursors.

A cursor is the timestamp through which the user has read the channel.
Writes are last-writer-wins; rows are created on first write.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chat_engine.models import LastRead
from chat_engine.utils import utcnow

logger = logging.getLogger(__name__)


def get_last_read(db: Session, channel_id: str, user_id: str) -> Optional[datetime]:
    row = db.get(LastRead, (channel_id, user_id))
    return row.last_read if row is not None else None


def _upsert(db: Session, channel_id: str, user_id: str, timestamp: datetime) -> None:
    row = db.get(LastRead, (channel_id, user_id))
    if row is None:
        db.add(LastRead(channel_id=channel_id, user_id=user_id, last_read=timestamp))
    else:
        row.last_read = timestamp


def set_last_read(db: Session, channel_id: str, user_id: str, timestamp: datetime) -> None:
    """Store the read cursor and commit."""
    logger.debug(f"Setting last read: channel={channel_id}, user={user_id}, ts={timestamp}")
    try:
        _upsert(db, channel_id, user_id, timestamp)
        db.commit()
    except IntegrityError:
        # A concurrent first write created the row; overwrite it
        db.rollback()
        _upsert(db, channel_id, user_id, timestamp)
        db.commit()
    except Exception:
        db.rollback()
        raise


def _swap(db: Session, channel_id: str, user_id: str) -> Optional[datetime]:
    previous = get_last_read(db, channel_id, user_id)
    _upsert(db, channel_id, user_id, utcnow())
    db.commit()
    return previous


def checkout_last_read(db: Session, channel_id: str, user_id: str) -> Optional[datetime]:
    """
    Return the previous cursor and advance it to now, in one transaction.

    Callers use the returned value to count messages the user has not seen.
    """
    try:
        try:
            previous = _swap(db, channel_id, user_id)
        except IntegrityError:
            # A concurrent first write created the row; its value is the previous cursor
            db.rollback()
            previous = _swap(db, channel_id, user_id)
    except Exception:
        db.rollback()
        raise

    logger.debug(f"Checked out last read: channel={channel_id}, user={user_id}, previous={previous}")
    return previous
