import logging
from typing import Optional

from sqlalchemy.orm import Session

from chat_engine.models import Attachment
from chat_engine.schemas import UploadAttachment
from chat_engine.utils import generate_attachment_id

logger = logging.getLogger(__name__)


def bind_attachment(db: Session, descriptor: Optional[UploadAttachment]) -> Optional[Attachment]:
    """
    Normalize an uploaded-attachment descriptor into a pending Attachment row.

    The row is added and flushed but not committed: it becomes durable only
    when the caller's transaction (the message insert) commits, so a failed
    send never leaves an orphan attachment behind.

    Args:
        db: Session holding the open send transaction
        descriptor: Upload descriptor, or None for text-only messages

    Returns:
        The flushed Attachment, or None when descriptor is None
    """
    if descriptor is None:
        return None

    is_media = descriptor.is_media()
    attachment = Attachment(
        id=generate_attachment_id(),
        name=descriptor.name,
        url=descriptor.url,
        type=descriptor.type,
        bytes=descriptor.bytes,
        width=descriptor.width if is_media else None,
        height=descriptor.height if is_media else None,
    )
    db.add(attachment)
    db.flush()

    logger.debug(f"Bound attachment {attachment.id} ({attachment.type}, {attachment.bytes} bytes)")
    return attachment
