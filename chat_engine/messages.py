"""
Message store: the transactional write path and the hydrated read path.

send_message() is the only multi-statement transaction in the engine. It
binds the attachment, inserts the message, snapshots the reply parent,
advances the channel's last-message pointer and opens a DM channel, all
before a single commit. Realtime fanout happens afterwards, in main.py.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from sqlalchemy import delete, or_, select, update
from sqlalchemy.orm import Session, aliased

from chat_engine.attachments import bind_attachment
from chat_engine.config import settings
from chat_engine.exceptions import BadRequest, Forbidden, NotFound
from chat_engine.models import Attachment, DirectMessageInfo, Message, MessageChannel, User
from chat_engine.permissions import ChannelAccess, get_group_owner, resolve_channel
from chat_engine.schemas import (
    AttachmentResponse,
    CursorType,
    MessageResponse,
    ReplyMessage,
    UploadAttachment,
    UserProfile,
)
from chat_engine.utils import to_utc_naive

logger = logging.getLogger(__name__)


@dataclass
class SendResult:
    message: MessageResponse
    # True only for the request that flipped a DM channel to open
    is_new_dm: bool
    access: ChannelAccess


# =============================================================================
# Hydration (author, attachment, reply snapshot)
# =============================================================================

def _hydrated_select():
    """
    Select messages left-joined with author, attachment and reply parent.

    The parent is only matched inside the same channel, and a missing parent
    yields null reply columns rather than dropping the row.
    """
    reply_message = aliased(Message, name="reply_message")
    reply_user = aliased(User, name="reply_user")

    return (
        select(
            Message,
            User,
            Attachment,
            reply_message.content.label("reply_content"),
            reply_user,
        )
        .select_from(Message)
        .outerjoin(User, User.id == Message.author_id)
        .outerjoin(Attachment, Attachment.id == Message.attachment_id)
        .outerjoin(
            reply_message,
            (reply_message.id == Message.reply_id)
            & (reply_message.channel_id == Message.channel_id),
        )
        .outerjoin(reply_user, reply_user.id == reply_message.author_id)
    )


def _hydrate(row) -> MessageResponse:
    message, author, attachment, reply_content, reply_user = row
    return MessageResponse(
        id=message.id,
        author_id=message.author_id,
        channel_id=message.channel_id,
        content=message.content,
        attachment_id=message.attachment_id,
        reply_id=message.reply_id,
        timestamp=message.timestamp,
        author=UserProfile.model_validate(author) if author is not None else None,
        attachment=AttachmentResponse.model_validate(attachment) if attachment is not None else None,
        reply_message=ReplyMessage(content=reply_content) if reply_content is not None else None,
        reply_user=UserProfile.model_validate(reply_user) if reply_user is not None else None,
    )


def get_user_profile(db: Session, user_id: str) -> UserProfile:
    """
    Load the public profile of user_id.

    Raises:
        BadRequest: the identity has no profile
    """
    user = db.get(User, user_id)
    if user is None:
        raise BadRequest("User not found")
    return UserProfile.model_validate(user)


# =============================================================================
# Channel state (only called inside the send transaction)
# =============================================================================

def _advance_last_message(db: Session, channel_id: str, message_id: int) -> None:
    # Guarded by insert order so concurrent senders converge on the highest id
    db.execute(
        update(MessageChannel)
        .where(
            MessageChannel.id == channel_id,
            or_(
                MessageChannel.last_message_id.is_(None),
                MessageChannel.last_message_id < message_id,
            ),
        )
        .values(last_message_id=message_id)
        .execution_options(synchronize_session=False)
    )


def _open_direct_message(db: Session, channel_id: str) -> bool:
    """Flip the DM open flag; True only if this call performed the transition."""
    result = db.execute(
        update(DirectMessageInfo)
        .where(
            DirectMessageInfo.channel_id == channel_id,
            DirectMessageInfo.open.is_(False),
        )
        .values(open=True)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount > 0


# =============================================================================
# Write path
# =============================================================================

def send_message(
    db: Session,
    channel_id: str,
    content: str,
    user_id: str,
    attachment: Optional[UploadAttachment] = None,
    reply_id: Optional[int] = None,
) -> SendResult:
    """
    Persist a new message and the channel state that depends on it.

    Args:
        db: Database session
        channel_id: Target channel
        content: Trimmed message text, may be empty only with an attachment
        user_id: Acting identity (the author)
        attachment: Optional upload descriptor to bind to the message
        reply_id: Optional id of the message being replied to

    Returns:
        SendResult with the hydrated message and the DM-open transition flag

    Raises:
        BadRequest: empty message, or the author has no profile
        NotFound: the channel does not exist
        Forbidden: the author may not post in the channel
    """
    if not content and attachment is None:
        raise BadRequest("Message is empty")

    access = resolve_channel(db, channel_id, user_id)
    if db.get(User, user_id) is None:
        raise BadRequest("User not found")

    logger.info(f"Sending message: channel={channel_id}, author={user_id}, reply={reply_id}")

    try:
        bound = bind_attachment(db, attachment)

        message = Message(
            author_id=user_id,
            content=content,
            channel_id=channel_id,
            attachment_id=bound.id if bound is not None else None,
            reply_id=reply_id,
        )
        db.add(message)
        db.flush()

        hydrated = _hydrate(
            db.execute(_hydrated_select().where(Message.id == message.id)).one()
        )

        _advance_last_message(db, channel_id, message.id)

        is_new_dm = False
        if access.kind == "dm":
            is_new_dm = _open_direct_message(db, channel_id)

        db.commit()
    except Exception:
        db.rollback()
        logger.error(f"Send failed, transaction rolled back: channel={channel_id}, author={user_id}")
        raise

    logger.info(f"Message stored: id={hydrated.id}, channel={channel_id}, new_dm={is_new_dm}")
    return SendResult(message=hydrated, is_new_dm=is_new_dm, access=access)


def update_message(
    db: Session,
    message_id: int,
    channel_id: str,
    content: str,
    user_id: str,
) -> None:
    """
    Replace the content of a message authored by user_id.

    A message that does not exist, lives in another channel or belongs to
    someone else all raise the same Forbidden, so non-authors learn nothing
    about which messages exist.
    """
    if not content:
        raise BadRequest("Message is empty")

    try:
        result = db.execute(
            update(Message)
            .where(
                Message.id == message_id,
                Message.author_id == user_id,
                Message.channel_id == channel_id,
            )
            .values(content=content)
            .execution_options(synchronize_session=False)
        )
    except Exception:
        db.rollback()
        raise

    if result.rowcount == 0:
        db.rollback()
        raise Forbidden("No permission or message doesn't exist")
    db.commit()

    logger.info(f"Message updated: id={message_id}, channel={channel_id}")


def delete_message(db: Session, message_id: int, user_id: str) -> str:
    """
    Hard-delete a message as its author or as the owner of its group.

    The channel's last-message pointer is not repaired if it referenced the
    deleted message. The message's attachment is deleted with it.

    Returns:
        The channel id the message belonged to

    Raises:
        NotFound: the message does not exist
        Forbidden: user_id is neither the author nor the group owner
    """
    row = db.execute(
        select(Message.author_id, Message.channel_id, Message.attachment_id)
        .where(Message.id == message_id)
        .limit(1)
    ).first()

    if row is None:
        raise NotFound("Message not found")

    if row.author_id != user_id and get_group_owner(db, row.channel_id) != user_id:
        raise Forbidden("Missing required permission")

    try:
        db.execute(delete(Message).where(Message.id == message_id))
        if row.attachment_id is not None:
            db.execute(delete(Attachment).where(Attachment.id == row.attachment_id))
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Message deleted: id={message_id}, channel={row.channel_id}, by={user_id}")
    return row.channel_id


# =============================================================================
# Read path
# =============================================================================

def list_messages(
    db: Session,
    channel_id: str,
    user_id: str,
    count: int = 50,
    cursor_type: CursorType = "before",
    cursor: Optional[datetime] = None,
) -> list[MessageResponse]:
    """
    Fetch one page of channel history, newest first.

    Each call is a stateless page fetch: pass the timestamp of the last
    message seen as cursor to continue.

    Args:
        db: Database session
        channel_id: Channel to read
        user_id: Acting identity
        count: Page size, clamped to [0, MAX_PAGE_SIZE]
        cursor_type: "before" for timestamp < cursor, "after" for timestamp > cursor
        cursor: Exclusive timestamp bound; None returns the most recent page

    Returns:
        Hydrated messages ordered by timestamp descending
    """
    resolve_channel(db, channel_id, user_id)
    count = max(0, min(count, settings.MAX_PAGE_SIZE))

    query = _hydrated_select().where(Message.channel_id == channel_id)

    if cursor is not None:
        bound = to_utc_naive(cursor)
        if cursor_type == "after":
            query = query.where(Message.timestamp > bound)
        else:
            query = query.where(Message.timestamp < bound)

    query = query.order_by(Message.timestamp.desc(), Message.id.desc()).limit(count)

    messages = [_hydrate(row) for row in db.execute(query).all()]
    logger.debug(f"Fetched {len(messages)} messages: channel={channel_id}, {cursor_type}={cursor}")
    return messages
