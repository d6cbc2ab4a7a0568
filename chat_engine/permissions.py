"""
Channel access checks.

Every read, send, typing and read-cursor operation resolves the channel
through resolve_channel() first. Edit and delete use ownership checks in
messages.py instead.
"""

import logging
from dataclasses import dataclass
from typing import Literal, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from chat_engine.exceptions import Forbidden, NotFound
from chat_engine.models import DirectMessageInfo, Group, GroupMember, MessageChannel

logger = logging.getLogger(__name__)

ChannelKind = Literal["dm", "group"]


@dataclass(frozen=True)
class ChannelAccess:
    """Channel metadata returned to callers once access is granted."""
    kind: ChannelKind
    channel_id: str
    # DM only: the participant on the other side
    to_user_id: Optional[str] = None
    # Group only
    owner_id: Optional[str] = None


def resolve_channel(db: Session, channel_id: str, user_id: str) -> ChannelAccess:
    """
    Determine the channel kind and whether user_id may act on it.

    Raises:
        NotFound: the channel does not exist
        Forbidden: the user is not a DM participant or group member
    """
    logger.debug(f"Resolving channel access: channel={channel_id}, user={user_id}")

    if db.get(MessageChannel, channel_id) is None:
        raise NotFound("Channel not found")

    dm = db.get(DirectMessageInfo, channel_id)
    if dm is not None:
        if user_id == dm.user_id:
            return ChannelAccess(kind="dm", channel_id=channel_id, to_user_id=dm.to_user_id)
        if user_id == dm.to_user_id:
            return ChannelAccess(kind="dm", channel_id=channel_id, to_user_id=dm.user_id)
        logger.info(f"User {user_id} is not a participant of DM {channel_id}")
        raise Forbidden("You are not a participant of this channel")

    group = db.get(Group, channel_id)
    if group is None:
        # Channel row without a DM or group definition
        raise NotFound("Channel not found")

    if group.owner_id != user_id:
        member = db.execute(
            select(GroupMember.user_id).where(
                GroupMember.channel_id == channel_id,
                GroupMember.user_id == user_id,
            )
        ).first()
        if member is None:
            logger.info(f"User {user_id} is not a member of group {channel_id}")
            raise Forbidden("You are not a member of this group")

    return ChannelAccess(kind="group", channel_id=channel_id, owner_id=group.owner_id)


def get_group_owner(db: Session, channel_id: str) -> Optional[str]:
    """Owner of a group channel, None for DMs and unknown channels."""
    return db.execute(
        select(Group.owner_id).where(Group.channel_id == channel_id)
    ).scalar_one_or_none()
