"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
)

from chat_engine.storage import Base
from chat_engine.utils import utcnow


class User(Base):
    """
    Public profile of a user, owned by the identity provider.

    Only the fields exposed alongside messages are stored here.
    """
    __tablename__ = "users"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    image = Column(String, nullable=True)


class MessageChannel(Base):
    """
    Addressable container for messages.

    A channel is either a direct message (see DirectMessageInfo) or a
    group (see Group). last_message_id is a denormalized pointer maintained
    by the send path.
    """
    __tablename__ = "message_channels"

    id = Column(String, primary_key=True)
    # Not a foreign key: deleting the message leaves the pointer as-is
    last_message_id = Column(Integer, nullable=True)


class DirectMessageInfo(Base):
    """Two-party channel. open flips to true once, on the first message."""
    __tablename__ = "direct_message_infos"

    channel_id = Column(
        String, ForeignKey("message_channels.id", ondelete="CASCADE"), primary_key=True
    )
    user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    to_user_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    open = Column(Boolean, nullable=False, default=False)


class Group(Base):
    """Group channel with an owner holding elevated permissions."""
    __tablename__ = "groups"

    channel_id = Column(
        String, ForeignKey("message_channels.id", ondelete="CASCADE"), primary_key=True
    )
    name = Column(String, nullable=False)
    owner_id = Column(String, ForeignKey("users.id"), nullable=False)


class GroupMember(Base):
    __tablename__ = "group_members"

    channel_id = Column(
        String, ForeignKey("groups.channel_id", ondelete="CASCADE"), primary_key=True
    )
    user_id = Column(String, ForeignKey("users.id"), primary_key=True)


class Attachment(Base):
    """
    Uploaded file bound to exactly one message.

    width/height are only set for image and video attachments.
    """
    __tablename__ = "attachments"

    id = Column(String, primary_key=True)
    name = Column(String, nullable=False)
    url = Column(Text, nullable=False)
    type = Column(String, nullable=False)
    bytes = Column(Integer, nullable=False)
    width = Column(Integer, nullable=True)
    height = Column(Integer, nullable=True)


class Message(Base):
    """
    SQLAlchemy model for chat messages.

    Table: messages
    Primary Key: id (store-assigned, increases with insert order)
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    author_id = Column(String, ForeignKey("users.id"), nullable=False, index=True)
    channel_id = Column(
        String, ForeignKey("message_channels.id", ondelete="CASCADE"), nullable=False
    )
    content = Column(Text, nullable=False, default="")
    attachment_id = Column(String, ForeignKey("attachments.id"), nullable=True, unique=True)
    # Not a foreign key: a reply outlives its parent and hydrates with null fields
    reply_id = Column(Integer, nullable=True)
    timestamp = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_messages_channel_timestamp", "channel_id", "timestamp"),
    )


class LastRead(Base):
    """Per (channel, user) read cursor. Last writer wins."""
    __tablename__ = "last_reads"

    channel_id = Column(String, primary_key=True)
    user_id = Column(String, primary_key=True)
    last_read = Column(DateTime, nullable=False)
