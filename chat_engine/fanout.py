"""
Realtime fanout of message lifecycle events.

Every method runs after the triggering transaction has committed. Publish
failures are logged, counted and dropped: they never reach the caller and
are never retried.
"""

import logging
from typing import Any, Optional, Sequence

from chat_engine.metrics import record_fanout_failure
from chat_engine.pubsub import Broker, chat_topic, private_topic
from chat_engine.schemas import MessageResponse, UserProfile

logger = logging.getLogger(__name__)

MESSAGE_SENT = "message_sent"
MESSAGE_UPDATED = "message_updated"
MESSAGE_DELETED = "message_deleted"
TYPING = "typing"
OPEN_DM = "open_dm"


class Fanout:
    def __init__(self, broker: Broker):
        self._broker = broker

    async def _publish(self, topics: Sequence[str], event: str, data: dict[str, Any]) -> bool:
        try:
            await self._broker.publish(topics, event, data)
        except Exception:
            logger.exception(f"Failed to publish {event} to {list(topics)}")
            record_fanout_failure(event)
            return False
        logger.debug(f"Published {event} to {list(topics)}")
        return True

    async def message_sent(self, message: MessageResponse, nonce: Optional[int] = None) -> bool:
        data = message.model_dump(mode="json")
        data["nonce"] = nonce
        return await self._publish([chat_topic(message.channel_id)], MESSAGE_SENT, data)

    async def message_updated(self, message_id: int, channel_id: str, content: str) -> bool:
        return await self._publish(
            [chat_topic(channel_id)],
            MESSAGE_UPDATED,
            {"id": message_id, "content": content, "channel_id": channel_id},
        )

    async def message_deleted(self, message_id: int, channel_id: str) -> bool:
        # Subscribers may already have dropped the row; the event only carries ids
        return await self._publish(
            [chat_topic(channel_id)],
            MESSAGE_DELETED,
            {"id": message_id, "channel_id": channel_id},
        )

    async def typing(self, channel_id: str, user: UserProfile) -> bool:
        return await self._publish(
            [chat_topic(channel_id)],
            TYPING,
            {"user": user.model_dump(mode="json")},
        )

    async def dm_opened(self, to_user_id: str, channel_id: str, user: UserProfile) -> bool:
        """Tell the recipient a DM channel surfaced with its first unread message."""
        return await self._publish(
            [private_topic(to_user_id)],
            OPEN_DM,
            {"id": channel_id, "user": user.model_dump(mode="json"), "unread_messages": 1},
        )
