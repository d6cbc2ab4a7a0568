"""
Shared test data and fakes.
"""

from datetime import datetime

from chat_engine.models import Message


ALICE = "alice"
BOB = "bob"
CAROL = "carol"
DAVE = "dave"

GROUP_ID = "general"
DM_ID = "dm-alice-bob"


def as_user(user_id: str) -> dict:
    """Headers the upstream session layer would set for user_id."""
    return {"X-User-Id": user_id}


def insert_message(db, channel_id, author_id, content, timestamp: datetime, reply_id=None) -> int:
    """Insert a message row directly with a fixed timestamp."""
    message = Message(
        channel_id=channel_id,
        author_id=author_id,
        content=content,
        timestamp=timestamp,
        reply_id=reply_id,
    )
    db.add(message)
    db.commit()
    return message.id


class RecordingBroker:
    """Broker that keeps every publish for assertions."""

    def __init__(self):
        self.published = []

    async def publish(self, topics, event, data):
        self.published.append((list(topics), event, data))

    def events(self, name):
        return [(topics, data) for topics, event, data in self.published if event == name]


class FailingBroker:
    async def publish(self, topics, event, data):
        raise ConnectionError("pub/sub transport unavailable")


class RecordingNotifier:
    def __init__(self, trigger="@Shark"):
        self.trigger = trigger
        self.calls = []

    def matches(self, content):
        return content.startswith(self.trigger)

    async def notify(self, content, channel_id, user_name):
        self.calls.append((content, channel_id, user_name))


class ConnectedRequest:
    """Stand-in for a streaming client that never disconnects."""

    async def is_disconnected(self):
        return False
