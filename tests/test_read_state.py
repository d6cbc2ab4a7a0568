"""
Tests for read cursors and typing indicators.

Tests cover:
- POST /channels/{channel_id}/read
- POST /channels/{channel_id}/checkout returning the previous cursor
- POST /channels/{channel_id}/typing
- Last-read tracker functions
"""

from datetime import datetime

from chat_engine import last_read
from chat_engine.last_read import checkout_last_read, get_last_read, set_last_read
from chat_engine.models import LastRead
from chat_engine.storage import SessionLocal

from tests.helpers import ALICE, BOB, CAROL, DM_ID, GROUP_ID, as_user


def checkout(client, user_id, channel_id=GROUP_ID):
    return client.post(f"/channels/{channel_id}/checkout", headers=as_user(user_id))


class TestMarkRead:
    """Test explicit mark-read."""

    def test_mark_read_sets_cursor(self, client, seeded):
        response = client.post(f"/channels/{GROUP_ID}/read", headers=as_user(BOB))

        assert response.status_code == 204
        seeded.expire_all()
        assert seeded.get(LastRead, (GROUP_ID, BOB)) is not None

    def test_mark_read_non_member_forbidden(self, client, seeded):
        response = client.post(f"/channels/{GROUP_ID}/read", headers=as_user(CAROL))

        assert response.status_code == 403
        seeded.expire_all()
        assert seeded.get(LastRead, (GROUP_ID, CAROL)) is None

    def test_mark_read_unknown_channel(self, client, seeded):
        response = client.post("/channels/missing/read", headers=as_user(BOB))

        assert response.status_code == 404


class TestCheckout:
    """Test checkout returns the previous cursor and advances it."""

    def test_first_checkout_returns_null(self, client, seeded):
        response = checkout(client, BOB)

        assert response.status_code == 200
        assert response.json() == {"last_read": None}

    def test_checkout_returns_previous_value(self, client, seeded):
        set_last_read(seeded, GROUP_ID, BOB, datetime(2025, 1, 15, 10, 0))

        response = checkout(client, BOB)

        assert response.json() == {"last_read": "2025-01-15T10:00:00Z"}
        seeded.expire_all()
        assert get_last_read(seeded, GROUP_ID, BOB) > datetime(2025, 1, 15, 10, 0)

    def test_consecutive_checkouts(self, client, seeded):
        checkout(client, BOB)
        seeded.expire_all()
        advanced = get_last_read(seeded, GROUP_ID, BOB)

        second = checkout(client, BOB).json()

        assert second["last_read"] == advanced.isoformat() + "Z"

    def test_checkout_after_own_send(self, client, seeded):
        """A send moves the sender's cursor to the message timestamp."""
        sent = client.post(
            f"/channels/{DM_ID}/messages", json={"content": "hi"}, headers=as_user(ALICE)
        ).json()

        assert checkout(client, ALICE, channel_id=DM_ID).json()["last_read"] == sent["timestamp"]

    def test_checkout_outsider_forbidden(self, client, seeded):
        assert checkout(client, CAROL).status_code == 403


class TestLastReadTracker:
    """Test the tracker functions directly."""

    def test_get_absent(self, seeded):
        assert get_last_read(seeded, GROUP_ID, ALICE) is None

    def test_set_overwrites(self, seeded):
        set_last_read(seeded, GROUP_ID, ALICE, datetime(2025, 1, 1))
        set_last_read(seeded, GROUP_ID, ALICE, datetime(2024, 1, 1))

        # Last writer wins, even when moving backwards
        assert get_last_read(seeded, GROUP_ID, ALICE) == datetime(2024, 1, 1)

    def test_checkout_is_per_user(self, seeded):
        set_last_read(seeded, GROUP_ID, ALICE, datetime(2025, 1, 1))

        assert checkout_last_read(seeded, GROUP_ID, BOB) is None
        assert checkout_last_read(seeded, GROUP_ID, ALICE) == datetime(2025, 1, 1)

    def test_checkout_survives_concurrent_first_write(self, seeded, monkeypatch):
        """Losing the race to create the row returns the winner's cursor."""
        winner = datetime(2025, 1, 15, 9, 0)
        real_upsert = last_read._upsert
        calls = []

        def racing_upsert(db, channel_id, user_id, timestamp):
            calls.append(timestamp)
            if len(calls) > 1:
                return real_upsert(db, channel_id, user_id, timestamp)
            with SessionLocal() as other:
                other.add(LastRead(channel_id=channel_id, user_id=user_id, last_read=winner))
                other.commit()
            # The row was absent when this session looked
            db.add(LastRead(channel_id=channel_id, user_id=user_id, last_read=timestamp))

        monkeypatch.setattr(last_read, "_upsert", racing_upsert)

        assert checkout_last_read(seeded, GROUP_ID, BOB) == winner
        assert len(calls) == 2
        seeded.expire_all()
        assert get_last_read(seeded, GROUP_ID, BOB) > winner


class TestTyping:
    """Test typing indicators."""

    def test_typing_publishes_profile(self, client, seeded, broker):
        response = client.post(f"/channels/{GROUP_ID}/typing", headers=as_user(BOB))

        assert response.status_code == 204
        assert broker.events("typing") == [
            ([f"chat:{GROUP_ID}"], {"user": {"id": BOB, "name": "Bob", "image": None}})
        ]

    def test_typing_outsider_forbidden(self, client, seeded, broker):
        response = client.post(f"/channels/{DM_ID}/typing", headers=as_user(CAROL))

        assert response.status_code == 403
        assert broker.published == []

    def test_typing_without_identity(self, client, seeded):
        assert client.post(f"/channels/{GROUP_ID}/typing").status_code == 401
