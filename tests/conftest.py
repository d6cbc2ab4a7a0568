"""
Pytest configuration and shared fixtures.

Environment variables must be set before chat_engine is imported: settings,
the engine and logging are all configured at import time.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_chat_engine.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("BOT_MENTION_TRIGGER", "@Shark")

import pytest
from fastapi.testclient import TestClient

# Clear settings cache before any app imports to ensure test env vars are used
from chat_engine.config import get_settings
get_settings.cache_clear()

from chat_engine.main import app, get_broker
from chat_engine.models import DirectMessageInfo, Group, GroupMember, MessageChannel, User
from chat_engine.notifier import get_bot_notifier
from chat_engine.pubsub import reset_event_bus
from chat_engine.storage import Base, SessionLocal, engine

from tests.helpers import (
    ALICE,
    BOB,
    CAROL,
    DAVE,
    DM_ID,
    GROUP_ID,
    RecordingBroker,
    RecordingNotifier,
)


@pytest.fixture
def broker():
    return RecordingBroker()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture(scope="function")
def client(broker, notifier):
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)
    reset_event_bus()
    app.dependency_overrides[get_broker] = lambda: broker
    app.dependency_overrides[get_bot_notifier] = lambda: notifier

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(client):
    """Session on the same database the client uses."""
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture
def seeded(db):
    """
    Users alice, bob, carol and dave.

    - group "general": owned by alice, bob is a member, carol is not
    - DM "dm-alice-bob": started by alice towards bob, not yet open
    """
    db.add_all([
        User(id=ALICE, name="Alice", image="https://img.example/alice.png"),
        User(id=BOB, name="Bob", image=None),
        User(id=CAROL, name="Carol", image=None),
        User(id=DAVE, name="Dave", image=None),
        MessageChannel(id=GROUP_ID),
        MessageChannel(id=DM_ID),
    ])
    db.flush()
    db.add_all([
        Group(channel_id=GROUP_ID, name="General", owner_id=ALICE),
        GroupMember(channel_id=GROUP_ID, user_id=BOB),
        DirectMessageInfo(channel_id=DM_ID, user_id=ALICE, to_user_id=BOB, open=False),
    ])
    db.commit()
    return db
