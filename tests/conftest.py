"""
Pytest configuration and shared fixtures.

Test environment variables are set here before any chatsync import so the
module-level settings, engine and session factory point at a scratch
SQLite file.
"""

import os
import tempfile

os.environ.setdefault(
    "DATABASE_URL",
    "sqlite:///" + os.path.join(tempfile.gettempdir(), f"chatsync_test_{os.getpid()}.db"),
)
os.environ.setdefault("LOG_LEVEL", "WARNING")

import uuid  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

# Clear settings cache before any app imports to ensure test env vars are used
from chatsync.config import get_settings  # noqa: E402
get_settings.cache_clear()

from chatsync import models  # noqa: E402,F401
from chatsync.main import app  # noqa: E402
from chatsync.storage import (  # noqa: E402
    Base,
    SessionLocal,
    block_user,
    create_conversation,
    engine,
    get_message,
    list_reactions,
    upsert_user_profile,
)

ALICE = "user_alice"
BOB = "user_bob"
CAROL = "user_carol"
DAVE = "user_dave"
MALLORY = "user_mallory"

DM = ("dm", "chat_ab")
GROUP = ("group", "team_room")


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    # Cleanup - drop all tables after test
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def dm(client):
    """A DM between alice and bob."""
    seed_conversation(DM[0], DM[1], [(ALICE, "member"), (BOB, "member")])
    return DM


@pytest.fixture
def group(client):
    """A group owned by carol with alice and bob as members and dave as moderator."""
    seed_conversation(GROUP[0], GROUP[1], [
        (CAROL, "owner"),
        (ALICE, "member"),
        (BOB, "member"),
        (DAVE, "moderator"),
    ])
    upsert_profile(ALICE, "Alice")
    return GROUP


# =============================================================================
# Seed helpers (short sessions, so no write lock outlives the call)
# =============================================================================

def seed_conversation(scope, conversation_id, members):
    with SessionLocal() as db:
        create_conversation(db, scope, conversation_id, members)


def seed_block(blocker_id, blocked_id):
    with SessionLocal() as db:
        block_user(db, blocker_id, blocked_id)


def upsert_profile(user_id, display_name):
    with SessionLocal() as db:
        upsert_user_profile(db, user_id, display_name)


def fetch_message(scope, conversation_id, message_id):
    with SessionLocal() as db:
        message = get_message(db, scope, conversation_id, message_id)
        db.commit()
    return message


def fetch_reactions(scope, conversation_id, message_id):
    with SessionLocal() as db:
        rows = list_reactions(db, scope, conversation_id, message_id)
        db.commit()
    return rows


def count_messages(scope, conversation_id):
    from sqlalchemy import func, select

    with SessionLocal() as db:
        total = db.execute(
            select(func.count()).select_from(models.Message).where(
                models.Message.scope == scope,
                models.Message.conversation_id == conversation_id,
            )
        ).scalar_one()
        db.commit()
    return total


def send_body(conversation, text="Hello", message_id=None, **extra):
    scope, conversation_id = conversation
    body = {
        "conversation_id": conversation_id,
        "scope": scope,
        "kind": "text",
        "text": text,
        "client_id": "device-1",
        "message_id": str(uuid.uuid4()) if message_id is None else message_id,
    }
    body.update(extra)
    return body


def headers(user_id):
    return {"X-User-Id": user_id}
