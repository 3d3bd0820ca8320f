"""
Tests for POST /messages and the send path of the ingestion service.

Tests cover:
- Message creation with server-assigned receipt time
- Idempotency (sequential and concurrent duplicates)
- Validation errors (400 invalid-argument)
- Membership, DM blocks and missing identity
- Send rate limit boundary and window reset
- Conversation preview maintenance
"""

import threading

import pytest

from chatsync import ingestion
from chatsync.errors import ResourceExhaustedError
from chatsync.schemas import SendMessageRequest
from chatsync.storage import SessionLocal

from conftest import (
    ALICE,
    BOB,
    CAROL,
    MALLORY,
    count_messages,
    fetch_message,
    headers,
    seed_block,
    send_body,
)


class TestSendMessageCreated:
    """Test successful message creation."""

    def test_create_message_success(self, client, dm):
        """A new message is stored and returned with is_existing=false."""
        body = send_body(dm, text="Hello Bob", message_id="m1")
        response = client.post("/messages", json=body, headers=headers(ALICE))

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["is_existing"] is False
        message = data["message"]
        assert message["id"] == "m1"
        assert message["sender_id"] == ALICE
        assert message["text"] == "Hello Bob"
        assert message["server_received_at"] > 0
        assert message["reactions_summary"] == {}
        assert message["idempotency_key"] == "device-1:m1"

    def test_client_timestamp_is_advisory(self, client, dm):
        """created_at is kept as declared; server_received_at is assigned by the server."""
        body = send_body(dm, message_id="m1", created_at=1000)
        response = client.post("/messages", json=body, headers=headers(ALICE))

        message = response.json()["message"]
        assert message["created_at"] == 1000
        assert message["server_received_at"] != 1000

    def test_group_message_snapshots_sender_name(self, client, group):
        """Group messages carry the sender's display name at send time."""
        response = client.post("/messages", json=send_body(group, message_id="g1"), headers=headers(ALICE))

        assert response.status_code == 200
        assert response.json()["message"]["sender_name"] == "Alice"

    def test_dm_message_has_no_sender_name(self, client, dm):
        response = client.post("/messages", json=send_body(dm, message_id="m1"), headers=headers(ALICE))

        assert response.json()["message"]["sender_name"] is None

    def test_media_message_without_text(self, client, dm):
        """Non-text kinds do not need a body."""
        body = send_body(dm, message_id="m1", kind="media", text=None, attachments=[
            {"id": "a1", "kind": "image", "mime": "image/jpeg", "url": "https://cdn.example/a1.jpg"},
        ])
        response = client.post("/messages", json=body, headers=headers(ALICE))

        assert response.status_code == 200
        assert response.json()["message"]["attachments"][0]["id"] == "a1"

    def test_response_includes_request_id_header(self, client, dm):
        response = client.post("/messages", json=send_body(dm), headers=headers(ALICE))

        assert "X-Request-ID" in response.headers


class TestSendMessageIdempotency:
    """Test that a message id is stored exactly once."""

    def test_duplicate_message_idempotent(self, client, dm):
        """The second send returns the stored record with is_existing=true."""
        body = send_body(dm, text="Hello", message_id="m1")
        first = client.post("/messages", json=body, headers=headers(ALICE))
        second = client.post("/messages", json=body, headers=headers(ALICE))

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["is_existing"] is True
        assert second.json()["message"] == first.json()["message"]
        assert count_messages(*dm) == 1

    def test_duplicate_with_different_body_keeps_original(self, client, dm):
        """The id alone decides; a retried send never overwrites the stored content."""
        client.post("/messages", json=send_body(dm, text="first", message_id="m1"), headers=headers(ALICE))
        response = client.post("/messages", json=send_body(dm, text="second", message_id="m1"), headers=headers(ALICE))

        assert response.json()["is_existing"] is True
        assert response.json()["message"]["text"] == "first"

    def test_same_id_in_another_conversation_is_distinct(self, client, dm, group):
        """Ids are unique per conversation collection."""
        client.post("/messages", json=send_body(dm, message_id="m1"), headers=headers(ALICE))
        response = client.post("/messages", json=send_body(group, message_id="m1"), headers=headers(ALICE))

        assert response.json()["is_existing"] is False

    def test_concurrent_duplicates_store_one_message(self, client, dm):
        """Racing sends of the same id produce one row and one is_existing=false."""
        request = SendMessageRequest(**send_body(dm, text="race", message_id="race-1"))
        results = []
        errors = []

        def worker():
            db = SessionLocal()
            try:
                results.append(ingestion.send_message(db, ALICE, request))
            except Exception as e:
                errors.append(e)
            finally:
                db.close()

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(results) == 4
        assert sum(1 for r in results if not r.is_existing) == 1
        assert {r.message.text for r in results} == {"race"}
        assert count_messages(*dm) == 1


class TestSendMessageValidation:
    """Test boundary validation errors."""

    @pytest.mark.parametrize("overrides", [
        {"text": "   "},
        {"text": "x" * 10001},
        {"message_id": ""},
        {"message_id": "x" * 101},
        {"kind": "sticker"},
        {"scope": "channel"},
        {"mention_uids": ["a", "b", "c", "d", "e", "f"]},
    ])
    def test_invalid_fields(self, client, dm, overrides):
        response = client.post("/messages", json=send_body(dm, **overrides), headers=headers(ALICE))

        assert response.status_code == 400
        assert response.json()["code"] == "invalid-argument"

    def test_missing_message_id(self, client, dm):
        body = send_body(dm)
        del body["message_id"]
        response = client.post("/messages", json=body, headers=headers(ALICE))

        assert response.status_code == 400
        assert "message_id" in response.json()["detail"]

    def test_too_many_attachments(self, client, dm):
        attachments = [
            {"id": f"a{i}", "kind": "image", "mime": "image/png", "url": f"https://cdn.example/{i}.png"}
            for i in range(11)
        ]
        body = send_body(dm, kind="media", text=None, attachments=attachments)
        response = client.post("/messages", json=body, headers=headers(ALICE))

        assert response.status_code == 400

    def test_missing_identity(self, client, dm):
        """No X-User-Id header means the caller is unauthenticated."""
        response = client.post("/messages", json=send_body(dm))

        assert response.status_code == 401
        assert response.json()["code"] == "unauthenticated"


class TestSendMessageAuthorization:
    """Test membership and block checks."""

    def test_non_member_rejected(self, client, dm):
        response = client.post("/messages", json=send_body(dm, message_id="m1"), headers=headers(MALLORY))

        assert response.status_code == 403
        assert response.json()["code"] == "permission-denied"
        assert fetch_message(*dm, "m1") is None

    def test_unknown_conversation_rejected(self, client):
        body = send_body(("group", "nowhere"))
        response = client.post("/messages", json=body, headers=headers(ALICE))

        assert response.status_code == 403

    def test_blocked_by_recipient(self, client, dm):
        """A DM is refused when the other participant blocked the sender."""
        seed_block(BOB, ALICE)
        response = client.post("/messages", json=send_body(dm), headers=headers(ALICE))

        assert response.status_code == 403
        assert response.json()["detail"] == "Cannot send message to this user"

    def test_sender_blocked_recipient(self, client, dm):
        """Blocks apply in both directions."""
        seed_block(ALICE, BOB)
        response = client.post("/messages", json=send_body(dm), headers=headers(ALICE))

        assert response.status_code == 403

    def test_blocks_do_not_apply_to_groups(self, client, group):
        seed_block(CAROL, ALICE)
        response = client.post("/messages", json=send_body(group), headers=headers(ALICE))

        assert response.status_code == 200


class TestSendRateLimit:
    """Test the per-user send budget."""

    def test_31st_send_in_window_rejected(self, client, dm):
        for i in range(30):
            response = client.post("/messages", json=send_body(dm, message_id=f"m{i}"), headers=headers(ALICE))
            assert response.status_code == 200

        response = client.post("/messages", json=send_body(dm, message_id="m30"), headers=headers(ALICE))

        assert response.status_code == 429
        assert response.json()["code"] == "resource-exhausted"
        assert fetch_message(*dm, "m30") is None

    def test_budget_is_per_user(self, client, dm):
        for i in range(30):
            client.post("/messages", json=send_body(dm, message_id=f"a{i}"), headers=headers(ALICE))

        response = client.post("/messages", json=send_body(dm, message_id="b0"), headers=headers(BOB))

        assert response.status_code == 200

    def test_window_reset_allows_send(self, client, dm):
        """After the window elapses the next send succeeds and starts a fresh count."""
        from chatsync.models import RateLimitWindow

        start = 1_700_000_000_000
        db = SessionLocal()
        try:
            for i in range(30):
                ingestion.send_message(db, ALICE, SendMessageRequest(**send_body(dm, message_id=f"m{i}")), now=start + i)

            with pytest.raises(ResourceExhaustedError) as exc_info:
                ingestion.send_message(db, ALICE, SendMessageRequest(**send_body(dm, message_id="late")), now=start + 59_999)
            assert exc_info.value.code == "resource-exhausted"

            result = ingestion.send_message(
                db, ALICE, SendMessageRequest(**send_body(dm, message_id="next")), now=start + 60_000,
            )
            assert result.is_existing is False

            window = db.get(RateLimitWindow, (ALICE, "messages"))
            assert window.count == 1
            assert window.window_start == start + 60_000
            db.commit()
        finally:
            db.close()

    def test_duplicate_send_still_counts_against_budget(self, client, dm):
        """The rate limit is evaluated before the idempotent short-circuit."""
        body = send_body(dm, message_id="same")
        for _ in range(30):
            client.post("/messages", json=body, headers=headers(ALICE))

        response = client.post("/messages", json=body, headers=headers(ALICE))

        assert response.status_code == 429


class TestConversationPreview:
    """Test the denormalized last-message preview."""

    def test_preview_points_at_latest_message(self, client, dm):
        client.post("/messages", json=send_body(dm, text="first", message_id="m1"), headers=headers(ALICE))
        client.post("/messages", json=send_body(dm, text="second", message_id="m2"), headers=headers(BOB))

        response = client.get(f"/conversations/{dm[0]}/{dm[1]}", headers=headers(ALICE))

        assert response.status_code == 200
        data = response.json()
        assert data["members"] == [ALICE, BOB]
        assert data["last_message_id"] == "m2"
        assert data["last_message_text"] == "second"
        assert data["last_message_sender_id"] == BOB

    def test_preview_truncates_long_text(self, client, dm):
        client.post("/messages", json=send_body(dm, text="y" * 80), headers=headers(ALICE))

        data = client.get(f"/conversations/{dm[0]}/{dm[1]}", headers=headers(ALICE)).json()

        assert data["last_message_text"] == "y" * 50 + "..."

    def test_preview_failure_does_not_fail_send(self, client, dm, monkeypatch):
        """The message is stored even when the preview update raises."""
        def broken_preview(db, message):
            raise RuntimeError("preview store unavailable")

        monkeypatch.setattr(ingestion, "update_conversation_preview", broken_preview)
        response = client.post("/messages", json=send_body(dm, message_id="m1"), headers=headers(ALICE))

        assert response.status_code == 200
        assert fetch_message(*dm, "m1") is not None
        data = client.get(f"/conversations/{dm[0]}/{dm[1]}", headers=headers(ALICE)).json()
        assert data["last_message_id"] is None

    def test_non_member_cannot_read_conversation(self, client, dm):
        response = client.get(f"/conversations/{dm[0]}/{dm[1]}", headers=headers(MALLORY))

        assert response.status_code == 403


class TestCreateConversation:
    """Test explicit conversation creation."""

    def test_create_group(self, client):
        body = {
            "conversation_id": "new_group",
            "scope": "group",
            "members": [{"user_id": CAROL, "role": "owner"}, {"user_id": ALICE}],
        }
        response = client.post("/conversations", json=body)

        assert response.status_code == 200
        assert response.json()["members"] == [ALICE, CAROL]

    def test_create_is_idempotent(self, client):
        body = {"conversation_id": "x", "scope": "dm", "members": [{"user_id": ALICE}, {"user_id": BOB}]}
        client.post("/conversations", json=body)
        response = client.post("/conversations", json=body)

        assert response.status_code == 200
        assert response.json()["id"] == "x"

    def test_dm_needs_two_members(self, client):
        body = {"conversation_id": "x", "scope": "dm", "members": [{"user_id": ALICE}]}
        response = client.post("/conversations", json=body)

        assert response.status_code == 400

