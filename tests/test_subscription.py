"""
Tests for real-time subscriptions.

Tests cover:
- The websocket endpoint (membership check, event delivery)
- SubscriptionBridge over an in-process ChangeFeed
- Catch-up pulls and subscription replacement
- Reconnect catch-up for the websocket source
"""

import asyncio
import threading

import httpx
import pytest
import websockets
from fastapi.websockets import WebSocketDisconnect

from chatsync.changefeed import ChangeFeed, change_feed
from chatsync.local_cache import LocalMessageCache
from chatsync.local_models import SYNC_SYNCED
from chatsync.main import app
from chatsync.schemas import ChangeEvent, MessageRecord
from chatsync.subscription import FeedChangeSource, SubscriptionBridge, WebSocketChangeSource
from chatsync.sync_engine import RetryPolicy, SyncEngine
from chatsync.transport import CallOutcome, HttpIngestionTransport

from conftest import ALICE, BOB, MALLORY, headers, send_body

T0 = 1_700_000_000_000


class PullOnlyTransport:
    def __init__(self, records=()):
        self.records = list(records)
        self.fetches = []

    async def fetch_messages_since(self, scope, conversation_id, since=0, limit=100):
        self.fetches.append(since)
        data = [r for r in self.records if r["server_received_at"] > since]
        cursor = data[-1]["server_received_at"] if data else None
        return CallOutcome(ok=True, data={"data": data, "cursor": cursor})


def record(message_id, at=T0 + 100, **overrides):
    data = {
        "id": message_id,
        "conversation_id": "chat_ab",
        "scope": "dm",
        "sender_id": BOB,
        "kind": "text",
        "text": f"text {message_id}",
        "created_at": at,
        "server_received_at": at,
    }
    data.update(overrides)
    return data


def event(message_id, change_type="message.created", **overrides):
    return ChangeEvent(type=change_type, message=MessageRecord(**record(message_id, **overrides)), emitted_at=T0)


@pytest.fixture
def cache():
    store = LocalMessageCache("sqlite://")
    yield store
    store.close()


@pytest.fixture
def feed():
    return ChangeFeed()


@pytest.fixture
def engine(cache):
    return SyncEngine(cache, PullOnlyTransport(), "device-1", policy=RetryPolicy(jitter=0))


class TestWebSocketEndpoint:
    """Test WS /conversations/{scope}/{id}/subscribe."""

    def test_member_receives_new_messages(self, client, dm):
        url = f"/conversations/{dm[0]}/{dm[1]}/subscribe?user_id={ALICE}"
        with client.websocket_connect(url) as ws:
            response = client.post("/messages", json=send_body(dm, text="ping", message_id="m1"), headers=headers(BOB))
            assert response.status_code == 200

            data = ws.receive_json()

        assert data["type"] == "message.created"
        assert data["message"]["id"] == "m1"
        assert data["message"]["text"] == "ping"

    def test_edits_are_pushed(self, client, dm):
        client.post("/messages", json=send_body(dm, text="v1", message_id="m1"), headers=headers(BOB))
        url = f"/conversations/{dm[0]}/{dm[1]}/subscribe?user_id={ALICE}"
        with client.websocket_connect(url) as ws:
            body = {"scope": dm[0], "conversation_id": dm[1], "message_id": "m1", "new_text": "v2"}
            assert client.post("/messages/edit", json=body, headers=headers(BOB)).status_code == 200

            data = ws.receive_json()

        assert data["type"] == "message.edited"
        assert data["message"]["text"] == "v2"

    def test_non_member_is_refused(self, client, dm):
        url = f"/conversations/{dm[0]}/{dm[1]}/subscribe?user_id={MALLORY}"

        with pytest.raises(WebSocketDisconnect) as exc_info:
            with client.websocket_connect(url) as ws:
                ws.receive_json()

        assert exc_info.value.code == 4403

    def test_disconnect_removes_feed_subscriber(self, client, dm):
        url = f"/conversations/{dm[0]}/{dm[1]}/subscribe?user_id={ALICE}"
        with client.websocket_connect(url) as ws:
            client.post("/messages", json=send_body(dm, message_id="m1"), headers=headers(BOB))
            ws.receive_json()
            assert change_feed.subscriber_count(*dm) == 1

        # The server side notices the close asynchronously
        for _ in range(50):
            if change_feed.subscriber_count(*dm) == 0:
                break
            client.get("/health/live")
        assert change_feed.subscriber_count(*dm) == 0


class TestSubscriptionBridge:
    """Test the bridge over an in-process feed."""

    @pytest.mark.asyncio
    async def test_events_are_applied_to_cache(self, engine, cache, feed):
        bridge = SubscriptionBridge(engine, FeedChangeSource(feed))
        await bridge.subscribe("dm", "chat_ab")

        feed.publish(event("r1"))
        await bridge.wait_idle()

        assert cache.get("r1").sync_status == SYNC_SYNCED
        assert cache.get_cursor("dm", "chat_ab") == T0 + 100
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_events_from_another_thread(self, engine, cache, feed):
        bridge = SubscriptionBridge(engine, FeedChangeSource(feed))
        await bridge.subscribe("dm", "chat_ab")

        publisher = threading.Thread(target=feed.publish, args=(event("r1"),))
        publisher.start()
        publisher.join()
        await bridge.wait_idle()

        assert cache.get("r1") is not None
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_duplicate_events_are_no_ops(self, engine, cache, feed):
        bridge = SubscriptionBridge(engine, FeedChangeSource(feed))
        await bridge.subscribe("dm", "chat_ab")

        feed.publish(event("r1"))
        feed.publish(event("r1"))
        feed.publish(event("r1", change_type="reactions.updated", reactions_summary={"👍": 1}))
        feed.publish(event("r1", change_type="reactions.updated", reactions_summary={"👍": 1}))
        await bridge.wait_idle()

        assert len(cache.list_for_conversation("chat_ab", "dm")) == 1
        assert cache.get("r1").reactions_summary == {"👍": 1}
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_redelivered_create_keeps_newer_reactions(self, engine, cache, feed):
        bridge = SubscriptionBridge(engine, FeedChangeSource(feed))
        await bridge.subscribe("dm", "chat_ab")

        feed.publish(event("r1"))
        feed.publish(event("r1", change_type="reactions.updated", reactions_summary={"👍": 1}))
        feed.publish(event("r1"))
        await bridge.wait_idle()

        assert cache.get("r1").reactions_summary == {"👍": 1}
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_resubscribe_replaces_existing(self, engine, feed):
        bridge = SubscriptionBridge(engine, FeedChangeSource(feed))

        await bridge.subscribe("dm", "chat_ab")
        await bridge.subscribe("dm", "chat_ab")

        assert bridge.subscription_count() == 1
        assert feed.subscriber_count("dm", "chat_ab") == 1
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_unsubscribe_stops_delivery(self, engine, cache, feed):
        bridge = SubscriptionBridge(engine, FeedChangeSource(feed))
        await bridge.subscribe("dm", "chat_ab")
        await bridge.subscribe("group", "team_room")

        assert bridge.unsubscribe("dm", "chat_ab") is True
        assert bridge.unsubscribe("dm", "chat_ab") is False
        feed.publish(event("r1"))
        await bridge.wait_idle()

        assert cache.get("r1") is None
        assert bridge.has_subscription("group", "team_room")
        bridge.unsubscribe_all()
        assert bridge.subscription_count() == 0
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_catch_up_pulls_before_subscribing(self, cache, feed):
        transport = PullOnlyTransport([record("old1", at=T0 + 10), record("old2", at=T0 + 20)])
        engine = SyncEngine(cache, transport, "device-1", policy=RetryPolicy(jitter=0))
        bridge = SubscriptionBridge(engine, FeedChangeSource(feed))

        await bridge.subscribe("dm", "chat_ab", catch_up=True)

        assert transport.fetches[0] == 0
        assert [m.id for m in cache.list_for_conversation("chat_ab", "dm")] == ["old1", "old2"]
        assert cache.get_cursor("dm", "chat_ab") == T0 + 20
        await bridge.stop()

    @pytest.mark.asyncio
    async def test_stop_unsubscribes_everything(self, engine, feed):
        bridge = SubscriptionBridge(engine, FeedChangeSource(feed))
        await bridge.subscribe("dm", "chat_ab")

        await bridge.stop()

        assert bridge.is_running is False
        assert feed.subscriber_count("dm", "chat_ab") == 0


class TestEndToEnd:
    """Another member's send reaches the local cache through the server feed."""

    @pytest.mark.asyncio
    async def test_remote_send_reaches_subscriber_cache(self, dm):
        cache = LocalMessageCache("sqlite://")
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://testserver") as http:
            engine = SyncEngine(cache, HttpIngestionTransport(ALICE, client=http), "device-1")
            bridge = SubscriptionBridge(engine, FeedChangeSource(change_feed))
            await bridge.subscribe(dm[0], dm[1], catch_up=True)

            bob = HttpIngestionTransport(BOB, client=http)
            outcome = await bob.send_message(send_body(dm, text="hello alice", message_id="b1"))
            assert outcome.ok is True
            await bridge.wait_idle()

            local = cache.get("b1")
            assert local is not None
            assert local.text == "hello alice"
            assert local.sync_status == SYNC_SYNCED
            await bridge.stop()
        cache.close()


class TestWebSocketChangeSource:
    def test_url_mapping(self):
        source = WebSocketChangeSource(ALICE, base_url="https://chat.example/")

        assert source.url_for("dm", "chat_ab") == f"wss://chat.example/conversations/dm/chat_ab/subscribe?user_id={ALICE}"

    def test_plain_http_maps_to_ws(self):
        source = WebSocketChangeSource(ALICE, base_url="http://localhost:8000")

        assert source.ws_base == "ws://localhost:8000"

    @pytest.mark.asyncio
    async def test_reconnect_runs_catch_up_before_reading(self):
        connections = []
        catch_ups = []
        received = []
        delivered = asyncio.Event()

        async def handler(ws):
            connections.append(ws)
            if len(connections) == 1:
                # Drop the first connection as a server restart would
                await ws.close(code=1011)
                return
            await ws.send(event("r1").model_dump_json())
            await ws.wait_closed()

        async def on_reconnect():
            catch_ups.append(True)

        def on_event(change):
            received.append((change.message.id, len(catch_ups)))
            delivered.set()

        async with websockets.serve(handler, "127.0.0.1", 0) as server:
            port = next(iter(server.sockets)).getsockname()[1]
            source = WebSocketChangeSource(ALICE, base_url=f"http://127.0.0.1:{port}", reconnect_delay=0.01)
            unsubscribe = source.subscribe("dm", "chat_ab", 0, on_event, on_reconnect=on_reconnect)
            await asyncio.wait_for(delivered.wait(), timeout=5)
            unsubscribe()
            # Let the cancelled listener close its connection
            await asyncio.sleep(0.05)

        assert len(connections) == 2
        # The catch-up ran once, after the reconnect and before the first frame
        assert received == [("r1", 1)]


class ReconnectingSource:
    """Records the catch-up hook so a test can simulate a reconnect."""

    def __init__(self):
        self.hooks = {}

    def subscribe(self, scope, conversation_id, since, on_event, on_reconnect=None):
        self.hooks[(scope, conversation_id)] = on_reconnect
        return lambda: self.hooks.pop((scope, conversation_id), None)


class TestReconnectCatchUp:
    @pytest.mark.asyncio
    async def test_bridge_pulls_missed_messages_on_reconnect(self, cache):
        transport = PullOnlyTransport()
        engine = SyncEngine(cache, transport, "device-1", policy=RetryPolicy(jitter=0))
        source = ReconnectingSource()
        bridge = SubscriptionBridge(engine, source)
        await bridge.subscribe("dm", "chat_ab")

        # Published while the connection was down
        transport.records.append(record("missed", at=T0 + 50))
        await source.hooks[("dm", "chat_ab")]()

        assert transport.fetches == [0]
        assert cache.get("missed").sync_status == SYNC_SYNCED
        assert cache.get_cursor("dm", "chat_ab") == T0 + 50
        await bridge.stop()
