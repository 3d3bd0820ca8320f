"""
Subscription bridge: real-time change events into the local cache.

A ChangeSource delivers ChangeEvents for one conversation, from any thread.
The bridge hands them to the event loop through an asyncio.Queue and a single
consumer task applies them via SyncEngine.apply_remote_event, so delivery never
blocks the flush loop and events of one conversation are applied in order.
"""

import asyncio
import contextlib
import logging
from typing import Awaitable, Callable, Dict, Optional, Protocol, Tuple

import websockets
from pydantic import ValidationError

from chatsync.changefeed import ChangeFeed
from chatsync.config import settings
from chatsync.schemas import ChangeEvent
from chatsync.utils import short_id

logger = logging.getLogger(__name__)

EventHandler = Callable[[ChangeEvent], None]
Unsubscribe = Callable[[], None]
CatchUp = Callable[[], Awaitable[object]]

# Close code the server uses to refuse non-members
CLOSE_NOT_A_MEMBER = 4403


class ChangeSource(Protocol):
    def subscribe(
        self,
        scope: str,
        conversation_id: str,
        since: int,
        on_event: EventHandler,
        on_reconnect: Optional[CatchUp] = None,
    ) -> Unsubscribe:
        ...


class FeedChangeSource:
    """Subscribe directly to an in-process ChangeFeed."""

    def __init__(self, feed: ChangeFeed):
        self.feed = feed

    def subscribe(
        self,
        scope: str,
        conversation_id: str,
        since: int,
        on_event: EventHandler,
        on_reconnect: Optional[CatchUp] = None,
    ) -> Unsubscribe:
        # The feed never disconnects and only carries events published after this call
        return self.feed.subscribe(scope, conversation_id, on_event)


class WebSocketChangeSource:
    """
    Consume the ingestion service's websocket subscription endpoint.

    Each subscription runs its own listener task that reconnects after
    `reconnect_delay` seconds whenever the connection drops. Events published
    while disconnected are not replayed by the server, so every reconnect
    awaits `on_reconnect` (a catch-up pull) before reading frames again. A
    refused handshake or a non-member close ends the listener.
    """

    def __init__(self, user_id: str, base_url: Optional[str] = None, reconnect_delay: float = 2.0):
        base = (base_url or settings.INGESTION_BASE_URL).rstrip("/")
        if base.startswith("https://"):
            base = "wss://" + base[len("https://"):]
        elif base.startswith("http://"):
            base = "ws://" + base[len("http://"):]
        self.ws_base = base
        self.user_id = user_id
        self.reconnect_delay = reconnect_delay

    def url_for(self, scope: str, conversation_id: str) -> str:
        return f"{self.ws_base}/conversations/{scope}/{conversation_id}/subscribe?user_id={self.user_id}"

    def subscribe(
        self,
        scope: str,
        conversation_id: str,
        since: int,
        on_event: EventHandler,
        on_reconnect: Optional[CatchUp] = None,
    ) -> Unsubscribe:
        task = asyncio.get_running_loop().create_task(
            self._listen(self.url_for(scope, conversation_id), on_event, on_reconnect)
        )
        return task.cancel

    async def _listen(self, url: str, on_event: EventHandler, on_reconnect: Optional[CatchUp] = None) -> None:
        connected_before = False
        while True:
            try:
                async with websockets.connect(url) as ws:
                    logger.info(f"Subscription connected: {url}")
                    if connected_before and on_reconnect is not None:
                        await self._catch_up(url, on_reconnect)
                    connected_before = True
                    async for frame in ws:
                        try:
                            event = ChangeEvent.model_validate_json(frame)
                        except ValidationError as e:
                            logger.warning(f"Dropping malformed change event: {e}")
                            continue
                        on_event(event)
            except websockets.exceptions.InvalidHandshake as e:
                logger.error(f"Subscription refused for {url}: {e}")
                return
            except websockets.exceptions.ConnectionClosed as e:
                if e.rcvd is not None and e.rcvd.code == CLOSE_NOT_A_MEMBER:
                    logger.error(f"Subscription closed by server for {url}: not a member")
                    return
                logger.warning(f"Subscription dropped for {url}: {e}")
            except OSError as e:
                logger.warning(f"Subscription connect failed for {url}: {e}")
            await asyncio.sleep(self.reconnect_delay)

    async def _catch_up(self, url: str, on_reconnect: CatchUp) -> None:
        try:
            await on_reconnect()
        except Exception as e:
            logger.error(f"Catch-up after reconnect failed for {url}: {e}")


class SubscriptionBridge:
    """
    Per-conversation subscriptions feeding a SyncEngine.

    At most one subscription exists per conversation; subscribing again
    replaces the previous one.
    """

    def __init__(self, engine, source: ChangeSource):
        self.engine = engine
        self.source = source
        self._subscriptions: Dict[Tuple[str, str], Unsubscribe] = {}
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._consumer: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._consumer is not None and not self._consumer.done()

    def start(self) -> None:
        if self.is_running:
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._consumer = self._loop.create_task(self._consume())
        logger.info("Subscription bridge started")

    async def stop(self) -> None:
        self.unsubscribe_all()
        consumer, self._consumer = self._consumer, None
        if consumer is not None:
            consumer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await consumer
        logger.info("Subscription bridge stopped")

    async def subscribe(self, scope: str, conversation_id: str, catch_up: bool = False) -> None:
        """
        Start receiving changes for a conversation.

        With catch_up=True, everything after the local cursor is pulled first.
        """
        self.start()
        key = (scope, conversation_id)
        self.unsubscribe(scope, conversation_id)

        if catch_up:
            await self.engine.pull_conversation(scope, conversation_id)
            # Another subscribe may have registered while the pull was running
            self.unsubscribe(scope, conversation_id)

        since = self.engine.cache.get_cursor(scope, conversation_id)
        self._subscriptions[key] = self.source.subscribe(
            scope,
            conversation_id,
            since,
            self._enqueue,
            on_reconnect=lambda: self.engine.pull_conversation(scope, conversation_id),
        )
        logger.info(f"Subscribed to {scope}/{short_id(conversation_id)} since={since}")

    def unsubscribe(self, scope: str, conversation_id: str) -> bool:
        unsubscribe = self._subscriptions.pop((scope, conversation_id), None)
        if unsubscribe is None:
            return False
        unsubscribe()
        logger.debug(f"Unsubscribed from {scope}/{short_id(conversation_id)}")
        return True

    def unsubscribe_all(self) -> None:
        for scope, conversation_id in list(self._subscriptions):
            self.unsubscribe(scope, conversation_id)

    def has_subscription(self, scope: str, conversation_id: str) -> bool:
        return (scope, conversation_id) in self._subscriptions

    def subscription_count(self) -> int:
        return len(self._subscriptions)

    async def wait_idle(self) -> None:
        """Wait until every event received so far has been applied."""
        # Let pending call_soon_threadsafe hand-offs reach the queue first
        await asyncio.sleep(0)
        if self._queue is not None:
            await self._queue.join()

    def _enqueue(self, event: ChangeEvent) -> None:
        # May be called from a publisher thread
        self._loop.call_soon_threadsafe(self._queue.put_nowait, event)

    async def _consume(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                self.engine.apply_remote_event(event)
            except Exception as e:
                logger.error(f"Failed to apply {event.type} for {short_id(event.message.id)}: {e}")
            finally:
                self._queue.task_done()
