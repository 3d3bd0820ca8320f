"""
In-process change feed for conversation collections.

The ingestion service publishes a ChangeEvent after each committed write;
subscribers (the websocket endpoint, or an in-process Subscription Bridge)
receive every event for the conversation they subscribed to. Callbacks run
on the publishing thread and must not block.
"""

import logging
import threading
from collections import defaultdict
from typing import Callable, Dict, List, Tuple

from chatsync.schemas import ChangeEvent

logger = logging.getLogger(__name__)

Callback = Callable[[ChangeEvent], None]


class ChangeFeed:
    """Thread-safe per-conversation publish/subscribe."""

    def __init__(self):
        self._lock = threading.Lock()
        self._subscribers: Dict[Tuple[str, str], List[Callback]] = defaultdict(list)

    def subscribe(self, scope: str, conversation_id: str, callback: Callback) -> Callable[[], None]:
        """
        Register a callback for one conversation.

        Returns:
            A function that removes the subscription; calling it twice is harmless.
        """
        key = (scope, conversation_id)
        with self._lock:
            self._subscribers[key].append(callback)
        logger.debug(f"Subscribed to {scope}/{conversation_id}")

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(key)
                if callbacks and callback in callbacks:
                    callbacks.remove(callback)
                    if not callbacks:
                        del self._subscribers[key]

        return unsubscribe

    def publish(self, event: ChangeEvent) -> int:
        """
        Deliver an event to every subscriber of its conversation.

        A failing subscriber is logged and skipped so one bad consumer cannot
        starve the others.

        Returns:
            Number of subscribers the event was delivered to
        """
        key = (event.message.scope, event.message.conversation_id)
        with self._lock:
            callbacks = list(self._subscribers.get(key, ()))

        delivered = 0
        for callback in callbacks:
            try:
                callback(event)
                delivered += 1
            except Exception as e:
                logger.error(f"Change subscriber failed for {key[0]}/{key[1]}: {e}")
        return delivered

    def subscriber_count(self, scope: str, conversation_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get((scope, conversation_id), ()))


# Global change feed shared by the API routes
change_feed = ChangeFeed()
