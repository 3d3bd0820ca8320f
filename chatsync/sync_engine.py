"""
Client sync engine: drains the local outbox to the ingestion service.

Every pending message ends up `synced` or `failed`, with at most one send in
flight per message id. Passes are triggered by a periodic timer, by regaining
connectivity, by the app returning to the foreground, and by new messages.
Only one pass runs at a time; a trigger that arrives mid-pass schedules exactly
one more pass after it.

Within a pass, conversations are flushed concurrently but each conversation
strictly in creation order. A retryable failure stops that conversation for
the rest of the pass, and later passes hold its newer messages back until the
failed one is due again, so nothing overtakes it.
"""

import asyncio
import contextlib
import itertools
import logging
import random
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from chatsync.config import settings
from chatsync.errors import ErrorKind
from chatsync.local_cache import LocalMessageCache
from chatsync.local_models import SYNC_FAILED, SYNC_PENDING, LocalMessage
from chatsync.metrics import record_outbox_counts, record_sync_attempt, sync_flush_duration_seconds
from chatsync.schemas import ChangeEvent, MessageRecord
from chatsync.transport import CallOutcome
from chatsync.utils import now_ms, short_id

logger = logging.getLogger(__name__)

PULL_PAGE_SIZE = 100

# Session tokens are unique per process so a restarted engine never matches
# a token captured before stop()
_session_tokens = itertools.count(1)


@dataclass
class RetryPolicy:
    """Exponential backoff with jitter: min(base * 2**n, cap) +/- jitter."""

    base_seconds: float = 2.0
    cap_seconds: float = 60.0
    max_retries: int = 5
    jitter: float = 0.1

    @classmethod
    def from_settings(cls) -> "RetryPolicy":
        return cls(
            base_seconds=settings.SYNC_BACKOFF_BASE_SECONDS,
            cap_seconds=settings.SYNC_BACKOFF_CAP_SECONDS,
            max_retries=settings.SYNC_MAX_RETRIES,
        )

    def delay_seconds(self, retry_count: int) -> float:
        delay = min(self.base_seconds * (2 ** retry_count), self.cap_seconds)
        return delay * (1 + random.uniform(-self.jitter, self.jitter))


@dataclass
class SyncStatus:
    is_online: bool
    is_syncing: bool
    last_sync_at: Optional[int]
    pending_count: int
    failed_count: int
    error: Optional[str] = None


@dataclass
class FlushReport:
    """What one flush() call did."""

    attempted: int = 0
    synced: int = 0
    retried: int = 0
    failed: int = 0
    passes: int = 0
    skipped: bool = False

    def add(self, outcome: str) -> None:
        self.attempted += 1
        if outcome in ("synced", "existing"):
            self.synced += 1
        elif outcome == "retry":
            self.retried += 1
        elif outcome == "failed":
            self.failed += 1

    def merge(self, other: "FlushReport") -> None:
        self.attempted += other.attempted
        self.synced += other.synced
        self.retried += other.retried
        self.failed += other.failed


StatusListener = Callable[[SyncStatus], None]


class SyncEngine:
    """
    Outbox flusher and inbound reconciler for one signed-in user.

    Passes never overlap, but inside a pass each conversation is flushed as
    its own concurrent sequence, so sends to different conversations can be
    in flight together. Order is only kept within a conversation.

    Args:
        cache: Local message cache
        transport: Ingestion client (HttpIngestionTransport or a compatible fake)
        client_id: Stable id of this device
        policy: Retry policy, defaults to the configured one
        interval_seconds: Periodic flush interval
        batch_size: Maximum messages considered per pass
        clock: Epoch-ms clock, injectable for tests
    """

    def __init__(
        self,
        cache: LocalMessageCache,
        transport,
        client_id: str,
        policy: Optional[RetryPolicy] = None,
        interval_seconds: Optional[float] = None,
        batch_size: Optional[int] = None,
        clock: Callable[[], int] = now_ms,
    ):
        self.cache = cache
        self.transport = transport
        self.client_id = client_id
        self.policy = policy or RetryPolicy.from_settings()
        self.interval_seconds = interval_seconds if interval_seconds is not None else settings.SYNC_INTERVAL_SECONDS
        self.batch_size = batch_size or settings.SYNC_BATCH_SIZE
        self._clock = clock

        self._session = next(_session_tokens)
        self._online = True
        self._is_syncing = False
        self._rerun = False
        self._in_flight: set = set()
        self._timer_task: Optional[asyncio.Task] = None
        self._flush_task: Optional[asyncio.Task] = None
        self._listeners: List[StatusListener] = []
        self._last_sync_at: Optional[int] = None
        self._last_error: Optional[str] = None

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the periodic timer and run an initial flush. Needs a running loop."""
        if self._timer_task is not None and not self._timer_task.done():
            return
        self._timer_task = asyncio.get_running_loop().create_task(self._run_timer())
        logger.info(f"Sync engine started (interval={self.interval_seconds}s)")
        self.request_flush("start")

    async def stop(self) -> None:
        """
        Stop the timer and invalidate the current session.

        A send already in flight is allowed to finish, but its result is
        discarded and the message stays pending.
        """
        self._session = next(_session_tokens)
        timer, self._timer_task = self._timer_task, None
        if timer is not None:
            timer.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await timer
        logger.info("Sync engine stopped")

    async def _run_timer(self) -> None:
        while True:
            await asyncio.sleep(self.interval_seconds)
            try:
                await self.flush()
            except Exception as e:
                logger.error(f"Periodic flush failed: {e}")

    # =========================================================================
    # Triggers
    # =========================================================================

    @property
    def is_online(self) -> bool:
        return self._online

    def set_online(self, online: bool) -> None:
        """
        Record a connectivity change.

        Coming back online clears every backoff delay and flushes right away.
        """
        was_online, self._online = self._online, online
        if online and not was_online:
            cleared = self.cache.clear_backoff()
            logger.info(f"Back online; cleared backoff on {cleared} messages")
            self.request_flush("online")
        elif not online and was_online:
            logger.info("Went offline; pausing sync")
        self._publish_status()

    def notify_foreground(self) -> None:
        self.request_flush("foreground")

    def request_flush(self, reason: str = "manual") -> Optional[asyncio.Task]:
        """
        Schedule a flush without waiting for it.

        Returns:
            The flush task, or None when no event loop is running
        """
        if self._flush_task is not None and not self._flush_task.done():
            self._rerun = True
            logger.debug(f"Flush requested ({reason}) while one is pending; coalesced")
            return self._flush_task
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug(f"Flush requested ({reason}) without a running loop; ignored")
            return None
        logger.debug(f"Flush requested ({reason})")
        self._flush_task = loop.create_task(self.flush())
        return self._flush_task

    async def wait_idle(self) -> None:
        """Wait until the most recently scheduled flush has finished."""
        while self._flush_task is not None and not self._flush_task.done():
            await self._flush_task

    def enqueue(
        self,
        conversation_id: str,
        scope: str,
        sender_id: str,
        kind: str = "text",
        text: Optional[str] = None,
        **fields,
    ) -> LocalMessage:
        """Write a message to the outbox and trigger a flush."""
        message = self.cache.insert(conversation_id, scope, sender_id, kind=kind, text=text, **fields)
        self._publish_status()
        if message.sync_status == SYNC_PENDING:
            self.request_flush("enqueue")
        return message

    # =========================================================================
    # Flush
    # =========================================================================

    async def flush(self) -> FlushReport:
        """
        Run flush passes until no further trigger arrived during the last one.

        A call made while a pass is running only marks the rerun flag.
        """
        if self._is_syncing:
            self._rerun = True
            return FlushReport(skipped=True)

        report = FlushReport()
        self._is_syncing = True
        self._publish_status()
        try:
            while True:
                self._rerun = False
                pass_report = await self._flush_pass()
                report.merge(pass_report)
                report.passes += 1
                report.skipped = pass_report.skipped
                if not self._rerun:
                    break
        finally:
            self._is_syncing = False
            self._publish_status()
        return report

    async def _flush_pass(self) -> FlushReport:
        report = FlushReport()
        if not self._online:
            report.skipped = True
            return report

        session = self._session
        with sync_flush_duration_seconds.time():
            return await self._run_pass(session, report)

    async def _run_pass(self, session: int, report: FlushReport) -> FlushReport:
        self.cache.fail_orphans()
        due = self.cache.list_due(self._clock(), limit=self.batch_size)
        if not due:
            self._last_sync_at = self._clock()
            return report

        groups: Dict[tuple, List[LocalMessage]] = OrderedDict()
        for message in due:
            groups.setdefault((message.scope, message.conversation_id), []).append(message)

        logger.info(f"Flushing {len(due)} messages across {len(groups)} conversations")
        results = await asyncio.gather(
            *(self._flush_conversation(messages, session) for messages in groups.values())
        )
        errors = []
        for conversation_report, error in results:
            report.merge(conversation_report)
            if error:
                errors.append(error)

        if session == self._session:
            self._last_sync_at = self._clock()
            self._last_error = errors[-1] if errors else None
        return report

    async def _flush_conversation(self, messages: List[LocalMessage], session: int):
        report = FlushReport()
        error = None
        for message in messages:
            if session != self._session or not self._online:
                break
            outcome, error_message = await self._send_one(message, session)
            if outcome in ("busy", "stale"):
                break
            report.add(outcome)
            if error_message:
                error = error_message
            if outcome == "retry":
                # Later messages must not overtake this one
                break
        return report, error

    async def _send_one(self, message: LocalMessage, session: int):
        if message.id in self._in_flight:
            return "busy", None

        self._in_flight.add(message.id)
        try:
            try:
                outcome = await self.transport.send_message(self._payload(message))
            except Exception as e:
                logger.error(f"Send of {short_id(message.id)} raised: {type(e).__name__}: {e}")
                outcome = CallOutcome.failure(ErrorKind.TRANSIENT, str(e) or type(e).__name__)

            if session != self._session:
                logger.info(f"Discarding stale send result for {short_id(message.id)}")
                record_sync_attempt("stale")
                return "stale", None
            return self._apply_send_outcome(message, outcome)
        finally:
            self._in_flight.discard(message.id)

    def _apply_send_outcome(self, message: LocalMessage, outcome: CallOutcome):
        if outcome.ok or outcome.error_kind == ErrorKind.CONFLICT:
            record = outcome.record
            if record is not None:
                self.cache.upsert_from_remote(record)
            else:
                self.cache.mark_synced(message.id)
            result = "existing" if outcome.is_existing or not outcome.ok else "synced"
            logger.info(f"Message {short_id(message.id)} {result}")
            record_sync_attempt(result)
            return result, None

        kind = outcome.error_kind or ErrorKind.TRANSIENT
        error = outcome.error_message or kind.value
        if kind.is_permanent:
            self.cache.mark_failed(message.id, error)
            logger.warning(f"Message {short_id(message.id)} failed permanently: {kind.value}: {error}")
            record_sync_attempt("failed")
            return "failed", error

        attempts = (message.retry_count or 0) + 1
        if attempts >= self.policy.max_retries:
            self.cache.mark_failed(message.id, f"{error} (gave up after {attempts} attempts)")
            logger.warning(f"Message {short_id(message.id)} failed after {attempts} attempts: {error}")
            record_sync_attempt("failed")
            return "failed", error

        delay = self.policy.delay_seconds(message.retry_count or 0)
        next_attempt_at = self._clock() + int(delay * 1000)
        self.cache.record_transient_failure(message.id, error, next_attempt_at)
        logger.info(f"Message {short_id(message.id)} will retry in {delay:.1f}s ({kind.value})")
        record_sync_attempt("retry")
        return "retry", error

    def _payload(self, message: LocalMessage) -> dict:
        payload = {
            "conversation_id": message.conversation_id,
            "scope": message.scope,
            "kind": message.kind,
            "text": message.text,
            "reply_to": message.reply_to,
            "mention_uids": message.mention_uids,
            "attachments": message.attachments,
            "client_id": self.client_id,
            "message_id": message.id,
            "created_at": message.created_at,
        }
        return {key: value for key, value in payload.items() if value is not None}

    # =========================================================================
    # User actions and status
    # =========================================================================

    def retry_message(self, message_id: str) -> bool:
        """Give a failed message a fresh set of attempts."""
        if not self.cache.reset_for_retry(message_id):
            return False
        logger.info(f"Retrying message {short_id(message_id)}")
        self._publish_status()
        self.request_flush("retry")
        return True

    def cancel_message(self, message_id: str) -> bool:
        """Stop sending a pending message. A message already in flight cannot be cancelled."""
        if message_id in self._in_flight:
            return False
        cancelled = self.cache.cancel(message_id)
        if cancelled:
            self._publish_status()
        return cancelled

    def failed_messages(self) -> List[LocalMessage]:
        return self.cache.list_by_status(SYNC_FAILED)

    def get_status(self) -> SyncStatus:
        counts = self.cache.count_by_status()
        record_outbox_counts(counts)
        return SyncStatus(
            is_online=self._online,
            is_syncing=self._is_syncing,
            last_sync_at=self._last_sync_at,
            pending_count=counts.get(SYNC_PENDING, 0),
            failed_count=counts.get(SYNC_FAILED, 0),
            error=self._last_error,
        )

    def subscribe_status(self, listener: StatusListener) -> Callable[[], None]:
        """
        Register a status listener; it is called once immediately.

        Returns:
            A function that removes the listener
        """
        self._listeners.append(listener)
        listener(self.get_status())

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish_status(self) -> None:
        if not self._listeners:
            return
        status = self.get_status()
        for listener in list(self._listeners):
            try:
                listener(status)
            except Exception as e:
                logger.error(f"Sync status listener failed: {e}")

    # =========================================================================
    # Inbound reconciliation
    # =========================================================================

    def apply_remote_event(self, event: ChangeEvent) -> None:
        """
        Merge a pushed change into the cache and advance the conversation cursor.

        Delivering the same event twice is a no-op.
        """
        record = event.message
        if self.cache.get(record.id) is None or event.type == "message.created":
            self.cache.upsert_from_remote(record)
        elif event.type == "message.edited":
            self.cache.apply_edit(record.id, record.text, record.edited_at)
        elif event.type == "message.deleted":
            self.cache.apply_deletion(record.id, record.deleted_by, record.deleted_at)
        elif event.type == "reactions.updated":
            self.cache.apply_reactions(record.id, record.reactions_summary)
        else:
            logger.warning(f"Ignoring unknown change type {event.type}")
            return

        self.cache.advance_cursor(record.scope, record.conversation_id, record.server_received_at)
        logger.debug(f"Applied {event.type} for {short_id(record.id)}")

    async def pull_conversation(self, scope: str, conversation_id: str) -> int:
        """
        Fetch every message received after the conversation cursor.

        Returns:
            Number of records merged
        """
        session = self._session
        total = 0
        while True:
            since = self.cache.get_cursor(scope, conversation_id)
            outcome = await self.transport.fetch_messages_since(
                scope, conversation_id, since=since, limit=PULL_PAGE_SIZE,
            )
            if session != self._session:
                logger.info(f"Discarding stale pull result for {scope}/{short_id(conversation_id)}")
                return total
            if not outcome.ok:
                logger.warning(
                    f"Pull of {scope}/{short_id(conversation_id)} failed: "
                    f"{outcome.error_kind.value if outcome.error_kind else 'unknown'}: {outcome.error_message}"
                )
                self._last_error = outcome.error_message
                self._publish_status()
                return total

            records = [MessageRecord.model_validate(item) for item in outcome.data.get("data") or []]
            for record in records:
                self.cache.upsert_from_remote(record)
            cursor = outcome.data.get("cursor")
            if cursor is not None:
                self.cache.advance_cursor(scope, conversation_id, cursor)
            total += len(records)
            if len(records) < PULL_PAGE_SIZE or cursor is None:
                break

        logger.info(f"Pulled {total} messages for {scope}/{short_id(conversation_id)}")
        return total
