"""
On-device message cache: the durable outbox and the local read model.

Every message the user composes is written here first as `pending`; the sync
engine later moves it to `synced` or `failed`. Inbound server records and
change events are merged into the same rows so the UI reads from one place.

The cache is synchronous SQLAlchemy on an embedded SQLite file. Each mutation
runs in its own short transaction.
"""

import logging
import uuid
from typing import Dict, List, Optional

from sqlalchemy import and_, create_engine, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased, sessionmaker
from sqlalchemy.pool import StaticPool

from chatsync.config import settings
from chatsync.local_models import (
    SYNC_FAILED,
    SYNC_PENDING,
    SYNC_STATUSES,
    SYNC_SYNCED,
    LocalBase,
    LocalConversation,
    LocalMessage,
    SyncCursor,
)
from chatsync.schemas import MessageRecord
from chatsync.utils import now_ms, preview_text, short_id

logger = logging.getLogger(__name__)

CANCELLED_BY_USER = "Cancelled by user"
MISSING_CONVERSATION = "Missing conversation id"

_IN_MEMORY_URLS = ("sqlite://", "sqlite:///:memory:")


def _create_engine(database_url: str) -> Engine:
    if database_url in _IN_MEMORY_URLS:
        # One shared connection, otherwise every session sees an empty database
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if database_url.startswith("sqlite"):
        return create_engine(database_url, connect_args={"check_same_thread": False})
    return create_engine(database_url)


def _dump_list(items) -> Optional[list]:
    if not items:
        return None
    return [item.model_dump() if hasattr(item, "model_dump") else item for item in items]


class LocalMessageCache:
    """Embedded store for local messages, conversation previews and pull cursors."""

    def __init__(self, database_url: Optional[str] = None, engine: Optional[Engine] = None):
        self.engine = engine if engine is not None else _create_engine(database_url or settings.LOCAL_DATABASE_URL)
        LocalBase.metadata.create_all(bind=self.engine)
        self._session_factory = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False,
        )

    def close(self) -> None:
        self.engine.dispose()

    def _session(self) -> Session:
        return self._session_factory()

    # =========================================================================
    # Writes from the local user
    # =========================================================================

    def insert(
        self,
        conversation_id: str,
        scope: str,
        sender_id: str,
        kind: str = "text",
        text: Optional[str] = None,
        reply_to: Optional[dict] = None,
        mention_uids: Optional[List[str]] = None,
        attachments: Optional[list] = None,
        sender_name: Optional[str] = None,
        created_at: Optional[int] = None,
        skip_sync: bool = False,
        message_id: Optional[str] = None,
    ) -> LocalMessage:
        """
        Store a newly composed message.

        The row starts `pending` so the sync engine picks it up. With
        skip_sync=True (local-only and diagnostic messages) it is stored as
        `synced` with a local receipt time and never sent.

        A duplicate id is a no-op that returns the row already stored.
        """
        now = now_ms()
        message = LocalMessage(
            id=message_id or str(uuid.uuid4()),
            conversation_id=conversation_id,
            scope=scope,
            sender_id=sender_id,
            sender_name=sender_name,
            kind=kind,
            text=text,
            reply_to=reply_to.model_dump() if hasattr(reply_to, "model_dump") else reply_to,
            mention_uids=list(mention_uids) if mention_uids else None,
            attachments=_dump_list(attachments),
            created_at=created_at if created_at is not None else now,
            server_received_at=now if skip_sync else None,
            reactions_summary={},
            sync_status=SYNC_SYNCED if skip_sync else SYNC_PENDING,
            retry_count=0,
        )

        with self._session() as db:
            db.add(message)
            try:
                db.flush()
            except IntegrityError:
                db.rollback()
                logger.debug(f"Message {short_id(message.id)} already cached")
                return self._get(db, message.id)

            self._touch_conversation(db, message)
            db.commit()

        logger.debug(f"Cached message {short_id(message.id)} as {message.sync_status}")
        return message

    # =========================================================================
    # Reads
    # =========================================================================

    def get(self, message_id: str) -> Optional[LocalMessage]:
        with self._session() as db:
            return self._get(db, message_id)

    def list_for_conversation(self, conversation_id: str, scope: str, limit: int = 50) -> List[LocalMessage]:
        """Newest `limit` messages of a conversation, returned in insertion order."""
        with self._session() as db:
            rows = db.execute(
                select(LocalMessage)
                .where(LocalMessage.conversation_id == conversation_id, LocalMessage.scope == scope)
                .order_by(LocalMessage.seq.desc())
                .limit(limit)
            ).scalars().all()
        return list(reversed(rows))

    def list_by_status(self, status: str, limit: int = 100) -> List[LocalMessage]:
        with self._session() as db:
            rows = db.execute(
                select(LocalMessage)
                .where(LocalMessage.sync_status == status)
                .order_by(LocalMessage.created_at.asc(), LocalMessage.seq.asc())
                .limit(limit)
            ).scalars().all()
        return list(rows)

    def list_due(self, now: int, limit: int = 100) -> List[LocalMessage]:
        """
        Pending messages whose backoff has elapsed, oldest first.

        A message is held back while an older pending message of the same
        conversation is still waiting out its backoff.
        """
        earlier = aliased(LocalMessage)
        held_back = (
            select(earlier.seq)
            .where(
                earlier.scope == LocalMessage.scope,
                earlier.conversation_id == LocalMessage.conversation_id,
                earlier.sync_status == SYNC_PENDING,
                earlier.next_attempt_at > now,
                or_(
                    earlier.created_at < LocalMessage.created_at,
                    and_(earlier.created_at == LocalMessage.created_at, earlier.seq < LocalMessage.seq),
                ),
            )
            .exists()
        )
        with self._session() as db:
            rows = db.execute(
                select(LocalMessage)
                .where(
                    LocalMessage.sync_status == SYNC_PENDING,
                    (LocalMessage.next_attempt_at.is_(None)) | (LocalMessage.next_attempt_at <= now),
                    ~held_back,
                )
                .order_by(LocalMessage.created_at.asc(), LocalMessage.seq.asc())
                .limit(limit)
            ).scalars().all()
        return list(rows)

    def count_by_status(self) -> Dict[str, int]:
        counts = {status: 0 for status in SYNC_STATUSES}
        with self._session() as db:
            for status in db.execute(select(LocalMessage.sync_status)).scalars():
                counts[status] = counts.get(status, 0) + 1
        return counts

    # =========================================================================
    # Sync state transitions
    # =========================================================================

    def _transition(self, message_id: str, from_statuses, **values) -> bool:
        """Apply `values` only if the row is in one of `from_statuses`."""
        with self._session() as db:
            result = db.execute(
                update(LocalMessage)
                .where(LocalMessage.id == message_id, LocalMessage.sync_status.in_(from_statuses))
                .values(**values)
            )
            db.commit()
        return result.rowcount > 0

    def update_status(self, message_id: str, status: str, error: Optional[str] = None) -> bool:
        """
        Set the sync status of a message.

        A synced row is final: this returns False and changes nothing.
        """
        if status not in SYNC_STATUSES:
            raise ValueError(f"unknown sync status: {status}")
        values = {"sync_status": status, "sync_error": error}
        if status == SYNC_SYNCED:
            values["next_attempt_at"] = None
        return self._transition(message_id, (SYNC_PENDING, SYNC_FAILED), **values)

    def mark_synced(self, message_id: str) -> bool:
        return self.update_status(message_id, SYNC_SYNCED)

    def mark_failed(self, message_id: str, error: str) -> bool:
        return self.update_status(message_id, SYNC_FAILED, error)

    def record_transient_failure(self, message_id: str, error: str, next_attempt_at: int) -> Optional[int]:
        """
        Count a retryable failure and schedule the next attempt.

        Returns:
            The new retry_count, or None if the message is not pending
        """
        with self._session() as db:
            message = self._get(db, message_id)
            if message is None or message.sync_status != SYNC_PENDING:
                return None
            message.retry_count = (message.retry_count or 0) + 1
            message.sync_error = error
            message.next_attempt_at = next_attempt_at
            db.commit()
            return message.retry_count

    def reset_for_retry(self, message_id: str) -> bool:
        """Move a failed message back to pending with its counters cleared."""
        return self._transition(
            message_id,
            (SYNC_FAILED,),
            sync_status=SYNC_PENDING,
            sync_error=None,
            retry_count=0,
            next_attempt_at=None,
        )

    def cancel(self, message_id: str) -> bool:
        return self._transition(
            message_id,
            (SYNC_PENDING,),
            sync_status=SYNC_FAILED,
            sync_error=CANCELLED_BY_USER,
            next_attempt_at=None,
        )

    def clear_backoff(self) -> int:
        """Make every pending message due immediately."""
        with self._session() as db:
            result = db.execute(
                update(LocalMessage)
                .where(LocalMessage.sync_status == SYNC_PENDING, LocalMessage.next_attempt_at.is_not(None))
                .values(next_attempt_at=None)
            )
            db.commit()
        return result.rowcount

    def fail_orphans(self) -> int:
        """Pending messages without a conversation can never sync."""
        with self._session() as db:
            result = db.execute(
                update(LocalMessage)
                .where(LocalMessage.sync_status == SYNC_PENDING, LocalMessage.conversation_id == "")
                .values(sync_status=SYNC_FAILED, sync_error=MISSING_CONVERSATION, next_attempt_at=None)
            )
            db.commit()
        if result.rowcount:
            logger.warning(f"Marked {result.rowcount} orphaned messages as failed")
        return result.rowcount

    # =========================================================================
    # Merges from the server
    # =========================================================================

    def upsert_from_remote(self, record: MessageRecord) -> LocalMessage:
        """
        Merge an authoritative server record into the cache.

        - unknown id: stored as synced
        - local pending/failed row: becomes synced and adopts server fields
          (including reactions)
        - already synced row: the reaction summary is left alone, so a
          redelivered record cannot undo a later reactions update
        - attachments the server did not echo are kept
        - an edit applies only if it is not older than the local one
        - a deletion is never undone

        Applying the same record twice leaves the row unchanged.
        """
        with self._session() as db:
            message = self._get(db, record.id)
            if message is None:
                message = LocalMessage(
                    id=record.id,
                    conversation_id=record.conversation_id,
                    scope=record.scope,
                    sender_id=record.sender_id,
                    sender_name=record.sender_name,
                    kind=record.kind,
                    text=record.text,
                    reply_to=record.reply_to.model_dump() if record.reply_to else None,
                    mention_uids=list(record.mention_uids) if record.mention_uids else None,
                    attachments=_dump_list(record.attachments),
                    created_at=record.created_at,
                    server_received_at=record.server_received_at,
                    edited_at=record.edited_at,
                    deleted_by=record.deleted_by,
                    deleted_at=record.deleted_at,
                    reactions_summary=dict(record.reactions_summary),
                    sync_status=SYNC_SYNCED,
                    retry_count=0,
                )
                db.add(message)
                try:
                    db.flush()
                except IntegrityError:
                    # Inserted concurrently by another writer; merge into that row
                    db.rollback()
                    return self.upsert_from_remote(record)
            else:
                if message.sync_status != SYNC_SYNCED:
                    logger.debug(f"Remote record confirms local message {short_id(record.id)}")
                    # Once synced, reactions only change through apply_reactions
                    message.reactions_summary = dict(record.reactions_summary)
                message.sync_status = SYNC_SYNCED
                message.sync_error = None
                message.next_attempt_at = None
                message.server_received_at = record.server_received_at
                if record.sender_name:
                    message.sender_name = record.sender_name

                if not message.is_deleted:
                    if record.attachments:
                        message.attachments = _dump_list(record.attachments)
                    if record.edited_at is not None and (
                        message.edited_at is None or record.edited_at >= message.edited_at
                    ):
                        message.text = record.text
                        message.edited_at = record.edited_at
                    if record.deleted_at is not None:
                        self._mark_deleted(message, record.deleted_by, record.deleted_at)

            self._touch_conversation(db, message)
            db.commit()
            return message

    def apply_edit(self, message_id: str, text: Optional[str], edited_at: int) -> bool:
        with self._session() as db:
            message = self._get(db, message_id)
            if message is None or message.is_deleted:
                return False
            if message.edited_at is not None and edited_at < message.edited_at:
                return False
            message.text = text
            message.edited_at = edited_at
            db.commit()
        return True

    def apply_deletion(self, message_id: str, deleted_by: Optional[str], deleted_at: int) -> bool:
        with self._session() as db:
            message = self._get(db, message_id)
            if message is None or message.is_deleted:
                return False
            self._mark_deleted(message, deleted_by, deleted_at)
            db.commit()
        return True

    def apply_reactions(self, message_id: str, reactions_summary: Dict[str, int]) -> bool:
        with self._session() as db:
            message = self._get(db, message_id)
            if message is None:
                return False
            message.reactions_summary = dict(reactions_summary)
            db.commit()
        return True

    # =========================================================================
    # Conversations
    # =========================================================================

    def get_conversation(self, scope: str, conversation_id: str) -> Optional[LocalConversation]:
        with self._session() as db:
            return db.get(LocalConversation, (scope, conversation_id))

    def list_conversations(self, limit: int = 50) -> List[LocalConversation]:
        """Conversations by most recent preview first."""
        with self._session() as db:
            rows = db.execute(
                select(LocalConversation)
                .order_by(LocalConversation.last_message_at.desc().nulls_last(), LocalConversation.id)
                .limit(limit)
            ).scalars().all()
        return list(rows)

    # =========================================================================
    # Pull cursors
    # =========================================================================

    def get_cursor(self, scope: str, conversation_id: str) -> int:
        """Last server_received_at pulled for a conversation (0 if never synced)."""
        with self._session() as db:
            cursor = db.get(SyncCursor, (scope, conversation_id))
            if cursor is None:
                return 0
            return cursor.last_synced_at or 0

    def advance_cursor(self, scope: str, conversation_id: str, synced_at: int) -> int:
        """
        Move the cursor forward to `synced_at`.

        An older value is ignored; the cursor never moves backwards.

        Returns:
            The cursor value after the call
        """
        with self._session() as db:
            cursor = db.get(SyncCursor, (scope, conversation_id))
            if cursor is None:
                cursor = SyncCursor(scope=scope, conversation_id=conversation_id, last_synced_at=0)
                db.add(cursor)
            if synced_at > (cursor.last_synced_at or 0):
                cursor.last_synced_at = synced_at
            cursor.last_sync_attempt = now_ms()
            value = cursor.last_synced_at
            db.commit()
        return value

    def reset_cursor(self, scope: str, conversation_id: str) -> None:
        with self._session() as db:
            cursor = db.get(SyncCursor, (scope, conversation_id))
            if cursor is not None:
                db.delete(cursor)
            db.commit()

    # =========================================================================
    # Helpers
    # =========================================================================

    @staticmethod
    def _get(db: Session, message_id: str) -> Optional[LocalMessage]:
        return db.execute(select(LocalMessage).where(LocalMessage.id == message_id)).scalar_one_or_none()

    @staticmethod
    def _mark_deleted(message: LocalMessage, deleted_by: Optional[str], deleted_at: int) -> None:
        message.deleted_by = deleted_by
        message.deleted_at = deleted_at
        message.text = None
        message.attachments = None

    @staticmethod
    def _touch_conversation(db: Session, message: LocalMessage) -> None:
        """Point the conversation preview at `message` if it is the newest one."""
        if not message.conversation_id:
            return
        at = message.server_received_at or message.created_at
        conversation = db.get(LocalConversation, (message.scope, message.conversation_id))
        if conversation is None:
            conversation = LocalConversation(scope=message.scope, id=message.conversation_id)
            db.add(conversation)
        elif (
            conversation.last_message_id != message.id
            and conversation.last_message_at is not None
            and conversation.last_message_at > at
        ):
            return

        conversation.last_message_id = message.id
        conversation.last_message_text = preview_text(message.kind, message.text, message.attachments)
        conversation.last_message_kind = message.kind
        conversation.last_message_sender_id = message.sender_id
        conversation.last_message_at = at
