"""
SQLAlchemy ORM models for the on-device message cache.

These live in their own metadata (LocalBase) so the embedded client store
never shares tables with the remote store.
"""

from sqlalchemy import JSON, BigInteger, Column, Index, Integer, String, Text
from sqlalchemy.orm import declarative_base

LocalBase = declarative_base()

SYNC_PENDING = "pending"
SYNC_SYNCED = "synced"
SYNC_FAILED = "failed"

SYNC_STATUSES = (SYNC_PENDING, SYNC_SYNCED, SYNC_FAILED)


class LocalConversation(LocalBase):
    """
    Conversation preview row for fast listing.

    Table: conversations
    """
    __tablename__ = "conversations"

    scope = Column(String, primary_key=True)
    id = Column(String, primary_key=True)
    last_message_id = Column(String, nullable=True)
    last_message_text = Column(Text, nullable=True)
    last_message_kind = Column(String, nullable=True)
    last_message_sender_id = Column(String, nullable=True)
    last_message_at = Column(BigInteger, nullable=True)


class LocalMessage(LocalBase):
    """
    Locally cached message with its sync state.

    Table: messages
    Primary Key: seq (insertion order); id carries the uniqueness constraint
    """
    __tablename__ = "messages"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    id = Column(String, nullable=False, unique=True, index=True)
    conversation_id = Column(String, nullable=False, index=True)
    scope = Column(String, nullable=False)
    sender_id = Column(String, nullable=False)
    sender_name = Column(String, nullable=True)
    kind = Column(String, nullable=False)
    text = Column(Text, nullable=True)
    reply_to = Column(JSON, nullable=True)
    mention_uids = Column(JSON, nullable=True)
    attachments = Column(JSON, nullable=True)
    created_at = Column(BigInteger, nullable=False)
    server_received_at = Column(BigInteger, nullable=True)
    edited_at = Column(BigInteger, nullable=True)
    deleted_by = Column(String, nullable=True)
    deleted_at = Column(BigInteger, nullable=True)
    reactions_summary = Column(JSON, nullable=True)
    sync_status = Column(String, nullable=False, default=SYNC_PENDING)
    sync_error = Column(Text, nullable=True)
    retry_count = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(BigInteger, nullable=True)

    __table_args__ = (
        Index("ix_local_messages_status_created", "sync_status", "created_at"),
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class SyncCursor(LocalBase):
    """
    Pull-sync high-water mark per conversation.

    Table: sync_cursors
    """
    __tablename__ = "sync_cursors"

    scope = Column(String, primary_key=True)
    conversation_id = Column(String, primary_key=True)
    last_synced_at = Column(BigInteger, nullable=True)
    last_sync_attempt = Column(BigInteger, nullable=True)
