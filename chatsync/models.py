"""
SQLAlchemy ORM models for the remote store.

Each table plays the role of a document collection: messages are keyed by
(scope, conversation_id, id) so the client-generated id is the idempotency
key within its conversation. For Pydantic request/response schemas, see
schemas.py.
"""

from sqlalchemy import JSON, BigInteger, Column, Index, Integer, String, Text

from chatsync.storage import Base


class Conversation(Base):
    """
    A DM or group thread plus its denormalized last-message preview.

    Table: conversations
    Primary Key: (scope, id)
    """
    __tablename__ = "conversations"

    scope = Column(String, primary_key=True)
    id = Column(String, primary_key=True)
    last_message_id = Column(String, nullable=True)
    last_message_text = Column(Text, nullable=True)
    last_message_kind = Column(String, nullable=True)
    last_message_sender_id = Column(String, nullable=True)
    last_message_at = Column(BigInteger, nullable=True)
    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)


class ConversationMember(Base):
    """
    Membership row. DMs carry exactly two; groups carry a role per member.

    Table: conversation_members
    """
    __tablename__ = "conversation_members"

    scope = Column(String, primary_key=True)
    conversation_id = Column(String, primary_key=True)
    user_id = Column(String, primary_key=True)
    role = Column(String, nullable=False, default="member")


class UserBlock(Base):
    """One direction of a block: blocker_id no longer hears from blocked_id."""
    __tablename__ = "user_blocks"

    blocker_id = Column(String, primary_key=True)
    blocked_id = Column(String, primary_key=True)
    created_at = Column(BigInteger, nullable=False)


class UserProfile(Base):
    __tablename__ = "user_profiles"

    user_id = Column(String, primary_key=True)
    display_name = Column(String, nullable=True)


class Message(Base):
    """
    Stored message.

    Table: messages
    Primary Key: (scope, conversation_id, id) - ensures idempotency
    """
    __tablename__ = "messages"

    scope = Column(String, primary_key=True)
    conversation_id = Column(String, primary_key=True)
    id = Column(String, primary_key=True)
    sender_id = Column(String, nullable=False, index=True)
    sender_name = Column(String, nullable=True)
    kind = Column(String, nullable=False)
    text = Column(Text, nullable=True)
    reply_to = Column(JSON, nullable=True)
    mention_uids = Column(JSON, nullable=True)
    attachments = Column(JSON, nullable=True)
    created_at = Column(BigInteger, nullable=False)  # client-declared, advisory
    server_received_at = Column(BigInteger, nullable=False)  # authoritative
    edited_at = Column(BigInteger, nullable=True)
    edit_history = Column(JSON, nullable=True)
    deleted_by = Column(String, nullable=True)
    deleted_at = Column(BigInteger, nullable=True)
    reactions_summary = Column(JSON, nullable=False, default=dict)
    client_id = Column(String, nullable=False)
    idempotency_key = Column(String, nullable=False)

    __table_args__ = (
        Index("ix_messages_conversation_received", "scope", "conversation_id", "server_received_at"),
    )

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class Reaction(Base):
    """
    Reactors for one emoji on one message. count == len(user_ids).

    Table: reactions
    """
    __tablename__ = "reactions"

    scope = Column(String, primary_key=True)
    conversation_id = Column(String, primary_key=True)
    message_id = Column(String, primary_key=True)
    emoji = Column(String, primary_key=True)
    user_ids = Column(JSON, nullable=False)
    count = Column(Integer, nullable=False)
    updated_at = Column(BigInteger, nullable=False)


class RateLimitWindow(Base):
    """
    Fixed-period counter per user and operation class.

    Table: rate_limit_windows
    """
    __tablename__ = "rate_limit_windows"

    user_id = Column(String, primary_key=True)
    op_class = Column(String, primary_key=True)
    window_start = Column(BigInteger, nullable=False)
    count = Column(Integer, nullable=False)
    updated_at = Column(BigInteger, nullable=False)
