import logging
from typing import Generator, Iterable, Optional, Tuple

from sqlalchemy import create_engine, event, select, text
from sqlalchemy.orm import sessionmaker, Session, declarative_base
from sqlalchemy.exc import IntegrityError

from chatsync.config import settings
from chatsync.utils import now_ms, preview_text, short_id

logger = logging.getLogger(__name__)

_is_sqlite = settings.DATABASE_URL.startswith("sqlite")

# Create SQLAlchemy engine
# check_same_thread=False is required for SQLite to work with FastAPI's async
engine = create_engine(
    settings.DATABASE_URL,
    connect_args={"check_same_thread": False} if _is_sqlite else {},
    echo=False,
)

if _is_sqlite:
    # pysqlite defers BEGIN until the first write, which lets two transactions
    # both read "under limit" before either writes. Take the write lock up
    # front so read-then-conditional-write sequences are serialized.
    @event.listens_for(engine, "connect")
    def _disable_pysqlite_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


# Create SessionLocal class for creating database sessions
SessionLocal = sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)

# Base class for SQLAlchemy models
Base = declarative_base()


def init_db() -> None:
    """
    Initialize the database by creating all tables.
    Called during application startup.
    """
    logger.debug(f"Initializing database with URL: {settings.DATABASE_URL}")
    try:
        # Import models to register them with Base.metadata
        from chatsync import models  # noqa: F401

        logger.debug("Creating database tables...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database initialized successfully")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


def get_db() -> Generator[Session, None, None]:
    """
    Dependency to get database session.
    Yields a session and ensures it's closed after use.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def check_db_health() -> bool:
    """
    Check if the database is reachable and schema is applied.

    Returns:
        True if DB is healthy and the messages table exists, False otherwise.
    """
    logger.debug("Checking database health...")
    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
            from chatsync.models import Message

            db.execute(select(Message.id).limit(1))
        logger.debug("Database health check passed")
        return True
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False


# =============================================================================
# Conversation Repository Functions
# =============================================================================

def create_conversation(
    db: Session,
    scope: str,
    conversation_id: str,
    members: Iterable[Tuple[str, str]],
) -> Tuple[object, bool]:
    """
    Create a conversation with its member set (idempotent).

    Args:
        db: Database session
        scope: "dm" or "group"
        conversation_id: Conversation identifier
        members: (user_id, role) pairs

    Returns:
        Tuple of (conversation, is_existing)
    """
    from chatsync.models import Conversation, ConversationMember

    existing = get_conversation(db, scope, conversation_id)
    if existing is not None:
        db.commit()
        return existing, True

    now = now_ms()
    conversation = Conversation(scope=scope, id=conversation_id, created_at=now, updated_at=now)
    db.add(conversation)
    for user_id, role in members:
        db.add(ConversationMember(scope=scope, conversation_id=conversation_id, user_id=user_id, role=role))

    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info(f"Conversation created concurrently: {scope}/{conversation_id}")
        return get_conversation(db, scope, conversation_id), True

    logger.info(f"Conversation created: {scope}/{conversation_id}")
    return conversation, False


def get_conversation(db: Session, scope: str, conversation_id: str):
    from chatsync.models import Conversation

    return db.get(Conversation, (scope, conversation_id))


def get_member(db: Session, scope: str, conversation_id: str, user_id: str):
    from chatsync.models import ConversationMember

    return db.get(ConversationMember, (scope, conversation_id, user_id))


def list_member_ids(db: Session, scope: str, conversation_id: str) -> list:
    from chatsync.models import ConversationMember

    rows = db.execute(
        select(ConversationMember.user_id)
        .where(ConversationMember.scope == scope, ConversationMember.conversation_id == conversation_id)
        .order_by(ConversationMember.user_id)
    ).scalars()
    return list(rows)


def update_conversation_preview(db: Session, message) -> None:
    """
    Point the conversation preview at a freshly stored message.

    Raises on failure; callers treat the preview as best-effort.
    """
    conversation = get_conversation(db, message.scope, message.conversation_id)
    if conversation is None:
        raise LookupError(f"conversation {message.scope}/{message.conversation_id} not found")

    conversation.last_message_id = message.id
    conversation.last_message_text = preview_text(message.kind, message.text, message.attachments)
    conversation.last_message_kind = message.kind
    conversation.last_message_sender_id = message.sender_id
    conversation.last_message_at = message.server_received_at
    conversation.updated_at = message.server_received_at
    db.commit()


# =============================================================================
# User Repository Functions
# =============================================================================

def is_blocked(db: Session, blocker_id: str, blocked_id: str) -> bool:
    from chatsync.models import UserBlock

    return db.get(UserBlock, (blocker_id, blocked_id)) is not None


def block_user(db: Session, blocker_id: str, blocked_id: str) -> None:
    from chatsync.models import UserBlock

    if not is_blocked(db, blocker_id, blocked_id):
        db.add(UserBlock(blocker_id=blocker_id, blocked_id=blocked_id, created_at=now_ms()))
    db.commit()


def get_user_profile(db: Session, user_id: str):
    from chatsync.models import UserProfile

    return db.get(UserProfile, user_id)


def upsert_user_profile(db: Session, user_id: str, display_name: Optional[str]) -> None:
    from chatsync.models import UserProfile

    profile = db.get(UserProfile, user_id)
    if profile is None:
        db.add(UserProfile(user_id=user_id, display_name=display_name))
    else:
        profile.display_name = display_name
    db.commit()


# =============================================================================
# Message Repository Functions
# =============================================================================

def get_message(db: Session, scope: str, conversation_id: str, message_id: str, for_update: bool = False):
    """
    Retrieve a message from its conversation collection.

    Args:
        db: Database session
        scope: "dm" or "group"
        conversation_id: Conversation identifier
        message_id: Client-generated message id
        for_update: Lock the row for the rest of the transaction

    Returns:
        Message object if found, None otherwise
    """
    from chatsync.models import Message

    query = select(Message).where(
        Message.scope == scope,
        Message.conversation_id == conversation_id,
        Message.id == message_id,
    )
    if for_update:
        query = query.with_for_update()
    return db.execute(query).scalar_one_or_none()


def insert_message(db: Session, message) -> Tuple[object, bool]:
    """
    Store a new message (idempotent on the conversation-scoped id).

    Returns:
        Tuple of (stored message, is_existing)
        - (message, False): written by this call
        - (existing, True): the id was already taken; nothing was written
    """
    logger.debug(f"Inserting message {short_id(message.id)} into {message.scope}/{short_id(message.conversation_id)}")
    try:
        db.add(message)
        db.commit()
        return message, False
    except IntegrityError:
        # Lost the race against a concurrent create of the same id
        db.rollback()
        logger.info(f"Duplicate message detected on insert: {short_id(message.id)}")
        existing = get_message(db, message.scope, message.conversation_id, message.id)
        db.commit()
        return existing, True


def get_messages_since(
    db: Session,
    scope: str,
    conversation_id: str,
    since: int = 0,
    limit: int = 100,
) -> list:
    """
    Retrieve messages received after a cursor, oldest first.

    Ordering is server_received_at ASC, id ASC (deterministic).
    """
    from chatsync.models import Message

    query = (
        select(Message)
        .where(
            Message.scope == scope,
            Message.conversation_id == conversation_id,
            Message.server_received_at > since,
        )
        .order_by(Message.server_received_at.asc(), Message.id.asc())
        .limit(limit)
    )
    return list(db.execute(query).scalars())


def list_reactions(db: Session, scope: str, conversation_id: str, message_id: str) -> list:
    from chatsync.models import Reaction

    query = select(Reaction).where(
        Reaction.scope == scope,
        Reaction.conversation_id == conversation_id,
        Reaction.message_id == message_id,
    )
    return list(db.execute(query).scalars())


def get_reaction(db: Session, scope: str, conversation_id: str, message_id: str, emoji: str):
    from chatsync.models import Reaction

    return db.get(Reaction, (scope, conversation_id, message_id, emoji))
