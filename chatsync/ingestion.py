"""
Idempotent ingestion service: create, edit, delete-for-all and reaction toggle.

Every operation is stateless. It takes a database session, the caller's user
id and a validated request model, and either returns a response model or
raises an IngestionError subclass. All-or-nothing steps (rate limit check and
increment, reaction toggle and summary rewrite) each run in one transaction.
Committed changes are published to the change feed for subscribers.
"""

import functools
import logging
from typing import Optional

from sqlalchemy.orm import Session

from chatsync.changefeed import ChangeFeed, change_feed
from chatsync.config import settings
from chatsync.errors import (
    FailedPreconditionError,
    IngestionError,
    NotFoundError,
    PermissionDeniedError,
)
from chatsync.gate import (
    OP_MESSAGES,
    OP_REACTIONS,
    check_membership,
    check_not_blocked,
    enforce_rate_limit,
    is_moderator,
)
from chatsync.metrics import record_ingestion_outcome
from chatsync.schemas import (
    ChangeEvent,
    ConversationResponse,
    CreateConversationRequest,
    DeleteMessageRequest,
    DeleteMessageResponse,
    EditMessageRequest,
    EditMessageResponse,
    MessageRecord,
    MessagesPageResponse,
    SendMessageRequest,
    SendMessageResponse,
    ToggleReactionRequest,
    ToggleReactionResponse,
)
from chatsync.storage import (
    create_conversation as store_conversation,
    get_conversation,
    get_message,
    get_messages_since,
    get_reaction,
    get_user_profile,
    insert_message,
    list_member_ids,
    list_reactions,
    update_conversation_preview,
)
from chatsync.utils import now_ms, short_id

logger = logging.getLogger(__name__)


def _operation(name: str):
    """
    Roll back and count rejected operations.

    A rejection must not leave a transaction (and on SQLite, the write lock)
    open on the caller's session.
    """
    def decorator(func):
        @functools.wraps(func)
        def wrapper(db: Session, *args, **kwargs):
            try:
                return func(db, *args, **kwargs)
            except IngestionError as e:
                db.rollback()
                record_ingestion_outcome(name, e.code)
                logger.info(f"[{name}] rejected: {e.code}: {e.detail}")
                raise
            except Exception:
                db.rollback()
                record_ingestion_outcome(name, "internal")
                raise
        return wrapper
    return decorator


def _publish(feed: Optional[ChangeFeed], change_type: str, record: MessageRecord, now: int) -> None:
    feed = feed if feed is not None else change_feed
    feed.publish(ChangeEvent(type=change_type, message=record, emitted_at=now))


def _within_edit_window(message, now: int) -> bool:
    return now - message.server_received_at <= settings.EDIT_WINDOW_SECONDS * 1000


# =============================================================================
# Create
# =============================================================================

@_operation("send")
def send_message(
    db: Session,
    sender_id: str,
    request: SendMessageRequest,
    now: Optional[int] = None,
    feed: Optional[ChangeFeed] = None,
) -> SendMessageResponse:
    """
    Idempotent message creation with a server-authoritative timestamp.

    Preconditions run in order: membership, DM block check, send rate limit.
    A message id that already exists in the conversation is answered with
    the stored record and is_existing=True, without any further writes.
    """
    from chatsync.models import Message

    now = now if now is not None else now_ms()
    scope, conversation_id, message_id = request.scope, request.conversation_id, request.message_id

    logger.info(
        f"[send] from {short_id(sender_id)}: conversation={scope}/{short_id(conversation_id)} "
        f"kind={request.kind} message={short_id(message_id)}"
    )

    check_membership(db, scope, conversation_id, sender_id)
    if scope == "dm":
        check_not_blocked(db, conversation_id, sender_id)
    enforce_rate_limit(db, sender_id, OP_MESSAGES, now=now)

    existing = get_message(db, scope, conversation_id, message_id)
    if existing is not None:
        db.commit()
        logger.info(f"[send] idempotent return for existing message {short_id(message_id)}")
        record_ingestion_outcome("send", "existing")
        return SendMessageResponse(message=MessageRecord.model_validate(existing), is_existing=True)

    sender_name = None
    if scope == "group":
        profile = get_user_profile(db, sender_id)
        if profile is not None:
            sender_name = profile.display_name

    message = Message(
        scope=scope,
        conversation_id=conversation_id,
        id=message_id,
        sender_id=sender_id,
        sender_name=sender_name,
        kind=request.kind,
        text=request.text,
        reply_to=request.reply_to.model_dump() if request.reply_to else None,
        mention_uids=list(request.mention_uids) if request.mention_uids else None,
        attachments=[a.model_dump() for a in request.attachments] if request.attachments else None,
        created_at=request.created_at or now,
        server_received_at=now,
        reactions_summary={},
        client_id=request.client_id,
        idempotency_key=f"{request.client_id}:{message_id}",
    )
    stored, is_existing = insert_message(db, message)
    record = MessageRecord.model_validate(stored)

    if is_existing:
        record_ingestion_outcome("send", "existing")
        return SendMessageResponse(message=record, is_existing=True)

    try:
        update_conversation_preview(db, stored)
    except Exception as e:
        # Preview is derived state; the message itself is already stored
        db.rollback()
        logger.warning(f"[send] failed to update conversation preview for {scope}/{short_id(conversation_id)}: {e}")

    logger.info(f"[send] created message {short_id(message_id)}")
    record_ingestion_outcome("send", "created")
    _publish(feed, "message.created", record, now)
    return SendMessageResponse(message=record, is_existing=False)


# =============================================================================
# Edit
# =============================================================================

@_operation("edit")
def edit_message(
    db: Session,
    user_id: str,
    request: EditMessageRequest,
    now: Optional[int] = None,
    feed: Optional[ChangeFeed] = None,
) -> EditMessageResponse:
    """
    Edit a message.

    Rules:
    - Only the sender can edit
    - Only text messages, never deleted ones
    - Only within the edit window measured from server receipt
    """
    now = now if now is not None else now_ms()

    message = get_message(db, request.scope, request.conversation_id, request.message_id, for_update=True)
    if message is None:
        raise NotFoundError("Message not found")
    if message.sender_id != user_id:
        raise PermissionDeniedError("Can only edit your own messages")
    if message.is_deleted:
        raise FailedPreconditionError("Cannot edit a deleted message")
    if message.kind != "text":
        raise FailedPreconditionError("Can only edit text messages")
    if not _within_edit_window(message, now):
        raise FailedPreconditionError(f"Edit window has expired ({settings.EDIT_WINDOW_SECONDS // 60} minutes)")

    history = list(message.edit_history or [])
    history.append({"text": message.text, "edited_at": now, "edited_by": user_id})
    message.text = request.new_text
    message.edited_at = now
    message.edit_history = history
    db.commit()

    record = MessageRecord.model_validate(message)
    logger.info(f"[edit] edited message {short_id(message.id)}")
    record_ingestion_outcome("edit", "edited")
    _publish(feed, "message.edited", record, now)
    return EditMessageResponse(edited_at=now, message=record)


# =============================================================================
# Delete for all
# =============================================================================

@_operation("delete")
def delete_message_for_all(
    db: Session,
    user_id: str,
    request: DeleteMessageRequest,
    now: Optional[int] = None,
    feed: Optional[ChangeFeed] = None,
) -> DeleteMessageResponse:
    """
    Delete a message for every participant.

    The sender may delete within the edit window; group owners, admins and
    moderators may delete at any time. The row is kept with its body and
    attachments cleared so ordering is preserved for other clients. A repeat
    request returns the original deletion metadata and writes nothing.
    """
    now = now if now is not None else now_ms()

    message = get_message(db, request.scope, request.conversation_id, request.message_id, for_update=True)
    if message is None:
        raise NotFoundError("Message not found")

    if message.is_deleted:
        db.commit()
        record_ingestion_outcome("delete", "already_deleted")
        return DeleteMessageResponse(
            deleted_at=message.deleted_at,
            deleted_by=message.deleted_by,
            already_deleted=True,
        )

    can_delete = message.sender_id == user_id and _within_edit_window(message, now)
    if not can_delete:
        can_delete = is_moderator(db, request.scope, request.conversation_id, user_id)
    if not can_delete:
        raise PermissionDeniedError("Not authorized to delete this message")

    message.deleted_by = user_id
    message.deleted_at = now
    message.text = None
    message.attachments = None
    db.commit()

    record = MessageRecord.model_validate(message)
    logger.info(f"[delete] deleted message {short_id(message.id)}")
    record_ingestion_outcome("delete", "deleted")
    _publish(feed, "message.deleted", record, now)
    return DeleteMessageResponse(deleted_at=now, deleted_by=user_id)


# =============================================================================
# Reactions
# =============================================================================

@_operation("react")
def toggle_reaction(
    db: Session,
    user_id: str,
    request: ToggleReactionRequest,
    now: Optional[int] = None,
    feed: Optional[ChangeFeed] = None,
) -> ToggleReactionResponse:
    """
    Toggle the caller's reaction with one emoji on a message.

    The reaction row change and the message's summary rewrite happen in the
    same transaction, so the summary always equals the per-emoji counts.
    """
    from chatsync.models import Reaction

    now = now if now is not None else now_ms()
    scope, conversation_id, message_id, emoji = (
        request.scope, request.conversation_id, request.message_id, request.emoji,
    )

    check_membership(db, scope, conversation_id, user_id)
    enforce_rate_limit(db, user_id, OP_REACTIONS, now=now)

    message = get_message(db, scope, conversation_id, message_id, for_update=True)
    if message is None:
        raise NotFoundError("Message not found")
    if message.is_deleted:
        raise FailedPreconditionError("Cannot react to a deleted message")

    reaction = get_reaction(db, scope, conversation_id, message_id, emoji)
    if reaction is None:
        # New emoji on this message
        if len(list_reactions(db, scope, conversation_id, message_id)) >= settings.MAX_EMOJIS_PER_MESSAGE:
            raise FailedPreconditionError(
                f"Maximum {settings.MAX_EMOJIS_PER_MESSAGE} unique emojis per message"
            )
        db.add(Reaction(
            scope=scope,
            conversation_id=conversation_id,
            message_id=message_id,
            emoji=emoji,
            user_ids=[user_id],
            count=1,
            updated_at=now,
        ))
        action = "added"
    elif user_id in reaction.user_ids:
        remaining = [uid for uid in reaction.user_ids if uid != user_id]
        if remaining:
            reaction.user_ids = remaining
            reaction.count = len(remaining)
            reaction.updated_at = now
        else:
            db.delete(reaction)
        action = "removed"
    else:
        reactors = list(reaction.user_ids) + [user_id]
        reaction.user_ids = reactors
        reaction.count = len(reactors)
        reaction.updated_at = now
        action = "added"

    db.flush()
    summary = {row.emoji: row.count for row in list_reactions(db, scope, conversation_id, message_id)}
    message.reactions_summary = summary
    db.commit()

    logger.info(f"[react] {action} {emoji} on message {short_id(message_id)}")
    record_ingestion_outcome("react", action)
    _publish(feed, "reactions.updated", MessageRecord.model_validate(message), now)
    return ToggleReactionResponse(action=action, reactions_summary=summary)


# =============================================================================
# Conversations and pull sync
# =============================================================================

def _conversation_response(db: Session, conversation) -> ConversationResponse:
    return ConversationResponse(
        id=conversation.id,
        scope=conversation.scope,
        members=list_member_ids(db, conversation.scope, conversation.id),
        last_message_id=conversation.last_message_id,
        last_message_text=conversation.last_message_text,
        last_message_kind=conversation.last_message_kind,
        last_message_sender_id=conversation.last_message_sender_id,
        last_message_at=conversation.last_message_at,
    )


def create_conversation(db: Session, request: CreateConversationRequest) -> ConversationResponse:
    """Create a conversation and its member set; repeat calls return the existing one."""
    members = [(m.user_id, m.role) for m in request.members]
    conversation, _ = store_conversation(db, request.scope, request.conversation_id, members)
    response = _conversation_response(db, conversation)
    db.commit()
    return response


@_operation("describe")
def describe_conversation(db: Session, user_id: str, scope: str, conversation_id: str) -> ConversationResponse:
    """Return the conversation with its preview fields, for members only."""
    check_membership(db, scope, conversation_id, user_id)
    conversation = get_conversation(db, scope, conversation_id)
    if conversation is None:
        raise NotFoundError("Conversation not found")
    response = _conversation_response(db, conversation)
    db.commit()
    return response


@_operation("pull")
def fetch_messages_since(
    db: Session,
    user_id: str,
    scope: str,
    conversation_id: str,
    since: int = 0,
    limit: int = 100,
) -> MessagesPageResponse:
    """Return messages received after `since`, oldest first, for a member."""
    check_membership(db, scope, conversation_id, user_id)
    rows = get_messages_since(db, scope, conversation_id, since=since, limit=limit)
    db.commit()

    data = [MessageRecord.model_validate(row) for row in rows]
    cursor = data[-1].server_received_at if data else None
    return MessagesPageResponse(data=data, cursor=cursor)
