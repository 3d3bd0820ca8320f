"""
Rate/Authorization gate for the ingestion service.

Stateless membership and block checks plus a per-user, per-operation-class
rate limit counter. The counter is read, checked and written inside one
transaction, so two concurrent requests cannot both observe "under limit"
and both pass the cap.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from chatsync.config import settings
from chatsync.errors import PermissionDeniedError, ResourceExhaustedError
from chatsync.metrics import record_rate_limit_decision
from chatsync.storage import get_member, is_blocked, list_member_ids
from chatsync.utils import now_ms, short_id

logger = logging.getLogger(__name__)

OP_MESSAGES = "messages"
OP_REACTIONS = "reactions"

MODERATOR_ROLES = frozenset(["owner", "admin", "moderator"])


# =============================================================================
# Authorization
# =============================================================================

def check_membership(db: Session, scope: str, conversation_id: str, user_id: str) -> None:
    """Raise PermissionDeniedError unless user_id belongs to the conversation."""
    if get_member(db, scope, conversation_id, user_id) is None:
        logger.info(f"Non-member attempt: {short_id(user_id)} on {scope}/{short_id(conversation_id)}")
        raise PermissionDeniedError("Not a member of this conversation")


def check_not_blocked(db: Session, conversation_id: str, user_id: str) -> None:
    """
    Raise PermissionDeniedError if either DM participant blocked the other.
    """
    members = list_member_ids(db, "dm", conversation_id)
    other_id = next((m for m in members if m != user_id), None)
    if other_id is None:
        return

    if is_blocked(db, user_id, other_id) or is_blocked(db, other_id, user_id):
        logger.info(f"Blocked user attempt: {short_id(user_id)} <-> {short_id(other_id)}")
        raise PermissionDeniedError("Cannot send message to this user")


def get_member_role(db: Session, scope: str, conversation_id: str, user_id: str) -> Optional[str]:
    member = get_member(db, scope, conversation_id, user_id)
    if member is None:
        return None
    return member.role or "member"


def is_moderator(db: Session, scope: str, conversation_id: str, user_id: str) -> bool:
    if scope != "group":
        return False
    return get_member_role(db, scope, conversation_id, user_id) in MODERATOR_ROLES


# =============================================================================
# Rate Limiting
# =============================================================================

def _consume(db: Session, user_id: str, op_class: str, limit: int, now: int, period_ms: int) -> bool:
    from chatsync.models import RateLimitWindow

    window = db.execute(
        select(RateLimitWindow)
        .where(RateLimitWindow.user_id == user_id, RateLimitWindow.op_class == op_class)
        .with_for_update()
    ).scalar_one_or_none()

    if window is None:
        db.add(RateLimitWindow(user_id=user_id, op_class=op_class, window_start=now, count=1, updated_at=now))
        db.commit()
        record_rate_limit_decision(op_class, "reset")
        return True

    if now - window.window_start >= period_ms:
        window.window_start = now
        window.count = 1
        window.updated_at = now
        db.commit()
        record_rate_limit_decision(op_class, "reset")
        return True

    if window.count >= limit:
        # Reject without incrementing
        db.commit()
        record_rate_limit_decision(op_class, "rejected")
        return False

    window.count = window.count + 1
    window.updated_at = now
    db.commit()
    record_rate_limit_decision(op_class, "allowed")
    return True


def check_rate_limit(
    db: Session,
    user_id: str,
    op_class: str,
    limit: int,
    now: Optional[int] = None,
    window_seconds: Optional[int] = None,
) -> bool:
    """
    Check and update the rate limit counter for one user and operation class.

    Args:
        db: Database session; the check commits its own transaction
        user_id: Caller
        op_class: OP_MESSAGES or OP_REACTIONS (separate budgets)
        limit: Maximum operations per window
        now: Current time in epoch ms (defaults to wall clock)
        window_seconds: Window period (defaults to settings)

    Returns:
        True if the operation is allowed. Internal errors fail open and
        return True: availability is favored over strict enforcement while
        the store is unhealthy.
    """
    now = now if now is not None else now_ms()
    period_ms = (window_seconds or settings.RATE_LIMIT_WINDOW_SECONDS) * 1000

    for _ in range(2):
        try:
            return _consume(db, user_id, op_class, limit, now, period_ms)
        except IntegrityError:
            # A concurrent first request created the window row; retry against it
            db.rollback()
            logger.debug(f"Rate limit window created concurrently for {short_id(user_id)}/{op_class}")
        except Exception as e:
            db.rollback()
            logger.error(f"Rate limiter error for {short_id(user_id)}/{op_class}, allowing request: {e}")
            record_rate_limit_decision(op_class, "fail_open")
            return True

    logger.error(f"Rate limiter contention for {short_id(user_id)}/{op_class}, allowing request")
    record_rate_limit_decision(op_class, "fail_open")
    return True


def enforce_rate_limit(db: Session, user_id: str, op_class: str, now: Optional[int] = None) -> None:
    """Raise ResourceExhaustedError when the caller is over budget for op_class."""
    if op_class == OP_REACTIONS:
        limit = settings.REACTION_RATE_LIMIT_PER_MINUTE
        detail = "Reaction rate limit exceeded. Please wait before reacting again."
    else:
        limit = settings.SEND_RATE_LIMIT_PER_MINUTE
        detail = "Rate limit exceeded. Please wait before sending more messages."

    if not check_rate_limit(db, user_id, op_class, limit, now=now):
        logger.info(f"Rate limited: {short_id(user_id)} on {op_class}")
        raise ResourceExhaustedError(detail)
