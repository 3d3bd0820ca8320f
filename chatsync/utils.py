"""
Utility functions shared by the ingestion service and the sync client.
"""

import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)

PREVIEW_MAX_CHARS = 50


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def short_id(value: Optional[str]) -> str:
    """Truncate an identifier for log lines."""
    if not value:
        return ""
    return value[:8]


def preview_text(kind: str, text: Optional[str] = None, attachments: Optional[list] = None) -> str:
    """
    Build the conversation-list preview for a message.

    Args:
        kind: Message kind (text, media, voice, file, system, scorecard)
        text: Message body, if any
        attachments: Attachment dicts, if any

    Returns:
        Short human-readable preview string
    """
    if kind == "text" and text:
        if len(text) > PREVIEW_MAX_CHARS:
            return text[:PREVIEW_MAX_CHARS] + "..."
        return text

    if kind == "media":
        count = len(attachments) if attachments else 1
        if count > 1:
            return f"📷 {count} photos"
        first = attachments[0] if attachments else None
        if first and first.get("kind") == "video":
            return "📹 Video"
        return "📷 Photo"

    if kind == "voice":
        return "🎤 Voice message"
    if kind == "file":
        return "📎 File"
    if kind == "system":
        return text or "System message"

    return text or ""
