"""
Pydantic schemas for request/response validation.

This module contains:
- Request models, one per ingestion operation, validated at the boundary
- The canonical MessageRecord returned by the service and pushed to clients
- Change events delivered over the subscription channel
- Response models for the HTTP API
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field, field_validator, model_validator


Scope = Literal["dm", "group"]
MessageKind = Literal["text", "media", "voice", "file", "system", "scorecard"]
MemberRole = Literal["owner", "admin", "moderator", "member"]
ChangeType = Literal["message.created", "message.edited", "message.deleted", "reactions.updated"]

MAX_ID_LENGTH = 100
MAX_TEXT_LENGTH = 10000
MAX_MENTIONS = 5
MAX_ATTACHMENTS = 10

ALLOWED_EMOJIS = frozenset([
    "👍", "👎", "❤️", "🔥", "😂", "😢", "😮", "😡",
    "🎉", "👏", "🙌", "💯", "⭐", "🚀", "💪", "🤔",
])


# =============================================================================
# Nested Payload Models
# =============================================================================

class Attachment(BaseModel):
    """Reference to an already-uploaded attachment."""
    id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    kind: Literal["image", "video", "audio", "file"]
    mime: str
    url: str = Field(..., min_length=1)
    path: str = ""
    size_bytes: int = Field(default=0, ge=0)
    width: Optional[int] = None
    height: Optional[int] = None
    duration_ms: Optional[int] = None
    thumb_url: Optional[str] = None
    caption: Optional[str] = None
    view_once: bool = False


class ReplyTo(BaseModel):
    """Snapshot of the message being replied to."""
    message_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    sender_id: str
    sender_name: Optional[str] = None
    kind: str
    text_snippet: Optional[str] = None


class MemberSpec(BaseModel):
    user_id: str = Field(..., min_length=1, max_length=128)
    role: MemberRole = "member"


# =============================================================================
# Pydantic Request Models
# =============================================================================

class SendMessageRequest(BaseModel):
    """
    Create a message.

    Validates:
    - ids: non-empty, at most 100 characters
    - kind/scope: enumerations
    - text: at most 10000 characters, non-blank for text messages
    - mentions: at most 5; attachments: at most 10
    """
    conversation_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    scope: Scope
    kind: MessageKind
    text: Optional[str] = Field(None, max_length=MAX_TEXT_LENGTH)
    reply_to: Optional[ReplyTo] = None
    mention_uids: Optional[list[str]] = Field(None, max_length=MAX_MENTIONS)
    attachments: Optional[list[Attachment]] = Field(None, max_length=MAX_ATTACHMENTS)
    client_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    message_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    created_at: Optional[int] = Field(None, ge=0, description="Client-declared creation time (epoch ms), advisory")

    @model_validator(mode="after")
    def text_messages_need_content(self):
        if self.kind == "text" and (not self.text or not self.text.strip()):
            raise ValueError("Text messages must have content")
        return self

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "conversation_id": "chat_ab",
                    "scope": "dm",
                    "kind": "text",
                    "text": "Hello",
                    "client_id": "device-1",
                    "message_id": "2f7c1a6e-8d7e-4b5e-9d35-0c8b8f3f0a11",
                    "created_at": 1736935200000,
                }
            ]
        }
    }


class EditMessageRequest(BaseModel):
    conversation_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    scope: Scope
    message_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    new_text: str = Field(..., min_length=1, max_length=MAX_TEXT_LENGTH)


class DeleteMessageRequest(BaseModel):
    conversation_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    scope: Scope
    message_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)


class ToggleReactionRequest(BaseModel):
    conversation_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    scope: Scope
    message_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    emoji: str = Field(..., min_length=1)

    @field_validator("emoji")
    @classmethod
    def validate_allowed_emoji(cls, v: str) -> str:
        if v not in ALLOWED_EMOJIS:
            raise ValueError("Invalid or disallowed emoji")
        return v


class CreateConversationRequest(BaseModel):
    """Explicit conversation creation. DMs need exactly two distinct members."""
    conversation_id: str = Field(..., min_length=1, max_length=MAX_ID_LENGTH)
    scope: Scope
    members: list[MemberSpec] = Field(..., min_length=1)

    @model_validator(mode="after")
    def dm_has_two_members(self):
        user_ids = [m.user_id for m in self.members]
        if len(set(user_ids)) != len(user_ids):
            raise ValueError("members must be distinct")
        if self.scope == "dm" and len(user_ids) != 2:
            raise ValueError("a dm conversation has exactly two members")
        return self


# =============================================================================
# Canonical Records
# =============================================================================

class MessageRecord(BaseModel):
    """
    Canonical stored message as returned by the service.
    Maps database fields to API response format.
    """
    id: str
    conversation_id: str
    scope: Scope
    sender_id: str
    sender_name: Optional[str] = None
    kind: MessageKind
    text: Optional[str] = None
    reply_to: Optional[ReplyTo] = None
    mention_uids: Optional[list[str]] = None
    attachments: Optional[list[Attachment]] = None
    created_at: int
    server_received_at: int
    edited_at: Optional[int] = None
    deleted_by: Optional[str] = None
    deleted_at: Optional[int] = None
    reactions_summary: dict[str, int] = Field(default_factory=dict)
    client_id: str = ""
    idempotency_key: str = ""

    model_config = {"from_attributes": True}

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None


class ChangeEvent(BaseModel):
    """A change pushed to subscribers of a conversation."""
    type: ChangeType
    message: MessageRecord
    emitted_at: int


# =============================================================================
# Pydantic Response Models
# =============================================================================

class SendMessageResponse(BaseModel):
    success: bool = True
    message: MessageRecord
    is_existing: bool = Field(..., description="True when the id was already stored")


class EditMessageResponse(BaseModel):
    success: bool = True
    edited_at: int
    message: MessageRecord


class DeleteMessageResponse(BaseModel):
    success: bool = True
    deleted_at: int
    deleted_by: str
    already_deleted: bool = False


class ToggleReactionResponse(BaseModel):
    success: bool = True
    action: Literal["added", "removed"]
    reactions_summary: dict[str, int]


class ConversationResponse(BaseModel):
    id: str
    scope: Scope
    members: list[str]
    last_message_id: Optional[str] = None
    last_message_text: Optional[str] = None
    last_message_kind: Optional[str] = None
    last_message_sender_id: Optional[str] = None
    last_message_at: Optional[int] = None


class MessagesPageResponse(BaseModel):
    """
    Response model for pull sync.

    Contains:
    - data: messages received after the requested cursor, oldest first
    - cursor: server_received_at of the last message (null if none)
    """
    data: list[MessageRecord] = Field(default_factory=list)
    cursor: Optional[int] = None


class ErrorResponse(BaseModel):
    """Response model for error responses."""
    code: str = Field(..., description="Stable error code, e.g. permission-denied")
    detail: str = Field(..., description="Error description")


class HealthResponse(BaseModel):
    """Response model for health check endpoints."""
    status: str = Field(..., description="Health status")
    reason: Optional[str] = Field(None, description="Reason if not ready")
