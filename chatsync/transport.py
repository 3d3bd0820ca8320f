"""
HTTP client for the ingestion service.

Calls never raise for remote failures: each returns a CallOutcome whose
error_kind tells the sync engine whether to retry, give up, or treat the call
as already applied.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from chatsync.config import settings
from chatsync.errors import ErrorKind, classify_error
from chatsync.schemas import MessageRecord
from chatsync.utils import short_id

logger = logging.getLogger(__name__)


@dataclass
class CallOutcome:
    """Typed result of one call to the ingestion service."""

    ok: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    status_code: Optional[int] = None

    @property
    def record(self) -> Optional[MessageRecord]:
        message = self.data.get("message")
        if not message:
            return None
        return MessageRecord.model_validate(message)

    @property
    def is_existing(self) -> bool:
        return bool(self.data.get("is_existing"))

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, status_code: Optional[int] = None) -> "CallOutcome":
        return cls(ok=False, error_kind=kind, error_message=message, status_code=status_code)


class HttpIngestionTransport:
    """
    Ingestion API client on a shared httpx.AsyncClient.

    Args:
        user_id: Caller identity sent as the X-User-Id header
        base_url: Service root, defaults to INGESTION_BASE_URL
        client: Optional pre-built client (tests pass one with a mock transport)
        timeout: Per-request timeout in seconds
    """

    def __init__(
        self,
        user_id: str,
        base_url: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        self.user_id = user_id
        self._owns_client = client is None
        self.http = client if client is not None else httpx.AsyncClient(
            base_url=base_url or settings.INGESTION_BASE_URL,
            timeout=timeout if timeout is not None else settings.INGESTION_TIMEOUT_SECONDS,
        )

    async def aclose(self) -> None:
        if self._owns_client:
            await self.http.aclose()

    async def _request(self, method: str, path: str, json: Optional[dict] = None,
                       params: Optional[dict] = None) -> CallOutcome:
        try:
            response = await self.http.request(
                method,
                path,
                json=json,
                params=params,
                headers={"X-User-Id": self.user_id},
            )
        except httpx.TransportError as e:
            logger.warning(f"{method} {path} failed: {type(e).__name__}: {e}")
            return CallOutcome.failure(ErrorKind.TRANSIENT, str(e) or type(e).__name__)

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {"data": body}

        if response.is_success:
            return CallOutcome(ok=True, data=body, status_code=response.status_code)

        kind = classify_error(response.status_code, body.get("code"))
        detail = body.get("detail") or response.reason_phrase or f"HTTP {response.status_code}"
        if not isinstance(detail, str):
            detail = str(detail)
        logger.info(f"{method} {path} rejected: {response.status_code} {kind.value}: {detail}")
        return CallOutcome.failure(kind, detail, response.status_code)

    # =========================================================================
    # Operations
    # =========================================================================

    async def send_message(self, payload: Dict[str, Any]) -> CallOutcome:
        logger.debug(f"Sending message {short_id(payload.get('message_id'))}")
        return await self._request("POST", "/messages", json=payload)

    async def edit_message(self, scope: str, conversation_id: str, message_id: str, new_text: str) -> CallOutcome:
        return await self._request("POST", "/messages/edit", json={
            "scope": scope,
            "conversation_id": conversation_id,
            "message_id": message_id,
            "new_text": new_text,
        })

    async def delete_message(self, scope: str, conversation_id: str, message_id: str) -> CallOutcome:
        return await self._request("POST", "/messages/delete", json={
            "scope": scope,
            "conversation_id": conversation_id,
            "message_id": message_id,
        })

    async def toggle_reaction(self, scope: str, conversation_id: str, message_id: str, emoji: str) -> CallOutcome:
        return await self._request("POST", "/messages/reactions", json={
            "scope": scope,
            "conversation_id": conversation_id,
            "message_id": message_id,
            "emoji": emoji,
        })

    async def fetch_messages_since(self, scope: str, conversation_id: str, since: int = 0,
                                   limit: int = 100) -> CallOutcome:
        """Pull one page; `data["data"]` holds the records, `data["cursor"]` the new cursor."""
        return await self._request(
            "GET",
            f"/conversations/{scope}/{conversation_id}/messages",
            params={"since": since, "limit": limit},
        )
