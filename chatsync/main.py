import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import Depends, FastAPI, Header, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from chatsync import ingestion
from chatsync.changefeed import change_feed
from chatsync.config import settings
from chatsync.errors import IngestionError, InvalidArgumentError, UnauthenticatedError
from chatsync.logging_utils import RequestLoggingMiddleware, annotate_request, setup_logging
from chatsync.metrics import active_subscriptions, get_metrics, get_metrics_content_type, record_ingestion_outcome
from chatsync.schemas import (
    ConversationResponse,
    CreateConversationRequest,
    DeleteMessageRequest,
    DeleteMessageResponse,
    EditMessageRequest,
    EditMessageResponse,
    ErrorResponse,
    HealthResponse,
    MessagesPageResponse,
    Scope,
    SendMessageRequest,
    SendMessageResponse,
    ToggleReactionRequest,
    ToggleReactionResponse,
)
from chatsync.storage import SessionLocal, check_db_health, get_db, get_member, init_db


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    """
    init_db()
    yield


app = FastAPI(
    title="chatsync ingestion API",
    description="Idempotent message ingestion, edit, delete and reactions",
    version="1.0.0",
    lifespan=lifespan,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "invalid-argument"},
    401: {"model": ErrorResponse, "description": "unauthenticated"},
    403: {"model": ErrorResponse, "description": "permission-denied"},
    404: {"model": ErrorResponse, "description": "not-found"},
    412: {"model": ErrorResponse, "description": "failed-precondition"},
    429: {"model": ErrorResponse, "description": "resource-exhausted"},
}

_OPERATIONS_BY_PATH = {
    "/messages": "send",
    "/messages/edit": "edit",
    "/messages/delete": "delete",
    "/messages/reactions": "react",
}


# =============================================================================
# Error Handling
# =============================================================================

def _error_response(exc: IngestionError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(code=exc.code, detail=exc.detail).model_dump(),
    )


@app.exception_handler(IngestionError)
async def ingestion_error_handler(request: Request, exc: IngestionError) -> JSONResponse:
    annotate_request(request, result=exc.code)
    return _error_response(exc)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Report boundary validation failures as invalid-argument."""
    detail = "; ".join(
        f"{'.'.join(str(part) for part in err['loc'][1:]) or 'body'}: {err['msg']}"
        for err in exc.errors()
    )
    logger.warning(f"Validation error on {request.url.path}: {detail}")
    operation = _OPERATIONS_BY_PATH.get(request.url.path)
    if operation:
        record_ingestion_outcome(operation, InvalidArgumentError.code)
        annotate_request(request, operation=operation, result=InvalidArgumentError.code)
    return _error_response(InvalidArgumentError(detail))


def get_current_user_id(
    x_user_id: Annotated[str | None, Header(alias="X-User-Id")] = None,
) -> str:
    """Opaque caller identity supplied by the authentication layer."""
    if not x_user_id:
        raise UnauthenticatedError("Must be logged in")
    return x_user_id


CurrentUser = Annotated[str, Depends(get_current_user_id)]


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the schema
    is applied, otherwise 503 (Service Unavailable).
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Conversation Routes
# =============================================================================

@app.post("/conversations", response_model=ConversationResponse, responses=ERROR_RESPONSES)
async def create_conversation(
    body: CreateConversationRequest,
    db: Session = Depends(get_db),
) -> ConversationResponse:
    """
    Create a DM or group conversation with its member set.

    Conversation lifecycle belongs to an external collaborator; repeating the
    call for an existing id returns it unchanged.
    """
    logger.info(f"POST /conversations: {body.scope}/{body.conversation_id} members={len(body.members)}")
    return ingestion.create_conversation(db, body)


@app.get(
    "/conversations/{scope}/{conversation_id}",
    response_model=ConversationResponse,
    responses=ERROR_RESPONSES,
)
async def get_conversation(
    scope: Scope,
    conversation_id: str,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> ConversationResponse:
    return ingestion.describe_conversation(db, user_id, scope, conversation_id)


@app.get(
    "/conversations/{scope}/{conversation_id}/messages",
    response_model=MessagesPageResponse,
    responses=ERROR_RESPONSES,
)
async def list_messages_since(
    scope: Scope,
    conversation_id: str,
    user_id: CurrentUser,
    since: Annotated[int, Query(ge=0, description="Return messages with server_received_at > since")] = 0,
    limit: Annotated[int, Query(ge=1, le=100, description="Maximum number of messages to return")] = 100,
    db: Session = Depends(get_db),
) -> MessagesPageResponse:
    """
    Pull sync: messages received after a cursor.

    Ordering:
        - server_received_at ASC, id ASC (deterministic)
    """
    page = ingestion.fetch_messages_since(db, user_id, scope, conversation_id, since=since, limit=limit)
    logger.info(f"Pull {scope}/{conversation_id}: returned {len(page.data)} messages since={since}")
    return page


# =============================================================================
# Ingestion Routes
# =============================================================================

@app.post("/messages", response_model=SendMessageResponse, responses=ERROR_RESPONSES)
async def send_message(
    request: Request,
    body: SendMessageRequest,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> SendMessageResponse:
    """
    Ingest a message exactly once.

    - Validates fields, membership, DM blocks and the send rate limit
    - Idempotent: a duplicate message_id returns the stored record with is_existing=true
    """
    annotate_request(request, operation="send", message_id=body.message_id)
    result = ingestion.send_message(db, user_id, body, feed=change_feed)
    annotate_request(request, result="existing" if result.is_existing else "created", is_existing=result.is_existing)
    return result


@app.post("/messages/edit", response_model=EditMessageResponse, responses=ERROR_RESPONSES)
async def edit_message(
    request: Request,
    body: EditMessageRequest,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> EditMessageResponse:
    """Edit a text message (sender only, within the edit window)."""
    annotate_request(request, operation="edit", message_id=body.message_id)
    result = ingestion.edit_message(db, user_id, body, feed=change_feed)
    annotate_request(request, result="edited")
    return result


@app.post("/messages/delete", response_model=DeleteMessageResponse, responses=ERROR_RESPONSES)
async def delete_message(
    request: Request,
    body: DeleteMessageRequest,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> DeleteMessageResponse:
    """Delete a message for all participants (idempotent)."""
    annotate_request(request, operation="delete", message_id=body.message_id)
    result = ingestion.delete_message_for_all(db, user_id, body, feed=change_feed)
    annotate_request(request, result="already_deleted" if result.already_deleted else "deleted")
    return result


@app.post("/messages/reactions", response_model=ToggleReactionResponse, responses=ERROR_RESPONSES)
async def toggle_reaction(
    request: Request,
    body: ToggleReactionRequest,
    user_id: CurrentUser,
    db: Session = Depends(get_db),
) -> ToggleReactionResponse:
    """Add or remove the caller's reaction with one emoji."""
    annotate_request(request, operation="react", message_id=body.message_id)
    result = ingestion.toggle_reaction(db, user_id, body, feed=change_feed)
    annotate_request(request, result=result.action)
    return result


# =============================================================================
# Subscription Route
# =============================================================================

@app.websocket("/conversations/{scope}/{conversation_id}/subscribe")
async def subscribe_conversation(
    websocket: WebSocket,
    scope: Scope,
    conversation_id: str,
    user_id: Annotated[str, Query(min_length=1)],
) -> None:
    """
    Stream ChangeEvents for one conversation as JSON text frames.

    Non-members are refused before the handshake completes.
    """
    with SessionLocal() as db:
        is_member = get_member(db, scope, conversation_id, user_id) is not None
        db.commit()

    if not is_member:
        logger.info(f"Refused subscription for non-member on {scope}/{conversation_id}")
        await websocket.close(code=4403)
        return

    await websocket.accept()
    loop = asyncio.get_running_loop()
    queue: asyncio.Queue = asyncio.Queue()
    unsubscribe = change_feed.subscribe(
        scope,
        conversation_id,
        lambda event: loop.call_soon_threadsafe(queue.put_nowait, event),
    )

    async def pump() -> None:
        while True:
            event = await queue.get()
            await websocket.send_text(event.model_dump_json())

    sender = asyncio.create_task(pump())
    active_subscriptions.inc()
    logger.info(f"Subscriber connected to {scope}/{conversation_id}")
    try:
        while True:
            # Client frames are ignored; this only waits for the disconnect
            await websocket.receive_text()
    except WebSocketDisconnect:
        logger.info(f"Subscriber disconnected from {scope}/{conversation_id}")
    finally:
        sender.cancel()
        unsubscribe()
        active_subscriptions.dec()


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
