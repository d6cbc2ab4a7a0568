import asyncio
import json
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Annotated, Optional

from fastapi import (
    BackgroundTasks,
    Depends,
    FastAPI,
    Header,
    HTTPException,
    Query,
    Request,
    Response,
    status,
)
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from chat_engine.config import settings
from chat_engine.exceptions import BadRequest, ChatError, Forbidden, NotFound
from chat_engine.fanout import Fanout
from chat_engine.last_read import checkout_last_read, set_last_read
from chat_engine.logging_utils import RequestLoggingMiddleware, log_operation_data, setup_logging
from chat_engine.messages import (
    delete_message,
    get_user_profile,
    list_messages,
    send_message,
    update_message,
)
from chat_engine.metrics import get_metrics, get_metrics_content_type, record_chat_operation
from chat_engine.notifier import (
    BotNotifier,
    ServiceUnavailable,
    TextGenerator,
    close_clients,
    get_bot_notifier,
    get_text_generator,
)
from chat_engine.permissions import resolve_channel
from chat_engine.pubsub import EventBus, chat_topic, get_event_bus, private_topic
from chat_engine.schemas import (
    CheckoutResponse,
    CursorType,
    ErrorResponse,
    GenerateTextRequest,
    GenerateTextResponse,
    HealthResponse,
    MessageResponse,
    SendMessageRequest,
    SendMessageResponse,
    UpdateMessageRequest,
)
from chat_engine.storage import SessionLocal, check_db_health, get_db, init_db
from chat_engine.utils import utcnow


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: Initialize database and create tables
    - Shutdown: Close outbound HTTP clients
    """
    init_db()
    yield
    await close_clients()


app = FastAPI(
    title="Chat Engine",
    description="Channel messaging core: send, edit, delete, history, read cursors and realtime fanout",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)


ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Empty message or unknown user"},
    401: {"model": ErrorResponse, "description": "Missing user identity"},
    403: {"model": ErrorResponse, "description": "No permission"},
    404: {"model": ErrorResponse, "description": "Channel or message not found"},
}

RESULT_LABELS = {
    BadRequest: "bad_request",
    Forbidden: "forbidden",
    NotFound: "not_found",
}


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


# =============================================================================
# Dependencies
# =============================================================================

def get_current_user_id(
    x_user_id: Annotated[Optional[str], Header(alias="X-User-Id")] = None,
) -> str:
    """
    Acting identity, set by the upstream session layer.
    This service never issues or validates credentials itself.
    """
    if not x_user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="missing user identity"
        )
    return x_user_id


def get_broker() -> EventBus:
    return get_event_bus()


def get_fanout(broker: EventBus = Depends(get_broker)) -> Fanout:
    return Fanout(broker)


def _record_outcome(request: Request, operation: str, result: str, **fields) -> None:
    record_chat_operation(operation, result)
    log_operation_data(request, operation=operation, result=result, **fields)


def _record_failure(request: Request, operation: str, exc: ChatError, **fields) -> None:
    result = RESULT_LABELS.get(type(exc), "error")
    logger.info(f"{operation} rejected: {exc.message}")
    _record_outcome(request, operation, result, **fields)


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
    Readiness probe - returns 200 only if the DB is reachable and the
    messaging schema is applied, otherwise 503.
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Message Routes
# =============================================================================

@app.post(
    "/channels/{channel_id}/messages",
    response_model=SendMessageResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def send(
    channel_id: str,
    body: SendMessageRequest,
    request: Request,
    background_tasks: BackgroundTasks,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    fanout: Fanout = Depends(get_fanout),
    notifier: BotNotifier = Depends(get_bot_notifier),
) -> SendMessageResponse:
    """
    Send a message to a channel.

    The message, its attachment, the channel's last-message pointer and the
    DM open flag are committed together. Realtime events, the sender's read
    cursor and the bot notification follow the commit on a best-effort basis.
    """
    try:
        result = send_message(
            db,
            channel_id=channel_id,
            content=body.content,
            user_id=user_id,
            attachment=body.attachment,
            reply_id=body.reply,
        )
    except ChatError as e:
        _record_failure(request, "send", e, channel_id=channel_id)
        raise

    message = result.message

    # The sender never sees their own message as unread
    try:
        set_last_read(db, channel_id, user_id, message.timestamp)
    except SQLAlchemyError:
        logger.exception(f"Failed to advance last read after send: channel={channel_id}")

    # Not cancellable by a disconnecting client
    await asyncio.shield(_publish_sent(fanout, result, body.nonce))

    if notifier.matches(body.content) and message.author is not None:
        background_tasks.add_task(notifier.notify, body.content, channel_id, message.author.name)

    _record_outcome(request, "send", "ok", channel_id=channel_id, message_id=message.id)
    return SendMessageResponse(**dict(message), nonce=body.nonce)


async def _publish_sent(fanout: Fanout, result, nonce: Optional[int]) -> None:
    message = result.message
    publishes = [fanout.message_sent(message, nonce)]
    if result.is_new_dm and result.access.to_user_id and message.author is not None:
        publishes.append(
            fanout.dm_opened(result.access.to_user_id, message.channel_id, message.author)
        )
    await asyncio.gather(*publishes)


@app.get(
    "/channels/{channel_id}/messages",
    response_model=list[MessageResponse],
    responses=ERROR_RESPONSES,
)
async def messages(
    channel_id: str,
    request: Request,
    count: Annotated[int, Query(ge=0, description="Page size, capped at 50")] = 50,
    cursor_type: Annotated[CursorType, Query(description="Direction relative to cursor")] = "before",
    cursor: Annotated[Optional[datetime], Query(description="Exclusive timestamp bound (ISO-8601)")] = None,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> list[MessageResponse]:
    """
    Page through channel history, newest first.

    Query Parameters:
        - count: messages per page (default 50, values above 50 are capped)
        - cursor_type: "before" (default) for older messages, "after" for newer
        - cursor: timestamp of the last message seen; omit for the latest page
    """
    try:
        page = list_messages(
            db,
            channel_id=channel_id,
            user_id=user_id,
            count=count,
            cursor_type=cursor_type,
            cursor=cursor,
        )
    except ChatError as e:
        _record_failure(request, "list", e, channel_id=channel_id)
        raise

    _record_outcome(request, "list", "ok", channel_id=channel_id)
    return page


@app.patch(
    "/channels/{channel_id}/messages/{message_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=ERROR_RESPONSES,
)
async def update(
    channel_id: str,
    message_id: int,
    body: UpdateMessageRequest,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    fanout: Fanout = Depends(get_fanout),
) -> None:
    """Edit the content of one of your own messages."""
    try:
        update_message(
            db,
            message_id=message_id,
            channel_id=channel_id,
            content=body.content,
            user_id=user_id,
        )
    except ChatError as e:
        _record_failure(request, "update", e, channel_id=channel_id, message_id=message_id)
        raise

    await asyncio.shield(fanout.message_updated(message_id, channel_id, body.content))
    _record_outcome(request, "update", "ok", channel_id=channel_id, message_id=message_id)


@app.delete(
    "/messages/{message_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=ERROR_RESPONSES,
)
async def delete(
    message_id: int,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    fanout: Fanout = Depends(get_fanout),
) -> None:
    """Delete a message as its author, or as the owner of its group."""
    try:
        channel_id = delete_message(db, message_id=message_id, user_id=user_id)
    except ChatError as e:
        _record_failure(request, "delete", e, message_id=message_id)
        raise

    await asyncio.shield(fanout.message_deleted(message_id, channel_id))
    _record_outcome(request, "delete", "ok", channel_id=channel_id, message_id=message_id)


# =============================================================================
# Read Cursor Routes
# =============================================================================

@app.post(
    "/channels/{channel_id}/read",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=ERROR_RESPONSES,
)
async def read(
    channel_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> None:
    """Mark the channel as read up to now."""
    try:
        resolve_channel(db, channel_id, user_id)
    except ChatError as e:
        _record_failure(request, "read", e, channel_id=channel_id)
        raise

    set_last_read(db, channel_id, user_id, utcnow())
    _record_outcome(request, "read", "ok", channel_id=channel_id)


@app.post(
    "/channels/{channel_id}/checkout",
    response_model=CheckoutResponse,
    responses=ERROR_RESPONSES,
)
async def checkout(
    channel_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
) -> CheckoutResponse:
    """
    Return the previous read cursor and advance it to now.

    Clients count unread messages with the returned value.
    """
    try:
        resolve_channel(db, channel_id, user_id)
    except ChatError as e:
        _record_failure(request, "checkout", e, channel_id=channel_id)
        raise

    previous = checkout_last_read(db, channel_id, user_id)
    _record_outcome(request, "checkout", "ok", channel_id=channel_id)
    return CheckoutResponse(last_read=previous)


# =============================================================================
# Typing & Text Generation Routes
# =============================================================================

@app.post(
    "/channels/{channel_id}/typing",
    status_code=status.HTTP_204_NO_CONTENT,
    responses=ERROR_RESPONSES,
)
async def typing(
    channel_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    db: Session = Depends(get_db),
    fanout: Fanout = Depends(get_fanout),
) -> None:
    """Broadcast a typing indicator with the caller's profile."""
    try:
        resolve_channel(db, channel_id, user_id)
        user = get_user_profile(db, user_id)
    except ChatError as e:
        _record_failure(request, "typing", e, channel_id=channel_id)
        raise

    await fanout.typing(channel_id, user)
    _record_outcome(request, "typing", "ok", channel_id=channel_id)


@app.post(
    "/chat/generate-text",
    response_model=GenerateTextResponse,
    responses={503: {"model": ErrorResponse, "description": "Text generation unavailable"}},
)
async def generate_text(
    body: GenerateTextRequest,
    user_id: str = Depends(get_current_user_id),
    generator: TextGenerator = Depends(get_text_generator),
) -> GenerateTextResponse:
    """Continue or rewrite a draft with the external text generation service."""
    try:
        text = await generator.generate(body.text)
    except ServiceUnavailable as e:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=str(e)
        )
    return GenerateTextResponse(text=text)


# =============================================================================
# Realtime Event Routes (Server-Sent Events)
# =============================================================================

def _sse_frame(payload: dict) -> bytes:
    return f"data: {json.dumps(payload)}\n\n".encode("utf-8")


def _event_stream(request: Request, broker: EventBus, topic: str, queue: asyncio.Queue) -> StreamingResponse:
    async def generator() -> AsyncGenerator[bytes, None]:
        try:
            while True:
                if await request.is_disconnected():
                    break

                # Overflowed subscribers get what was buffered, then a final frame
                if queue.empty() and broker.is_dropped(queue):
                    logger.warning(f"Closing event stream for dropped subscriber: topic={topic}")
                    yield _sse_frame({
                        "topic": topic,
                        "event": "dropped",
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                    })
                    break

                try:
                    event = await asyncio.wait_for(queue.get(), timeout=15)
                    yield _sse_frame(event)
                except asyncio.TimeoutError:
                    yield _sse_frame({
                        "topic": topic,
                        "event": "heartbeat",
                        "timestamp": datetime.now(timezone.utc).isoformat(),
                    })
        finally:
            await broker.unsubscribe(topic, queue)

    return StreamingResponse(
        generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache, no-store, must-revalidate",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


def _authorize_channel_stream(channel_id: str, user_id: str) -> None:
    with SessionLocal() as db:
        resolve_channel(db, channel_id, user_id)


@app.get("/events/channels/{channel_id}", responses=ERROR_RESPONSES)
async def channel_events(
    channel_id: str,
    request: Request,
    user_id: str = Depends(get_current_user_id),
    broker: EventBus = Depends(get_broker),
) -> StreamingResponse:
    """Stream message_sent, message_updated, message_deleted and typing events."""
    # The session is closed before streaming; open streams hold no pooled connection
    await run_in_threadpool(_authorize_channel_stream, channel_id, user_id)
    topic = chat_topic(channel_id)
    queue = await broker.subscribe(topic)
    return _event_stream(request, broker, topic, queue)


@app.get("/events/me")
async def private_events(
    request: Request,
    user_id: str = Depends(get_current_user_id),
    broker: EventBus = Depends(get_broker),
) -> StreamingResponse:
    """Stream events addressed to the caller, such as open_dm."""
    topic = private_topic(user_id)
    queue = await broker.subscribe(topic)
    return _event_stream(request, broker, topic, queue)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.

    Returns metrics in Prometheus text exposition format including:
    - http_requests_total: Total HTTP requests by method, path, status
    - request_latency_seconds: Request latency histogram
    - chat_operations_total: Chat operation outcomes
    - fanout_publish_failures_total: Realtime events dropped after commit
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
