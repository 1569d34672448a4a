import asyncio
import json
import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, Request, Response, status
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from chatfeed import __version__
from chatfeed.config import Settings, get_settings
from chatfeed.errors import InvalidMessage, StorageUnavailable
from chatfeed.hub import BroadcastHub
from chatfeed.ingestion import ChatService
from chatfeed.logging_utils import RequestLoggingMiddleware, log_ingest_data, setup_logging
from chatfeed.metrics import get_metrics, get_metrics_content_type, record_ingest_outcome
from chatfeed.schemas import (
    AddMessageRequest,
    ErrorResponse,
    HealthResponse,
    HistoryEntry,
    HistoryResponse,
)
from chatfeed.storage import MessageStore
from chatfeed.streaming import SSE_MEDIA_TYPE, EventStream, parse_last_event_id

logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Dependencies
# =============================================================================

def get_service(request: Request) -> ChatService:
    return request.app.state.service


def get_store(request: Request) -> MessageStore:
    return request.app.state.store


def get_hub(request: Request) -> BroadcastHub:
    return request.app.state.hub


# =============================================================================
# Health Check Routes
# =============================================================================

@router.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """
    Liveness probe - always returns 200 once the app is running.
    """
    return HealthResponse(status="ok")


@router.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response, store: MessageStore = Depends(get_store)) -> HealthResponse:
    """
    Readiness probe - returns 200 only if the DB is reachable and the schema
    is applied, 503 (Service Unavailable) otherwise.
    """
    if not await asyncio.to_thread(store.check_health):
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Ingestion Route
# =============================================================================

@router.post(
    "/api/v0/add_message",
    status_code=status.HTTP_204_NO_CONTENT,
    responses={
        422: {"model": ErrorResponse, "description": "Invalid message"},
        503: {"model": ErrorResponse, "description": "Storage unavailable, retry with the same id"},
    }
)
async def add_message(
    request: Request,
    service: ChatService = Depends(get_service),
) -> Response:
    """
    Add a message to the chat exactly once.

    - Validates the body and the message policy
    - Idempotent: a repeated id returns 204 without storing or broadcasting
    - Every new message is broadcast to all live event streams before the
      response is sent
    """
    raw_body = await request.body()
    logger.debug(f"Request body size: {len(raw_body)} bytes")

    body_dict = None
    try:
        body_dict = json.loads(raw_body)
        payload = AddMessageRequest.model_validate(body_dict)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        # json.loads decodes bytes itself, so a non UTF-8 body fails here too
        logger.error(f"Invalid JSON: {e}")
        record_ingest_outcome("validation_error")
        log_ingest_data(request=request, result="validation_error")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=f"Invalid JSON: {str(e)}"
        )
    except ValidationError as e:
        logger.error(f"Validation error: {e}")
        record_ingest_outcome("validation_error")
        message_id = body_dict.get("id") if isinstance(body_dict, dict) else None
        log_ingest_data(
            request=request,
            message_id=message_id if isinstance(message_id, str) else None,
            result="validation_error"
        )
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )

    try:
        message, was_new = await service.submit(payload.id, payload.sender, payload.content)
    except InvalidMessage as e:
        logger.warning(f"Rejected message {payload.id}: {e}")
        record_ingest_outcome("validation_error")
        log_ingest_data(request=request, message_id=payload.id, result="validation_error")
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail=str(e)
        )
    except StorageUnavailable as e:
        logger.error(f"Failed to store message {payload.id}: {e}")
        record_ingest_outcome("storage_error")
        log_ingest_data(request=request, message_id=payload.id, result="storage_error")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Failed to store message, retry with the same id"
        )

    result = "created" if was_new else "duplicate"
    logger.info(f"Message processed: {payload.id}, sequence: {message.sequence}, result: {result}")
    record_ingest_outcome(result)
    log_ingest_data(request=request, message_id=payload.id, dup=not was_new, result=result)

    return Response(status_code=status.HTTP_204_NO_CONTENT)


# =============================================================================
# History and Event Stream Routes
# =============================================================================

@router.get(
    "/api/v0/messages",
    response_model=HistoryResponse,
    responses={503: {"model": ErrorResponse, "description": "Storage unavailable"}},
)
async def list_messages(
    after: Annotated[int, Query(ge=0, description="Only messages with a greater sequence")] = 0,
    store: MessageStore = Depends(get_store),
) -> HistoryResponse:
    """
    Snapshot of the chat history ordered by sequence.

    `last_sequence` can be sent as Last-Event-ID when opening the event
    stream to continue exactly after this snapshot.
    """
    try:
        messages = await asyncio.to_thread(store.list_since, after)
    except StorageUnavailable as e:
        logger.error(f"GET /api/v0/messages failed: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Chat history temporarily unavailable"
        )

    data = [HistoryEntry.from_message(message) for message in messages]
    last_sequence = data[-1].sequence if data else after
    logger.info(f"GET /api/v0/messages: returned {len(data)} messages after {after}")
    return HistoryResponse(data=data, last_sequence=last_sequence)


@router.get("/api/v0/events")
async def events(
    request: Request,
    last_event_id: Annotated[Optional[str], Header(alias="Last-Event-ID")] = None,
    store: MessageStore = Depends(get_store),
    hub: BroadcastHub = Depends(get_hub),
) -> StreamingResponse:
    """
    Server-Sent Events stream of the chat.

    Replays the stored history (or only what follows Last-Event-ID) and then
    pushes every new message as it is committed. Each event's id is the
    message sequence. A stream the server gives up on ends with an `error`
    event carrying a JSON `message`.
    """
    stream = EventStream(
        store,
        hub,
        last_event_id=parse_last_event_id(last_event_id),
        is_disconnected=request.is_disconnected,
    )
    return StreamingResponse(
        stream.events(),
        media_type=SSE_MEDIA_TYPE,
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


# =============================================================================
# Metrics Route
# =============================================================================

@router.get("/metrics")
async def metrics() -> Response:
    """
    Expose Prometheus-style metrics.
    """
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )


# =============================================================================
# Application Factory
# =============================================================================

def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Settings are resolved when the application starts, so a missing
    DATABASE_PATH stops the server before it accepts any connection.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """
        - Startup: load settings, open the store, resume the sequencer
        - Shutdown: end every open event stream, release the database
        """
        resolved = settings or get_settings()
        setup_logging(resolved.LOG_LEVEL)

        Path(resolved.DATABASE_PATH).expanduser().parent.mkdir(parents=True, exist_ok=True)
        store = MessageStore(resolved.database_url)
        store.init_db()
        hub = BroadcastHub(buffer_size=resolved.LISTENER_BUFFER_SIZE)
        service = ChatService.open(
            store,
            hub,
            max_sender_length=resolved.MAX_SENDER_LENGTH,
            max_content_length=resolved.MAX_CONTENT_LENGTH,
        )

        app.state.settings = resolved
        app.state.store = store
        app.state.hub = hub
        app.state.service = service
        app.state.loop = asyncio.get_running_loop()
        logger.info(f"Ready, {service.sequencer.last_sequence} messages in history")

        yield

        hub.close()
        store.dispose()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="chatfeed",
        description="Idempotent chat message ingestion with a live Server-Sent Events feed",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_middleware(RequestLoggingMiddleware)
    app.include_router(router)
    return app


def close_event_streams(app: FastAPI) -> None:
    """
    Close the broadcast hub from any thread, e.g. a signal handler.

    Open event streams would otherwise keep a graceful shutdown waiting.
    """
    hub = getattr(app.state, "hub", None)
    loop = getattr(app.state, "loop", None)
    if hub is None or loop is None:
        return
    loop.call_soon_threadsafe(hub.close)


app = create_app()
