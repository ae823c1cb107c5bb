import json
import logging
import time
from contextlib import asynccontextmanager
from io import BytesIO
from pathlib import Path
from typing import Annotated, Any, Optional

from fastapi import (
    FastAPI,
    File,
    Form,
    HTTPException,
    Query,
    Response,
    UploadFile,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.staticfiles import StaticFiles

from roomchat.blob_store import LocalBlobStore
from roomchat.broadcast import RoomBroadcastChannel
from roomchat.config import settings
from roomchat.errors import BlobStoreError, StoreError, ValidationError
from roomchat.ingest import ERROR_EVENT, MessageIngestPipeline
from roomchat.logging_utils import RequestLoggingMiddleware, new_request_id, request_id_ctx, setup_logging
from roomchat.membership import MembershipTracker
from roomchat.metrics import get_metrics, get_metrics_content_type
from roomchat.schemas import (
    ErrorResponse,
    HealthResponse,
    MembershipRequest,
    MessageResponse,
    MessagesListResponse,
    RoomCreateRequest,
    RoomResponse,
    SweepResponse,
    TextMessageRequest,
    UploadResponse,
)
from roomchat.storage import RecordStore, check_db_health, init_db
from roomchat.sweeper import ExpirySweeper, SweepScheduler
from roomchat.utils import expiry_from_hours, generate_room_code, normalize_room_code, utc_now


# Setup structured JSON logging
setup_logging(settings.LOG_LEVEL)
logger = logging.getLogger(__name__)

ROOM_CODE_ATTEMPTS = 5

store = RecordStore()
blob_store = LocalBlobStore(settings.BLOB_STORAGE_DIR, settings.BLOB_BASE_URL)
channel = RoomBroadcastChannel()
membership = MembershipTracker(store)
pipeline = MessageIngestPipeline(store, channel)
sweeper = ExpirySweeper(store, blob_store)
scheduler = SweepScheduler(sweeper.sweep, settings.SWEEP_INTERVAL_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Lifespan context manager for startup and shutdown events.
    - Startup: create tables and the blob directory, start the sweep scheduler
    - Shutdown: stop the scheduler
    """
    init_db()
    blob_store.ensure_root()
    if settings.SWEEP_ENABLED:
        scheduler.start()
    yield
    await scheduler.stop()


app = FastAPI(
    title="Room Chat API",
    description="Real-time chat rooms with expiring file uploads",
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CLIENT_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)

if settings.BLOB_BASE_URL.startswith("/"):
    app.mount(
        settings.BLOB_BASE_URL,
        StaticFiles(directory=settings.BLOB_STORAGE_DIR, check_dir=False),
        name="blobs",
    )


# =============================================================================
# Health Check Routes
# =============================================================================

@app.get("/health/live", response_model=HealthResponse)
async def health_live() -> HealthResponse:
    """Liveness probe - always returns 200 once the app is running."""
    return HealthResponse(status="ok")


@app.get("/health/ready", response_model=HealthResponse)
async def health_ready(response: Response) -> HealthResponse:
    """
    Readiness probe - returns 200 only if:
    1. DB is reachable and schema is applied
    2. The blob directory is writable

    Otherwise returns 503 (Service Unavailable).
    """
    if not check_db_health():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Database not reachable or schema not applied"
        )

    if not blob_store.is_writable():
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
        return HealthResponse(
            status="not_ready",
            reason="Blob storage directory not writable"
        )

    return HealthResponse(status="ready")


# =============================================================================
# Room Routes
# =============================================================================

@app.post(
    "/api/rooms",
    response_model=RoomResponse,
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse, "description": "Room code taken"}},
)
async def create_room(body: RoomCreateRequest) -> RoomResponse:
    """
    Create a room. The creator becomes its first member.

    A code is generated unless one is requested.
    """
    try:
        if body.code:
            room, created = await membership.create_room(body.code, body.creator)
            if not created:
                raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Room code already in use")
        else:
            for _ in range(ROOM_CODE_ATTEMPTS):
                room, created = await membership.create_room(generate_room_code(), body.creator)
                if created:
                    break
            else:
                raise HTTPException(
                    status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
                    detail="Failed to allocate a room code"
                )
    except StoreError:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to create room")

    return RoomResponse.from_room(room)


@app.get(
    "/api/rooms/{code}",
    response_model=RoomResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_room(code: str) -> RoomResponse:
    try:
        room = await store.get_room(normalize_room_code(code))
    except StoreError:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to load room")
    if room is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
    return RoomResponse.from_room(room)


@app.post("/api/rooms/{code}/join", response_model=RoomResponse)
async def join_room(code: str, body: MembershipRequest) -> RoomResponse:
    try:
        room = await membership.join(code, body.client_id)
    except StoreError:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to join room")
    return RoomResponse.from_room(room)


@app.post(
    "/api/rooms/{code}/leave",
    response_model=RoomResponse,
    responses={404: {"model": ErrorResponse}},
)
async def leave_room(code: str, body: MembershipRequest) -> RoomResponse:
    try:
        await membership.leave(code, body.client_id)
        room = await store.get_room(normalize_room_code(code))
    except StoreError:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to leave room")
    if room is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Room not found")
    return RoomResponse.from_room(room)


# =============================================================================
# Message Routes
# =============================================================================

@app.get("/api/messages", response_model=MessagesListResponse)
async def list_messages(
    room_id: Annotated[Optional[str], Query(alias="roomId", description="Room code")] = None,
) -> MessagesListResponse:
    """List a room's messages, oldest first."""
    if not room_id or not room_id.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing roomId query parameter")

    try:
        messages = await store.find_messages_by_room(normalize_room_code(room_id))
    except StoreError:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server error fetching messages"
        )

    logger.info(f"GET /api/messages: returned {len(messages)} messages for room {room_id}")
    return MessagesListResponse(
        messages=[MessageResponse.model_validate(m).to_payload() for m in messages]
    )


@app.post(
    "/api/messages",
    status_code=status.HTTP_201_CREATED,
    responses={
        400: {"model": ErrorResponse, "description": "Missing fields"},
        500: {"model": ErrorResponse, "description": "Store failure"},
    },
)
async def post_message(body: TextMessageRequest) -> dict:
    """Post a text message; it is broadcast to the room like a WebSocket message."""
    data = {
        "roomId": body.room_id,
        "sender": body.sender,
        "message": {"type": "text", "content": body.content},
    }
    try:
        saved = await pipeline.ingest(data)
    except ValidationError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except StoreError:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Server error saving message")

    return {"message": "Message saved", "newMessage": saved.to_payload()}


# =============================================================================
# Upload Route
# =============================================================================

def parse_expiry_hours(raw: Optional[str]) -> Optional[float]:
    """Form values arrive as strings; anything unparsable means no expiry."""
    if raw is None or not raw.strip():
        return None
    try:
        return float(raw)
    except ValueError:
        return None


@app.post(
    "/api/upload",
    response_model=UploadResponse,
    responses={
        400: {"model": ErrorResponse, "description": "No file or room"},
        413: {"model": ErrorResponse, "description": "File too large"},
        500: {"model": ErrorResponse, "description": "Upload failed"},
    },
)
async def upload_file(
    file: Annotated[Optional[UploadFile], File()] = None,
    room_id: Annotated[Optional[str], Form(alias="roomId")] = None,
    expiry_hours: Annotated[Optional[str], Form(alias="expiryHours")] = None,
) -> UploadResponse:
    """
    Upload a file into a room's blob storage.

    The response carries what the client needs to send a file message.
    Positive expiryHours make the file expire; otherwise it is permanent.
    """
    if file is None or not file.filename:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="No file uploaded")
    if not room_id or not room_id.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing roomId")

    too_large = HTTPException(
        status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
        detail=f"File exceeds {settings.MAX_UPLOAD_BYTES} bytes"
    )
    if file.size is not None and file.size > settings.MAX_UPLOAD_BYTES:
        raise too_large
    # Never buffer more than one byte past the limit
    content = await file.read(settings.MAX_UPLOAD_BYTES + 1)
    if len(content) > settings.MAX_UPLOAD_BYTES:
        raise too_large

    original_name = Path(file.filename).name
    blob_name = f"{int(time.time() * 1000)}-{original_name}"
    content_type = file.content_type or "application/octet-stream"
    hours = parse_expiry_hours(expiry_hours)
    uploaded_at = utc_now()
    expires_at = expiry_from_hours(hours, uploaded_at)

    try:
        url = await blob_store.put(blob_name, BytesIO(content), content_type)
    except BlobStoreError as e:
        logger.error(f"Blob upload failed: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to upload file")

    try:
        await store.create_file_record({
            "blob_name": blob_name,
            "room_id": normalize_room_code(room_id),
            "url": url,
            "uploaded_at": uploaded_at,
            "expiry_hours": hours if expires_at is not None else 0,
            "expires_at": expires_at,
        })
    except StoreError:
        # Without a record the sweeper would never find this blob
        try:
            await blob_store.delete_blob(blob_name)
        except BlobStoreError as e:
            logger.error(f"Failed to remove orphaned blob {blob_name}: {e}")
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Failed to record upload")

    return UploadResponse(
        file_url=url,
        file_name=original_name,
        blob_name=blob_name,
        file_type=content_type,
        size=len(content),
        expires_at=expires_at,
    )


# =============================================================================
# Sweep Route
# =============================================================================

@app.post("/api/sweep", response_model=SweepResponse)
async def trigger_sweep() -> SweepResponse:
    """Run a sweep now. Returns triggered=false if one is already running."""
    if scheduler.is_sweeping:
        return SweepResponse(triggered=False)
    report = await scheduler.trigger()
    return SweepResponse(triggered=True, report=report)


# =============================================================================
# WebSocket Route
# =============================================================================

def _room_and_client(data: Any) -> tuple[Optional[str], Optional[str]]:
    # join-room accepts a bare room code or {"roomId": ..., "clientId": ...}
    if isinstance(data, str):
        return data, None
    if isinstance(data, dict):
        return data.get("roomId"), data.get("clientId")
    return None, None


async def handle_event(websocket: WebSocket, event: Optional[str], data: Any) -> None:
    if event == "send-message":
        await pipeline.handle_send(data, websocket)
        return

    if event not in ("join-room", "leave-room"):
        await channel.send(websocket, ERROR_EVENT, {"error": f"Unknown event: {event}"})
        return

    room_id, client_id = _room_and_client(data)
    if not room_id or not str(room_id).strip():
        await channel.send(websocket, ERROR_EVENT, {"error": "Room ID is required."})
        return
    code = normalize_room_code(str(room_id))

    try:
        if event == "join-room":
            channel.join(websocket, code)
            if client_id:
                await membership.join(code, client_id)
            logger.info(f"Connection joined room {code}")
            await channel.send(websocket, "joined-room", {"roomId": code})
        else:
            channel.leave(websocket, code)
            if client_id:
                await membership.leave(code, client_id)
            logger.info(f"Connection left room {code}")
            await channel.send(websocket, "left-room", {"roomId": code})
    except (ValidationError, StoreError) as e:
        logger.error(f"Failed to handle {event} for room {code}: {e}")
        await channel.send(websocket, ERROR_EVENT, {"error": f"Failed to {event.replace('-', ' ')}."})


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """
    Duplex connection for a chat client.

    Frames are JSON objects {"event": ..., "data": ...}. Client events:
    join-room, leave-room, send-message. Server events: joined-room,
    left-room, receive-message, error-message.
    """
    await websocket.accept()
    token = request_id_ctx.set(new_request_id())
    logger.info("New client connected")

    try:
        while True:
            text = await websocket.receive_text()
            try:
                frame = json.loads(text)
            except json.JSONDecodeError:
                await channel.send(websocket, ERROR_EVENT, {"error": "Invalid JSON"})
                continue
            if not isinstance(frame, dict):
                await channel.send(websocket, ERROR_EVENT, {"error": "Invalid frame"})
                continue
            await handle_event(websocket, frame.get("event"), frame.get("data"))
    except WebSocketDisconnect:
        rooms = channel.disconnect(websocket)
        logger.info(f"Client disconnected from rooms: {sorted(rooms)}")
    finally:
        request_id_ctx.reset(token)


# =============================================================================
# Metrics Route
# =============================================================================

@app.get("/metrics")
async def metrics() -> Response:
    """Expose Prometheus-style metrics."""
    return Response(
        content=get_metrics(),
        media_type=get_metrics_content_type()
    )
