from fastapi import FastAPI, Request, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from pydantic import ValidationError
from routers.auth import auth_router
from routers.rooms import rooms_router
from routers.users import users_router
from backend import room_directory
from constants import (
    CORS_ORIGINS, DIRECTORY_TIMEOUT_SECONDS, ECHO_TO_SENDER, EXPIRY_SWEEP_ENABLED,
    EXPIRY_SWEEP_INTERVAL_SECONDS, REQUIRE_ROOM_PARTICIPANT, STRICT_SENDER_VALIDATION,
)
from dependencies import verifier
from relay.blocking import run_in_thread
from relay.broadcast import MessageRelay
from relay.connection import Connection
from relay.errors import ChatError, DirectoryUnavailable, NotAMember
from relay.expiry import ExpirySweeper
from relay.registry import RoomRegistry
from schemas.events import JoinRoomEvent, LeaveRoomEvent, NewMessageEvent, parse_event
from schemas.rooms import utcnow
from logging_config import get_logger, setup_logging
import os

# Setup logging
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)
logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    try:
        await run_in_thread(room_directory.ping, timeout=DIRECTORY_TIMEOUT_SECONDS)
        logger.info("Room directory reachable")
    except DirectoryUnavailable as e:
        # Requests touching the directory fail individually until it is back
        logger.error(f"Room directory unreachable at startup: {e.detail}")

    registry = RoomRegistry(verifier, room_directory, require_participant=REQUIRE_ROOM_PARTICIPANT)
    relay = MessageRelay(registry, room_directory, strict=STRICT_SENDER_VALIDATION, echo_to_sender=ECHO_TO_SENDER)
    sweeper = ExpirySweeper(room_directory, EXPIRY_SWEEP_INTERVAL_SECONDS)
    if EXPIRY_SWEEP_ENABLED:
        sweeper.start()
    app.state.registry = registry
    app.state.relay = relay
    app.state.sweeper = sweeper
    logger.info(f"Relay ready (strict={STRICT_SENDER_VALIDATION}, echo_to_sender={ECHO_TO_SENDER})")
    try:
        yield
    finally:
        await sweeper.stop()
        await relay.drain()
        await registry.close()
        logger.info("Relay shut down")


app = FastAPI(title="QuickChat", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(auth_router)
app.include_router(users_router)
app.include_router(rooms_router)

logger.info("FastAPI application initialized")


@app.exception_handler(ChatError)
async def chat_error_handler(request: Request, exc: ChatError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.detail, "code": exc.code})


@app.get("/health")
async def health(request: Request):
    registry = request.app.state.registry
    return {
        "status": "ok",
        "timestamp": utcnow().isoformat(),
        "active_rooms": registry.room_count(),
    }


async def handle_event(registry: RoomRegistry, relay: MessageRelay, connection: Connection, data: str):
    """Dispatch one inbound frame; failures are reported to this connection only."""
    try:
        event = parse_event(data)
    except ValidationError as e:
        logger.warning(f"Invalid event from connection {connection.connection_id}: {e.error_count()} error(s)")
        connection.deliver({"type": "error", "code": "invalid_event", "detail": "Malformed event"})
        return

    try:
        if isinstance(event, JoinRoomEvent):
            await registry.join(event.room_id, event.token, connection)
            connection.deliver({
                "type": "joined",
                "room_id": event.room_id,
                "subscribers": registry.subscriber_count(event.room_id),
            })
        elif isinstance(event, NewMessageEvent):
            await relay.send(event.room_id, connection, event.message)
        elif isinstance(event, LeaveRoomEvent):
            if not await registry.leave(event.room_id, connection):
                raise NotAMember(f"Connection is not subscribed to room {event.room_id}")
            connection.deliver({"type": "left", "room_id": event.room_id})
    except ChatError as e:
        logger.debug(f"{event.type} from connection {connection.connection_id} failed: {e.code}")
        connection.deliver(e.to_payload(event.room_id))


@app.websocket("/ws")
async def websocket_endpoint(websocket: WebSocket):
    """Persistent connection carrying join-room, new-message and leave-room events."""
    registry: RoomRegistry = websocket.app.state.registry
    relay: MessageRelay = websocket.app.state.relay

    await websocket.accept()
    connection = Connection(websocket)
    connection.start()
    client_host = websocket.client.host if websocket.client else "unknown"
    logger.info(f"WebSocket connection {connection.connection_id} accepted from {client_host}")

    message_count = 0
    try:
        while True:
            data = await websocket.receive_text()
            message_count += 1
            logger.debug(f"Received event #{message_count} from connection {connection.connection_id}")
            await handle_event(registry, relay, connection, data)
    except WebSocketDisconnect:
        logger.info(f"WebSocket disconnected normally for connection {connection.connection_id}")
    except Exception as e:
        logger.error(f"WebSocket error for connection {connection.connection_id}: {e}", exc_info=True)
        try:
            await websocket.close()
        except Exception as close_error:
            logger.debug(f"Error closing WebSocket: {close_error}")
    finally:
        # Disconnect is an implicit leave of every joined room
        left = await registry.disconnect(connection)
        await connection.close()
        logger.info(f"Connection {connection.connection_id} closed after {message_count} events, left {len(left)} room(s)")
