from fastapi import APIRouter, Depends, HTTPException, Request, Response
from schemas.rooms import CreateRoomRequest, RoomResponse, UpdateLastMessageRequest
from schemas.users import User
from backend import room_directory, user_store
from constants import DEFAULT_MESSAGE_EXPIRY_SECONDS, DIRECTORY_TIMEOUT_SECONDS
from dependencies import get_current_user, get_registry
from relay.blocking import run_in_thread
from relay.expiry import visible_last_message
from typing import List
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


def room_response(room, registry) -> RoomResponse:
    # Expired last messages are redacted rather than returned stale
    return RoomResponse(
        **room.model_dump(exclude={"last_message"}),
        last_message=visible_last_message(room),
        online_count=registry.subscriber_count(room.id),
    )


async def get_room_for(room_id: str, current_user: User):
    room = await run_in_thread(room_directory.get_room, room_id, timeout=DIRECTORY_TIMEOUT_SECONDS)
    if not room:
        logger.warning(f"Room {room_id} not found")
        raise HTTPException(status_code=404, detail="Room not found")
    if not room.has_participant(current_user.username):
        logger.warning(f"Access to room {room_id} denied for {current_user.username}")
        raise HTTPException(status_code=403, detail="Access denied")
    return room


@rooms_router.get("/", response_model=List[RoomResponse])
async def list_rooms(current_user: User = Depends(get_current_user), registry=Depends(get_registry)):
    """Rooms the current user participates in, most recently updated first."""
    rooms = await run_in_thread(room_directory.find_rooms_containing, current_user.username, timeout=DIRECTORY_TIMEOUT_SECONDS)
    logger.debug(f"Listing {len(rooms)} rooms for {current_user.username}")
    return [room_response(room, registry) for room in rooms]


@rooms_router.post("/", response_model=RoomResponse)
async def create_room(
    body: CreateRoomRequest,
    request: Request,
    response: Response,
    current_user: User = Depends(get_current_user),
    registry=Depends(get_registry),
):
    # Re-initiating a chat with the same user returns the existing room (200); a new room is 201
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"Room creation request from {current_user.username} ({client_host}) with {body.username}")

    if body.username.casefold() == current_user.username.casefold():
        raise HTTPException(status_code=400, detail="Cannot start a chat with yourself")

    other_user = await run_in_thread(user_store.get_user_by_username, body.username, timeout=DIRECTORY_TIMEOUT_SECONDS)
    if not other_user:
        logger.warning(f"Room creation failed: user {body.username} not found")
        raise HTTPException(status_code=404, detail="User not found")

    expiry = body.message_expiry_time if body.message_expiry_time is not None else DEFAULT_MESSAGE_EXPIRY_SECONDS
    room, created = await run_in_thread(
        room_directory.create_room,
        [current_user.username, other_user.username],
        expiry,
        timeout=DIRECTORY_TIMEOUT_SECONDS,
    )
    response.status_code = 201 if created else 200
    return room_response(room, registry)


@rooms_router.get("/{room_id}", response_model=RoomResponse)
async def get_room_details(room_id: str, current_user: User = Depends(get_current_user), registry=Depends(get_registry)):
    room = await get_room_for(room_id, current_user)
    return room_response(room, registry)


@rooms_router.put("/{room_id}/last-message", response_model=RoomResponse)
async def update_last_message(
    room_id: str,
    body: UpdateLastMessageRequest,
    current_user: User = Depends(get_current_user),
    registry=Depends(get_registry),
):
    await get_room_for(room_id, current_user)
    room = await run_in_thread(room_directory.update_last_message, room_id, body.last_message, timeout=DIRECTORY_TIMEOUT_SECONDS)
    logger.info(f"Last message of room {room_id} updated by {current_user.username}")
    return room_response(room, registry)
