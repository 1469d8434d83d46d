"""WebSocket event models.

Inbound frames are JSON objects tagged by ``type``; the relay answers with
``joined`` / ``left`` replies, fans out ``message`` events, and reports
per-request failures as ``error`` or ``warning`` events.
"""
from datetime import datetime
from pydantic import BaseModel, Field, TypeAdapter
from typing import Annotated, Literal, Optional, Union

from schemas.rooms import utcnow


class MessageIn(BaseModel):
    text: str = ""
    sender: Optional[str] = None

class ChatMessage(BaseModel):
    text: str
    sender: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    expires_at: Optional[datetime] = None

class Ack(BaseModel):
    room_id: str
    delivered: int
    message: ChatMessage

class JoinRoomEvent(BaseModel):
    type: Literal["join-room"]
    room_id: str = Field(min_length=1)
    token: str = ""

class NewMessageEvent(BaseModel):
    type: Literal["new-message"]
    room_id: str = Field(min_length=1)
    message: MessageIn

class LeaveRoomEvent(BaseModel):
    type: Literal["leave-room"]
    room_id: str = Field(min_length=1)


InboundEvent = TypeAdapter(
    Annotated[Union[JoinRoomEvent, NewMessageEvent, LeaveRoomEvent], Field(discriminator="type")]
)


def parse_event(raw: str):
    """Validate one inbound frame; raises pydantic.ValidationError."""
    return InboundEvent.validate_json(raw)


def message_event(room_id: str, message: ChatMessage) -> dict:
    return {"type": "message", "room_id": room_id, "message": message.model_dump(mode="json")}
