from datetime import datetime, timezone
from pydantic import BaseModel, Field
from typing import List, Optional

from constants import DEFAULT_MESSAGE_EXPIRY_SECONDS


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LastMessage(BaseModel):
    text: str
    sender: str
    timestamp: datetime = Field(default_factory=utcnow)


class Room(BaseModel):
    id: str
    participants: List[str]
    last_message: Optional[LastMessage] = None
    message_expiry_time: int = Field(default=DEFAULT_MESSAGE_EXPIRY_SECONDS, ge=0)
    is_active: bool = True
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def has_participant(self, username: str) -> bool:
        # Usernames compare case-insensitively, like the directory keys
        needle = username.casefold()
        return any(p.casefold() == needle for p in self.participants)


class CreateRoomRequest(BaseModel):
    username: str
    message_expiry_time: Optional[int] = Field(default=None, ge=0)

class UpdateLastMessageRequest(BaseModel):
    last_message: LastMessage

class RoomResponse(BaseModel):
    id: str
    participants: List[str]
    last_message: Optional[LastMessage]
    message_expiry_time: int
    is_active: bool
    created_at: datetime
    updated_at: datetime
    online_count: int = 0
