from typing import Optional


class ChatError(Exception):
    """Base class for failures scoped to a single request or connection."""

    code = "error"
    status_code = 500
    default_detail = "Something went wrong"

    def __init__(self, detail: Optional[str] = None):
        self.detail = detail or self.default_detail
        super().__init__(self.detail)

    def to_payload(self, room_id: Optional[str] = None) -> dict:
        payload = {"type": "error", "code": self.code, "detail": self.detail}
        if room_id is not None:
            payload["room_id"] = room_id
        return payload


class Unauthorized(ChatError):
    code = "unauthorized"
    status_code = 401
    default_detail = "Token is not valid"


class RoomNotFound(ChatError):
    code = "room_not_found"
    status_code = 404
    default_detail = "Room not found"


class NotAMember(ChatError):
    code = "not_a_member"
    status_code = 403
    default_detail = "Access denied"


class DirectoryUnavailable(ChatError):
    code = "directory_unavailable"
    status_code = 503
    default_detail = "Room directory is unavailable"


class InvalidMessage(ChatError):
    code = "invalid_message"
    status_code = 400
    default_detail = "Message must contain text"


class AlreadyTaken(ChatError):
    code = "already_taken"
    status_code = 400
    default_detail = "Already taken"


class UserNotFound(ChatError):
    code = "user_not_found"
    status_code = 404
    default_detail = "User not found"
