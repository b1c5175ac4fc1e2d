from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    MEDIA_ACCESS_DENIED = "media_access_denied"
    ROOM_NOT_FOUND = "room_not_found"
    PROTOCOL_VIOLATION = "protocol_violation"
    TRANSPORT_DISCONNECT = "transport_disconnect"


class SignalingError(Exception):
    code: ErrorCode

    def __init__(self, message: str, room_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.room_id = room_id

    def to_dict(self) -> dict:
        return {"code": self.code.value, "message": self.message, "room_id": self.room_id}


class MediaAccessDenied(SignalingError):
    """Camera/microphone could not be opened. Terminal for that attempt."""

    code = ErrorCode.MEDIA_ACCESS_DENIED


class RoomNotFound(SignalingError):
    """Advisory only: nobody is in the room yet. Never blocks a join."""

    code = ErrorCode.ROOM_NOT_FOUND


class ProtocolViolation(SignalingError):
    """Answer or candidate arrived with no matching offer / peer connection."""

    code = ErrorCode.PROTOCOL_VIOLATION


class TransportDisconnect(SignalingError):
    code = ErrorCode.TRANSPORT_DISCONNECT
