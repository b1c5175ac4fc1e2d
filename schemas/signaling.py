from pydantic import BaseModel, ConfigDict
from typing import Any, Optional


class SignalingFrame(BaseModel):
    event: str
    data: Any = None
    ack: Optional[int] = None


class RoomMessage(BaseModel):
    # offer/answer/ice-candidate carry more fields; they are forwarded as received
    model_config = ConfigDict(extra="allow")

    roomId: str


class JoinRoomMessage(BaseModel):
    roomId: str
    memberId: Optional[str] = None


class CheckRoomAck(BaseModel):
    exists: bool


class MemberNotification(BaseModel):
    memberId: str
