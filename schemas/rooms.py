from pydantic import BaseModel


class ServiceInfoResponse(BaseModel):
    hello: str
    service: str
    status: str


class RoomStatusResponse(BaseModel):
    room_id: str
    exists: bool
    member_count: int
