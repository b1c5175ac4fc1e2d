from fastapi import APIRouter, Request
from schemas.rooms import RoomStatusResponse
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


@rooms_router.get("/{room_id}", response_model=RoomStatusResponse)
async def get_room_status(room_id: str, request: Request):
    """
    HTTP flavour of check-room: whether anybody is currently in the room.
    An unknown room is reported as exists=false, not as 404.
    """
    registry = request.app.state.registry
    client_host = request.client.host if request.client else "unknown"
    exists = registry.exists(room_id)
    member_count = registry.member_count(room_id)
    logger.info(f"Room status request for {room_id} from {client_host}: exists={exists}, members={member_count}")
    return RoomStatusResponse(room_id=room_id, exists=exists, member_count=member_count)
