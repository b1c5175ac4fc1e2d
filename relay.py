import asyncio
import json
import uuid
from enum import Enum
from typing import Any, Optional

from pydantic import ValidationError

import signaling_events as events
from backend import Member, RoomRegistry
from logging_config import get_logger
from schemas.signaling import CheckRoomAck, JoinRoomMessage, MemberNotification, RoomMessage, SignalingFrame

logger = get_logger(__name__)


class ConnectionState(str, Enum):
    CONNECTED = "connected"
    JOINED_ROOM = "joined_room"
    DISCONNECTED = "disconnected"


class RelayConnection:
    """Signaling state of one WebSocket.

    CONNECTED -> JOINED_ROOM on join-room, back to CONNECTED on leave-room,
    DISCONNECTED (terminal) when the transport closes.
    """

    def __init__(self, relay: "SignalingRelay", websocket: Any, connection_id: Optional[str] = None):
        self.relay = relay
        self.websocket = websocket
        self.connection_id = connection_id or str(uuid.uuid4())
        self.member_id = self.connection_id
        self.room_id: Optional[str] = None
        self.state = ConnectionState.CONNECTED

    async def send(self, event: str, data: Any = None, ack: Optional[int] = None):
        frame = {"event": event, "data": data}
        if ack is not None:
            frame["ack"] = ack
        await self.websocket.send_text(json.dumps(frame))

    async def handle_text(self, text: str):
        """Parse and dispatch one incoming frame. Bad frames are logged and dropped."""
        if self.state == ConnectionState.DISCONNECTED:
            logger.debug(f"Dropping frame from disconnected connection {self.connection_id}")
            return
        try:
            frame = SignalingFrame.model_validate(json.loads(text))
        except (json.JSONDecodeError, ValidationError) as e:
            logger.warning(f"Malformed frame from connection {self.connection_id}: {e}")
            return

        handler = self.relay.handlers.get(frame.event)
        if handler is None:
            logger.warning(f"Unknown event '{frame.event}' from connection {self.connection_id}")
            return
        try:
            await handler(self, frame)
        except ValidationError as e:
            logger.warning(f"Invalid '{frame.event}' payload from connection {self.connection_id}: {e}")
        except Exception as e:
            logger.error(f"Error handling '{frame.event}' from connection {self.connection_id}: {e}", exc_info=True)


class SignalingRelay:
    """Applies join/leave/check to the RoomRegistry and forwards negotiation payloads.

    Offer, answer and ice-candidate bodies are never inspected: they go to every
    other member of the named room exactly as received.
    """

    def __init__(self, registry: RoomRegistry):
        self.registry = registry
        self.handlers = {
            events.JOIN_ROOM: self._on_join_room,
            events.LEAVE_ROOM: self._on_leave_room,
            events.CHECK_ROOM: self._on_check_room,
        }
        for event in events.FORWARDED_EVENTS:
            self.handlers[event] = self._on_forward

    def connect(self, websocket: Any) -> RelayConnection:
        connection = RelayConnection(self, websocket)
        logger.info(f"Connection {connection.connection_id} opened")
        return connection

    async def join(self, connection: RelayConnection, room_id: str, member_id: Optional[str] = None):
        if connection.state == ConnectionState.DISCONNECTED:
            return
        if connection.room_id == room_id:
            logger.debug(f"Connection {connection.connection_id} already in room {room_id}")
            return
        if connection.room_id is not None:
            # a member belongs to at most one room
            await self.leave(connection)

        connection.member_id = member_id or connection.connection_id
        member = Member(connection.connection_id, connection.member_id, connection)
        count_before = await self.registry.join(room_id, member)
        connection.room_id = room_id
        connection.state = ConnectionState.JOINED_ROOM
        logger.info(f"User {connection.member_id} joined room {room_id}. Previous size: {count_before}")

        await self.broadcast(
            room_id,
            events.USER_CONNECTED,
            MemberNotification(memberId=connection.member_id).model_dump(),
            exclude=connection.connection_id,
        )

    async def leave(self, connection: RelayConnection):
        room_id = connection.room_id
        if room_id is None:
            return
        connection.room_id = None
        if connection.state == ConnectionState.JOINED_ROOM:
            connection.state = ConnectionState.CONNECTED
        removed = await self.registry.leave(room_id, connection.connection_id)
        if removed is None:
            return
        logger.info(f"User {connection.member_id} left room {room_id}")
        await self.broadcast(
            room_id,
            events.USER_DISCONNECTED,
            MemberNotification(memberId=connection.member_id).model_dump(),
            exclude=connection.connection_id,
        )

    async def disconnect(self, connection: RelayConnection):
        if connection.state == ConnectionState.DISCONNECTED:
            return
        logger.info(f"Connection {connection.connection_id} closed")
        await self.leave(connection)
        connection.state = ConnectionState.DISCONNECTED

    def check_room(self, room_id: str) -> bool:
        exists = self.registry.exists(room_id)
        logger.info(f"Check room request for {room_id}: exists={exists}")
        return exists

    async def forward(self, connection: RelayConnection, event: str, room_id: str, data: Any) -> int:
        delivered = await self.broadcast(room_id, event, data, exclude=connection.connection_id)
        logger.debug(f"[Signal] {event} from {connection.connection_id} to room {room_id}: {delivered} recipient(s)")
        return delivered

    async def broadcast(self, room_id: str, event: str, data: Any, exclude: Optional[str] = None) -> int:
        """Send to every member of room_id except `exclude`. Returns the number of successful sends."""
        recipients = [m for m in self.registry.members(room_id) if m.connection_id != exclude]
        if not recipients:
            return 0
        results = await asyncio.gather(
            *(m.connection.send(event, data) for m in recipients),
            return_exceptions=True,
        )
        delivered = 0
        for member, result in zip(recipients, results):
            if isinstance(result, Exception):
                # the recipient's own receive loop notices the close and runs the leave path
                logger.warning(f"Error sending '{event}' to {member.connection_id} in room {room_id}: {result}")
            else:
                delivered += 1
        return delivered

    async def _on_join_room(self, connection: RelayConnection, frame: SignalingFrame):
        message = JoinRoomMessage.model_validate(frame.data)
        await self.join(connection, message.roomId, message.memberId)

    async def _on_leave_room(self, connection: RelayConnection, frame: SignalingFrame):
        message = RoomMessage.model_validate(frame.data)
        if message.roomId != connection.room_id:
            logger.debug(f"Leave for {message.roomId} ignored, connection {connection.connection_id} is in {connection.room_id}")
            return
        await self.leave(connection)

    async def _on_check_room(self, connection: RelayConnection, frame: SignalingFrame):
        message = RoomMessage.model_validate(frame.data)
        exists = self.check_room(message.roomId)
        await connection.send(events.ACK, CheckRoomAck(exists=exists).model_dump(), ack=frame.ack)

    async def _on_forward(self, connection: RelayConnection, frame: SignalingFrame):
        message = RoomMessage.model_validate(frame.data)
        await self.forward(connection, frame.event, message.roomId, frame.data)
