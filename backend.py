import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from logging_config import get_logger

logger = get_logger(__name__)


@dataclass
class Member:
    """A connection that joined a room.

    connection_id is assigned by the server per WebSocket, member_id is what the
    client announced in join-room (falls back to connection_id).
    """

    connection_id: str
    member_id: str
    connection: Any = field(default=None, repr=False, compare=False)


@dataclass
class _RoomLock:
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    users: int = 0


class RoomRegistry:
    """In-memory room -> members map. Nothing is persisted.

    Mutations are serialized per room id. Reads never await, so they always see
    a consistent snapshot from the event loop's point of view.
    """

    def __init__(self):
        # room_id -> {connection_id: Member}
        self._rooms: Dict[str, Dict[str, Member]] = {}
        # connection_id -> room_id
        self._member_rooms: Dict[str, str] = {}
        self._locks: Dict[str, _RoomLock] = {}
        logger.info("Initializing in-memory RoomRegistry")

    @asynccontextmanager
    async def _room_lock(self, room_id: str):
        entry = self._locks.get(room_id)
        if entry is None:
            entry = self._locks[room_id] = _RoomLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                self._locks.pop(room_id, None)

    async def join(self, room_id: str, member: Member) -> int:
        """Add member to room_id, creating the room if needed.

        Returns the member count before this join. Joining twice is a no-op.
        """
        async with self._room_lock(room_id):
            members = self._rooms.setdefault(room_id, {})
            count_before = len(members)
            if member.connection_id in members:
                logger.debug(f"Member {member.connection_id} already in room {room_id}")
                return count_before
            members[member.connection_id] = member
            self._member_rooms[member.connection_id] = room_id
            logger.debug(f"Member {member.connection_id} added to room {room_id} ({count_before} -> {len(members)})")
            return count_before

    async def leave(self, room_id: str, connection_id: str) -> Optional[Member]:
        """Remove a member. Returns the removed Member, or None if it was not there."""
        async with self._room_lock(room_id):
            members = self._rooms.get(room_id)
            if not members or connection_id not in members:
                logger.debug(f"Leave ignored: {connection_id} is not in room {room_id}")
                return None
            member = members.pop(connection_id)
            if self._member_rooms.get(connection_id) == room_id:
                del self._member_rooms[connection_id]
            if not members:
                del self._rooms[room_id]
                logger.info(f"Room {room_id} is empty, discarding it")
            else:
                logger.debug(f"Member {connection_id} removed from room {room_id} ({len(members)} left)")
            return member

    def exists(self, room_id: str) -> bool:
        return bool(self._rooms.get(room_id))

    def members(self, room_id: str) -> List[Member]:
        return list(self._rooms.get(room_id, {}).values())

    def member_count(self, room_id: str) -> int:
        return len(self._rooms.get(room_id, {}))

    def room_of(self, connection_id: str) -> Optional[str]:
        return self._member_rooms.get(connection_id)

    def rooms(self) -> Dict[str, int]:
        return {room_id: len(members) for room_id, members in self._rooms.items()}
