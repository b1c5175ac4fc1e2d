import asyncio
import inspect
import itertools
import json
from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

import websockets

import signaling_events as events
from constants import CHECK_ROOM_TIMEOUT, SIGNALING_URL
from errors import TransportDisconnect
from logging_config import get_logger

logger = get_logger(__name__)

# Local pseudo-event fired when the WebSocket closes
DISCONNECT = "disconnect"


class SignalingClient:
    """WebSocket client for the relay's {event, data, ack} frames.

    Handlers run one at a time in arrival order, so an offer is always handled
    before the candidates that followed it on the wire.
    """

    def __init__(self, url: str = SIGNALING_URL):
        self.url = url
        self.member_id: Optional[str] = None
        self._ws = None
        self._reader: Optional[asyncio.Task] = None
        self._handlers: Dict[str, List[Callable]] = defaultdict(list)
        self._acks: Dict[int, asyncio.Future] = {}
        self._ack_ids = itertools.count(1)
        self._welcome = asyncio.Event()

    @property
    def connected(self) -> bool:
        return self._ws is not None

    async def connect(self, timeout: float = 10.0):
        logger.info(f"Connecting to signaling server at {self.url}")
        self._ws = await websockets.connect(self.url)
        self._reader = asyncio.create_task(self._read_loop())
        await asyncio.wait_for(self._welcome.wait(), timeout)
        logger.info(f"Signaling connected, member id {self.member_id}")

    def on(self, event: str, handler: Callable):
        self._handlers[event].append(handler)

    def off(self, event: str, handler: Optional[Callable] = None):
        if handler is None:
            self._handlers.pop(event, None)
        elif handler in self._handlers.get(event, []):
            self._handlers[event].remove(handler)

    async def emit(self, event: str, data: Any = None, ack: Optional[int] = None):
        if self._ws is None:
            raise TransportDisconnect(f"Cannot send '{event}': signaling is not connected")
        frame = {"event": event, "data": data}
        if ack is not None:
            frame["ack"] = ack
        try:
            await self._ws.send(json.dumps(frame))
        except websockets.ConnectionClosed as e:
            raise TransportDisconnect(f"Cannot send '{event}': {e}") from e

    async def request(self, event: str, data: Any = None, timeout: float = CHECK_ROOM_TIMEOUT) -> Any:
        """Send a frame with an ack id and wait up to `timeout` for the reply.

        Raises asyncio.TimeoutError when no ack arrives in time.
        """
        ack_id = next(self._ack_ids)
        future = asyncio.get_running_loop().create_future()
        self._acks[ack_id] = future
        try:
            await self.emit(event, data, ack=ack_id)
            return await asyncio.wait_for(future, timeout)
        finally:
            self._acks.pop(ack_id, None)

    async def check_room(self, room_id: str, timeout: float = CHECK_ROOM_TIMEOUT) -> bool:
        """Whether somebody is in the room. On timeout assume yes and let the join go ahead."""
        try:
            reply = await self.request(events.CHECK_ROOM, {"roomId": room_id}, timeout)
        except asyncio.TimeoutError:
            logger.warning(f"No check-room reply for {room_id} within {timeout}s, joining anyway")
            return True
        exists = bool((reply or {}).get("exists"))
        logger.info(f"Check room {room_id}: exists={exists}")
        return exists

    async def close(self):
        ws, self._ws = self._ws, None
        if ws is not None:
            await ws.close()
        if self._reader is not None:
            await self._reader
            self._reader = None

    async def _read_loop(self):
        ws = self._ws
        try:
            async for message in ws:
                await self._dispatch(message)
        except websockets.ConnectionClosed as e:
            logger.info(f"Signaling connection closed: {e}")
        finally:
            if self._ws is ws:
                self._ws = None
            for future in self._acks.values():
                if not future.done():
                    future.set_exception(TransportDisconnect("Signaling connection closed"))
            await self._run_handlers(DISCONNECT, None)

    async def _dispatch(self, message):
        try:
            frame = json.loads(message)
            event = frame["event"]
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.warning(f"Ignoring malformed frame from relay: {e}")
            return
        data = frame.get("data")

        if event == events.ACK:
            future = self._acks.get(frame.get("ack"))
            if future is not None and not future.done():
                future.set_result(data)
            return
        if event == events.CONNECTED:
            self.member_id = (data or {}).get("memberId")
            self._welcome.set()
        await self._run_handlers(event, data)

    async def _run_handlers(self, event: str, data: Any):
        for handler in list(self._handlers.get(event, [])):
            try:
                result = handler(data)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Error in '{event}' handler: {e}", exc_info=True)
