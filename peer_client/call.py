import uuid
from typing import Callable, Optional

import signaling_events as events
from constants import ROOM_ID_LENGTH, SIGNALING_URL
from errors import MediaAccessDenied, RoomNotFound, SignalingError, TransportDisconnect
from logging_config import get_logger
from peer_client.media import LocalMedia, RemoteMedia
from peer_client.negotiation import NegotiationSession, NegotiationState, create_peer_connection
from peer_client.signaling import DISCONNECT, SignalingClient

logger = get_logger(__name__)


def generate_room_id(length: int = ROOM_ID_LENGTH) -> str:
    return uuid.uuid4().hex[:length]


def normalize_room_id(room_id: str) -> str:
    return room_id.strip().lower()


class PeerCall:
    """One participant's call: a signaling connection plus its NegotiationSession."""

    def __init__(
        self,
        room_id: str,
        local_media: LocalMedia,
        remote_media: Optional[RemoteMedia] = None,
        signaling: Optional[SignalingClient] = None,
        signaling_url: str = SIGNALING_URL,
        peer_connection_factory: Callable = create_peer_connection,
        on_state_change: Optional[Callable[[NegotiationState, str], None]] = None,
        on_error: Optional[Callable[[SignalingError], None]] = None,
    ):
        self.room_id = normalize_room_id(room_id)
        self.local_media = local_media
        self.remote_media = remote_media
        self.signaling = signaling or SignalingClient(signaling_url)
        self.peer_connection_factory = peer_connection_factory
        self.on_state_change = on_state_change
        self.on_error = on_error
        self.session: Optional[NegotiationSession] = None

    def _report(self, error: SignalingError):
        logger.warning(f"[{self.room_id}] {error.code.value}: {error.message}")
        if self.on_error:
            self.on_error(error)

    async def join(self, check_first: bool = True) -> NegotiationSession:
        if not self.signaling.connected:
            await self.signaling.connect()

        if check_first and not await self.signaling.check_room(self.room_id):
            # advisory only, the first member of a room always sees this
            self._report(RoomNotFound(f"Nobody is in room {self.room_id} yet", self.room_id))

        self.session = NegotiationSession(
            self.room_id,
            self.signaling,
            self.local_media,
            remote_media=self.remote_media,
            member_id=self.signaling.member_id,
            peer_connection_factory=self.peer_connection_factory,
            on_state_change=self.on_state_change,
            on_error=self.on_error,
        )
        self._register_handlers()
        try:
            await self.session.start()
        except MediaAccessDenied:
            self._unregister_handlers()
            raise
        return self.session

    def _register_handlers(self):
        self.signaling.on(events.USER_CONNECTED, self._on_user_connected)
        self.signaling.on(events.USER_DISCONNECTED, self._on_user_disconnected)
        self.signaling.on(events.OFFER, self._on_offer)
        self.signaling.on(events.ANSWER, self._on_answer)
        self.signaling.on(events.ICE_CANDIDATE, self._on_ice_candidate)
        self.signaling.on(DISCONNECT, self._on_transport_disconnect)

    def _unregister_handlers(self):
        self.signaling.off(events.USER_CONNECTED, self._on_user_connected)
        self.signaling.off(events.USER_DISCONNECTED, self._on_user_disconnected)
        self.signaling.off(events.OFFER, self._on_offer)
        self.signaling.off(events.ANSWER, self._on_answer)
        self.signaling.off(events.ICE_CANDIDATE, self._on_ice_candidate)
        self.signaling.off(DISCONNECT, self._on_transport_disconnect)

    def _for_this_room(self, data) -> bool:
        room_id = (data or {}).get("roomId")
        if room_id is not None and room_id != self.room_id:
            logger.warning(f"Ignoring message for room {room_id}, this call is in {self.room_id}")
            return False
        return True

    async def _on_user_connected(self, data):
        await self.session.on_peer_connected((data or {}).get("memberId"))

    async def _on_user_disconnected(self, data):
        await self.session.on_peer_disconnected((data or {}).get("memberId"))

    async def _on_offer(self, data):
        if self._for_this_room(data):
            await self.session.on_offer_received(data)

    async def _on_answer(self, data):
        if self._for_this_room(data):
            await self.session.on_answer_received(data)

    async def _on_ice_candidate(self, data):
        if self._for_this_room(data):
            await self.session.on_ice_candidate_received(data)

    async def _on_transport_disconnect(self, _data):
        if self.session is None or self.session.state == NegotiationState.CLOSED:
            return
        self._report(TransportDisconnect("Lost connection to the signaling server", self.room_id))
        await self.session.leave()

    async def leave(self):
        if self.session is not None:
            await self.session.leave()
            self._unregister_handlers()
        await self.signaling.close()
