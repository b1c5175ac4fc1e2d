"""Client-side negotiation state machine for one room.

Roles are fixed by join order: the member already in the room creates the offer
when it is told somebody joined, the joiner answers. There is no renegotiation
and no glare handling, so two simultaneous offers for the same room are not
resolved.

States:
    IDLE -> ACQUIRING_MEDIA -> WAITING_FOR_PEER -> NEGOTIATING -> CONNECTED
                                                   NEGOTIATING -> FAILED
    any -> CLOSED on leave()
"""
import asyncio
from enum import Enum
from typing import Any, Callable, List, Optional

from aiortc import RTCConfiguration, RTCIceCandidate, RTCIceServer, RTCPeerConnection

import signaling_events as events
from constants import STUN_SERVERS, TURN_CREDENTIAL, TURN_SERVER_URL, TURN_USERNAME
from errors import MediaAccessDenied, ProtocolViolation, SignalingError
from logging_config import get_logger
from peer_client.media import LocalMedia, RemoteMedia
from peer_client.payloads import (
    candidate_from_payload,
    candidate_to_payload,
    description_from_payload,
    description_to_payload,
)

logger = get_logger(__name__)


class NegotiationState(str, Enum):
    IDLE = "idle"
    ACQUIRING_MEDIA = "acquiring_media"
    WAITING_FOR_PEER = "waiting_for_peer"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


# States in which local media is held and the room has been joined
ACTIVE_STATES = (
    NegotiationState.WAITING_FOR_PEER,
    NegotiationState.NEGOTIATING,
    NegotiationState.CONNECTED,
    NegotiationState.FAILED,
)


def build_ice_servers() -> List[RTCIceServer]:
    ice_servers = [RTCIceServer(urls=[url]) for url in STUN_SERVERS]
    if TURN_SERVER_URL and TURN_USERNAME and TURN_CREDENTIAL:
        ice_servers.append(RTCIceServer(urls=[TURN_SERVER_URL], username=TURN_USERNAME, credential=TURN_CREDENTIAL))
    return ice_servers


def create_peer_connection() -> RTCPeerConnection:
    return RTCPeerConnection(configuration=RTCConfiguration(iceServers=build_ice_servers()))


class NegotiationSession:
    """Drives offer/answer/candidate exchange against a single peer connection.

    `signaling` only needs an async `emit(event, data)`. Negotiation steps are
    serialized by an asyncio.Lock; teardown is not, so leave() and peer
    disconnects take effect immediately even mid-negotiation. A step that
    resumes after its peer connection was torn down stops without side effects.
    """

    def __init__(
        self,
        room_id: str,
        signaling: Any,
        local_media: LocalMedia,
        remote_media: Optional[RemoteMedia] = None,
        member_id: Optional[str] = None,
        peer_connection_factory: Callable[[], Any] = create_peer_connection,
        on_state_change: Optional[Callable[[NegotiationState, str], None]] = None,
        on_error: Optional[Callable[[SignalingError], None]] = None,
    ):
        self.room_id = room_id
        self.signaling = signaling
        self.local_media = local_media
        self.remote_media = remote_media
        self.member_id = member_id
        self.peer_connection_factory = peer_connection_factory
        self.on_state_change = on_state_change
        self.on_error = on_error

        self.state = NegotiationState.IDLE
        self.status = "Initializing..."
        self.peer_id: Optional[str] = None
        self._pc = None
        self._pending_candidates: List[RTCIceCandidate] = []
        self._lock = asyncio.Lock()

    @property
    def peer_connection(self):
        return self._pc

    @property
    def is_connected(self) -> bool:
        return self.state == NegotiationState.CONNECTED

    @property
    def pending_candidates(self) -> List[RTCIceCandidate]:
        return list(self._pending_candidates)

    def _set_state(self, state: NegotiationState, status: str):
        if state != self.state:
            logger.info(f"[{self.room_id}] {self.state.value} -> {state.value} ({status})")
        self.state = state
        self.status = status
        if self.on_state_change:
            self.on_state_change(state, status)

    def _report(self, error: SignalingError):
        logger.warning(f"[{self.room_id}] {error.code.value}: {error.message}")
        if self.on_error:
            self.on_error(error)

    async def start(self):
        """Acquire local media, then join the room.

        Raises MediaAccessDenied when capture is refused or unavailable.
        """
        if self.state != NegotiationState.IDLE:
            logger.warning(f"[{self.room_id}] start() ignored in state {self.state.value}")
            return

        self._set_state(NegotiationState.ACQUIRING_MEDIA, "Getting media...")
        try:
            await self.local_media.acquire()
        except MediaAccessDenied as e:
            e.room_id = self.room_id
            if self.state != NegotiationState.CLOSED:
                self._set_state(NegotiationState.IDLE, "Error: Camera/Mic access denied")
            self._report(e)
            raise

        if self.state == NegotiationState.CLOSED:
            # leave() ran while the device was opening
            self.local_media.release()
            return

        logger.info(f"Joining room {self.room_id} as {self.member_id}")
        try:
            await self.signaling.emit(events.JOIN_ROOM, {"roomId": self.room_id, "memberId": self.member_id})
        except Exception:
            self.local_media.release()
            self._set_state(NegotiationState.IDLE, "Signaling unavailable")
            raise
        self._set_state(NegotiationState.WAITING_FOR_PEER, "Waiting for peer...")

    def _ensure_peer_connection(self):
        if self._pc is not None:
            logger.info(f"[{self.room_id}] Reusing existing peer connection")
            return self._pc

        logger.info(f"[{self.room_id}] Creating new peer connection")
        pc = self.peer_connection_factory()
        for track in self.local_media.tracks:
            logger.debug(f"Adding local track: {track.kind}")
            pc.addTrack(track)

        @pc.on("track")
        async def on_track(track):
            if pc is not self._pc:
                return
            logger.info(f"[{self.room_id}] Remote {track.kind} track received")
            if self.remote_media is not None:
                await self.remote_media.attach(track)

        @pc.on("icecandidate")
        async def on_ice_candidate(candidate):
            if pc is self._pc and candidate is not None:
                await self.on_ice_candidate_generated(candidate)

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            if pc is self._pc:
                await self.on_connection_state_change(pc.connectionState)

        self._pc = pc
        return pc

    async def on_peer_connected(self, peer_id: str):
        """Offering role: somebody joined the room we are already in."""
        if self.state not in ACTIVE_STATES:
            logger.warning(f"[{self.room_id}] No local stream, cannot create offer for {peer_id}")
            return

        async with self._lock:
            if self.state == NegotiationState.CLOSED:
                return
            logger.info(f"[{self.room_id}] User connected: {peer_id}. Creating offer...")
            self.peer_id = peer_id
            pc = self._ensure_peer_connection()
            self._set_state(NegotiationState.NEGOTIATING, "Connecting...")
            try:
                offer = await pc.createOffer()
                await pc.setLocalDescription(offer)
                if pc is not self._pc:
                    return
                await self.signaling.emit(
                    events.OFFER,
                    {"roomId": self.room_id, "offer": description_to_payload(pc.localDescription)},
                )
                logger.info(f"[{self.room_id}] Offer sent")
            except Exception as e:
                logger.error(f"[{self.room_id}] Error creating offer: {e}", exc_info=True)

    async def on_offer_received(self, data: dict):
        """Answering role: the member already in the room sent us an offer."""
        payload = (data or {}).get("offer")
        if not payload:
            self._report(ProtocolViolation("Offer message without a session description", self.room_id))
            return
        if self.state not in ACTIVE_STATES:
            logger.warning(f"[{self.room_id}] No local stream, cannot create answer")
            return

        async with self._lock:
            if self.state == NegotiationState.CLOSED:
                return
            logger.info(f"[{self.room_id}] Received offer")
            pc = self._ensure_peer_connection()
            self._set_state(NegotiationState.NEGOTIATING, "Connecting...")
            try:
                await pc.setRemoteDescription(description_from_payload(payload))
                await self._flush_pending_candidates(pc)
                answer = await pc.createAnswer()
                await pc.setLocalDescription(answer)
                if pc is not self._pc:
                    return
                await self.signaling.emit(
                    events.ANSWER,
                    {"roomId": self.room_id, "answer": description_to_payload(pc.localDescription)},
                )
                logger.info(f"[{self.room_id}] Answer sent")
            except Exception as e:
                logger.error(f"[{self.room_id}] Error handling offer: {e}", exc_info=True)

    async def on_answer_received(self, data: dict):
        payload = (data or {}).get("answer")
        if not payload:
            self._report(ProtocolViolation("Answer message without a session description", self.room_id))
            return

        async with self._lock:
            pc = self._pc
            if pc is None:
                self._report(ProtocolViolation("Answer received without a peer connection", self.room_id))
                return
            if pc.signalingState != "have-local-offer":
                self._report(ProtocolViolation(
                    f"Answer received in signaling state {pc.signalingState}", self.room_id
                ))
                return
            logger.info(f"[{self.room_id}] Received answer")
            try:
                await pc.setRemoteDescription(description_from_payload(payload))
                await self._flush_pending_candidates(pc)
            except Exception as e:
                logger.error(f"[{self.room_id}] Error setting remote description (answer): {e}", exc_info=True)

    async def on_ice_candidate_received(self, data: dict):
        candidate = candidate_from_payload((data or {}).get("candidate"))
        if candidate is None:
            logger.debug(f"[{self.room_id}] End of remote candidates")
            return
        if self.state not in ACTIVE_STATES:
            self._report(ProtocolViolation(
                f"ICE candidate received in state {self.state.value}", self.room_id
            ))
            return

        async with self._lock:
            pc = self._pc
            if pc is None or pc.remoteDescription is None:
                self._pending_candidates.append(candidate)
                logger.debug(f"[{self.room_id}] Queued early ICE candidate ({len(self._pending_candidates)} pending)")
                return
            await self._add_candidate(pc, candidate)

    async def _add_candidate(self, pc, candidate: RTCIceCandidate):
        try:
            await pc.addIceCandidate(candidate)
        except Exception as e:
            logger.error(f"[{self.room_id}] Error adding ICE candidate: {e}")

    async def _flush_pending_candidates(self, pc):
        pending, self._pending_candidates = self._pending_candidates, []
        if pending:
            logger.debug(f"[{self.room_id}] Applying {len(pending)} queued ICE candidate(s)")
        for candidate in pending:
            await self._add_candidate(pc, candidate)

    async def on_ice_candidate_generated(self, candidate: RTCIceCandidate):
        if self.state == NegotiationState.CLOSED:
            return
        logger.debug(f"[{self.room_id}] Sending ICE candidate")
        await self.signaling.emit(
            events.ICE_CANDIDATE,
            {"roomId": self.room_id, "candidate": candidate_to_payload(candidate)},
        )

    async def on_peer_disconnected(self, peer_id: Optional[str] = None):
        if self.state not in ACTIVE_STATES:
            return
        logger.info(f"[{self.room_id}] User disconnected: {peer_id or self.peer_id}")
        await self._teardown()
        self._set_state(NegotiationState.WAITING_FOR_PEER, "Peer disconnected")

    async def on_connection_state_change(self, connection_state: str):
        logger.info(f"[{self.room_id}] PC connection state: {connection_state}")
        if self.state not in ACTIVE_STATES:
            return
        if connection_state == "connected":
            self._set_state(NegotiationState.CONNECTED, "Connected")
        elif connection_state in ("connecting", "disconnected"):
            self._set_state(NegotiationState.NEGOTIATING, f"Connection State: {connection_state}")
        elif connection_state == "failed":
            # no automatic retry, the user leaves and rejoins
            await self._teardown()
            self._set_state(NegotiationState.FAILED, "Connection failed")
        elif connection_state == "closed":
            await self._teardown()
            self._set_state(NegotiationState.WAITING_FOR_PEER, "Peer disconnected")

    def toggle_local_track(self, kind: str, enabled: bool) -> bool:
        return self.local_media.set_track_enabled(kind, enabled)

    async def _teardown(self):
        pc, self._pc = self._pc, None
        self._pending_candidates = []
        self.peer_id = None
        if pc is not None:
            await pc.close()
            logger.debug(f"[{self.room_id}] Peer connection closed")
        if self.remote_media is not None:
            await self.remote_media.detach()

    async def leave(self):
        """Close the peer connection, release local media and leave the room."""
        if self.state == NegotiationState.CLOSED:
            return
        joined = self.state in ACTIVE_STATES
        self._set_state(NegotiationState.CLOSED, "Left room")
        try:
            await self._teardown()
        finally:
            self.local_media.release()
        if joined:
            try:
                await self.signaling.emit(events.LEAVE_ROOM, {"roomId": self.room_id})
            except Exception as e:
                # the relay runs the same cleanup when the transport drops
                logger.warning(f"[{self.room_id}] Could not send leave-room: {e}")
