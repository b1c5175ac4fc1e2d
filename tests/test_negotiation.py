import asyncio

import pytest

import signaling_events as events
from conftest import DeniedLocalMedia, FakeLocalMedia, FakePeerConnection
from errors import ErrorCode, MediaAccessDenied, ProtocolViolation
from peer_client.negotiation import NegotiationSession, NegotiationState
from peer_client.payloads import candidate_from_payload

HOST_CANDIDATE = {
    "candidate": "candidate:842163049 1 udp 1677729535 192.168.1.20 54400 typ host",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}
OTHER_CANDIDATE = {
    "candidate": "candidate:1 1 udp 2122252543 10.0.0.7 40001 typ host",
    "sdpMid": "1",
    "sdpMLineIndex": 1,
}


@pytest.fixture
def errors():
    return []


@pytest.fixture
def states():
    return []


@pytest.fixture
def session(signaling, local_media, pc_factory, errors, states):
    return NegotiationSession(
        "AB12",
        signaling,
        local_media,
        member_id="A",
        peer_connection_factory=pc_factory,
        on_state_change=lambda state, status: states.append((state, status)),
        on_error=errors.append,
    )


async def started(session):
    await session.start()
    assert session.state == NegotiationState.WAITING_FOR_PEER
    return session


@pytest.mark.asyncio
async def test_start_acquires_media_then_joins(session, signaling, local_media, states):
    await started(session)

    assert local_media.acquired
    assert [track.kind for track in local_media.tracks] == ["audio", "video"]
    assert signaling.sent == [(events.JOIN_ROOM, {"roomId": "AB12", "memberId": "A"})]
    assert [state for state, _ in states] == [
        NegotiationState.ACQUIRING_MEDIA,
        NegotiationState.WAITING_FOR_PEER,
    ]
    assert session.status == "Waiting for peer..."


@pytest.mark.asyncio
async def test_start_with_denied_media_reports_and_does_not_join(signaling, pc_factory, errors):
    session = NegotiationSession(
        "AB12", signaling, DeniedLocalMedia(), peer_connection_factory=pc_factory, on_error=errors.append
    )

    with pytest.raises(MediaAccessDenied):
        await session.start()

    assert session.state == NegotiationState.IDLE
    assert session.status == "Error: Camera/Mic access denied"
    assert signaling.sent == []
    assert errors[0].code == ErrorCode.MEDIA_ACCESS_DENIED
    assert errors[0].room_id == "AB12"


@pytest.mark.asyncio
async def test_peer_connected_creates_offer(session, signaling, pc_factory):
    await started(session)

    await session.on_peer_connected("B")

    pc = session.peer_connection
    assert len(pc_factory.created) == 1
    assert [track.kind for track in pc.tracks] == ["audio", "video"]
    assert pc.signalingState == "have-local-offer"
    assert signaling.last(events.OFFER) == {
        "roomId": "AB12",
        "offer": {"type": "offer", "sdp": "v=0 offer from pc0"},
    }
    assert session.state == NegotiationState.NEGOTIATING
    assert session.peer_id == "B"


@pytest.mark.asyncio
async def test_repeated_user_connected_reuses_peer_connection(session, pc_factory):
    await started(session)
    await session.on_peer_connected("B")
    await session.on_peer_connected("B")
    assert len(pc_factory.created) == 1


@pytest.mark.asyncio
async def test_offer_before_start_is_ignored(session, signaling, pc_factory):
    await session.on_offer_received({"roomId": "AB12", "offer": {"type": "offer", "sdp": "v=0"}})
    await session.on_peer_connected("B")
    assert pc_factory.created == []
    assert signaling.sent == []


@pytest.mark.asyncio
async def test_offer_received_produces_answer(session, signaling):
    await started(session)

    await session.on_offer_received({"roomId": "AB12", "offer": {"type": "offer", "sdp": "v=0 remote"}})

    pc = session.peer_connection
    assert pc.remoteDescription.sdp == "v=0 remote"
    assert pc.localDescription.type == "answer"
    assert signaling.last(events.ANSWER) == {
        "roomId": "AB12",
        "answer": {"type": "answer", "sdp": "v=0 answer from pc0"},
    }


@pytest.mark.asyncio
async def test_answer_without_peer_connection_is_protocol_violation(session, signaling, errors):
    await started(session)

    await session.on_answer_received({"roomId": "AB12", "answer": {"type": "answer", "sdp": "v=0"}})

    assert isinstance(errors[-1], ProtocolViolation)
    assert session.peer_connection is None
    assert signaling.events() == [events.JOIN_ROOM]


@pytest.mark.asyncio
async def test_answer_without_pending_offer_is_protocol_violation(session, errors):
    await started(session)
    await session.on_offer_received({"roomId": "AB12", "offer": {"type": "offer", "sdp": "v=0"}})

    await session.on_answer_received({"roomId": "AB12", "answer": {"type": "answer", "sdp": "v=0"}})

    assert isinstance(errors[-1], ProtocolViolation)
    assert session.peer_connection.remoteDescription.type == "offer"


@pytest.mark.asyncio
async def test_early_candidates_are_applied_after_answer(session):
    await started(session)
    await session.on_peer_connected("B")
    pc = session.peer_connection

    await session.on_ice_candidate_received({"roomId": "AB12", "candidate": HOST_CANDIDATE})
    await session.on_ice_candidate_received({"roomId": "AB12", "candidate": OTHER_CANDIDATE})
    assert pc.added_candidates == []
    assert len(session.pending_candidates) == 2

    await session.on_answer_received({"roomId": "AB12", "answer": {"type": "answer", "sdp": "v=0"}})

    assert [c.ip for c in pc.added_candidates] == ["192.168.1.20", "10.0.0.7"]
    assert pc.added_candidates[0].sdpMid == "0"
    assert pc.added_candidates[1].sdpMLineIndex == 1
    assert session.pending_candidates == []

    await session.on_ice_candidate_received({"roomId": "AB12", "candidate": HOST_CANDIDATE})
    assert len(pc.added_candidates) == 3


@pytest.mark.asyncio
async def test_candidates_before_offer_are_applied_before_answering(session, signaling):
    await started(session)
    await session.on_ice_candidate_received({"roomId": "AB12", "candidate": HOST_CANDIDATE})
    assert session.peer_connection is None

    await session.on_offer_received({"roomId": "AB12", "offer": {"type": "offer", "sdp": "v=0"}})

    assert [c.port for c in session.peer_connection.added_candidates] == [54400]
    assert signaling.events()[-1] == events.ANSWER


@pytest.mark.asyncio
async def test_end_of_candidates_marker_is_ignored(session, errors):
    await started(session)
    await session.on_ice_candidate_received({"roomId": "AB12", "candidate": {"candidate": ""}})
    await session.on_ice_candidate_received({"roomId": "AB12", "candidate": None})
    assert session.pending_candidates == []
    assert errors == []


@pytest.mark.asyncio
async def test_candidate_without_session_is_protocol_violation(session, errors):
    await session.on_ice_candidate_received({"roomId": "AB12", "candidate": HOST_CANDIDATE})
    assert isinstance(errors[-1], ProtocolViolation)
    assert session.pending_candidates == []


@pytest.mark.asyncio
async def test_local_candidates_are_sent_immediately(session, signaling):
    await started(session)
    await session.on_peer_connected("B")
    pc = session.peer_connection

    await pc.handlers["icecandidate"](candidate_from_payload(HOST_CANDIDATE))

    sent = signaling.last(events.ICE_CANDIDATE)
    assert sent["roomId"] == "AB12"
    assert sent["candidate"]["sdpMid"] == "0"
    assert sent["candidate"]["candidate"].startswith("candidate:842163049 1 udp")
    assert "192.168.1.20 54400 typ host" in sent["candidate"]["candidate"]


@pytest.mark.asyncio
async def test_peer_disconnected_tears_down_and_waits_again(session, pc_factory):
    await started(session)
    await session.on_peer_connected("B")
    first = session.peer_connection

    await session.on_peer_disconnected("B")

    assert first.closed
    assert session.peer_connection is None
    assert session.peer_id is None
    assert session.state == NegotiationState.WAITING_FOR_PEER
    assert session.status == "Peer disconnected"

    await session.on_peer_connected("C")
    assert len(pc_factory.created) == 2
    assert session.peer_connection is not first


@pytest.mark.asyncio
async def test_connection_state_mapping(session):
    await started(session)
    await session.on_peer_connected("B")
    pc = session.peer_connection

    await pc.set_connection_state("connecting")
    assert session.state == NegotiationState.NEGOTIATING
    await pc.set_connection_state("connected")
    assert session.state == NegotiationState.CONNECTED
    assert session.is_connected

    await pc.set_connection_state("failed")
    assert session.state == NegotiationState.FAILED
    assert not session.is_connected
    assert pc.closed
    assert session.peer_connection is None

    # a closed event from the torn-down connection changes nothing
    await pc.set_connection_state("closed")
    assert session.state == NegotiationState.FAILED


@pytest.mark.asyncio
async def test_remote_close_returns_to_waiting(session):
    await started(session)
    await session.on_peer_connected("B")
    pc = session.peer_connection

    await pc.set_connection_state("closed")

    assert session.state == NegotiationState.WAITING_FOR_PEER
    assert session.peer_connection is None


@pytest.mark.asyncio
async def test_toggle_local_track_has_no_signaling_side_effect(session, signaling, local_media):
    await started(session)
    sent_before = list(signaling.sent)

    assert session.toggle_local_track("audio", False)
    assert session.toggle_local_track("video", False)
    assert session.toggle_local_track("video", True)

    tracks = {track.kind: track for track in local_media.tracks}
    assert tracks["audio"].enabled is False
    assert tracks["video"].enabled is True
    assert signaling.sent == sent_before

    with pytest.raises(ValueError):
        session.toggle_local_track("screen", True)


@pytest.mark.asyncio
async def test_leave_releases_everything(session, signaling, local_media):
    await started(session)
    await session.on_peer_connected("B")
    pc = session.peer_connection

    await session.leave()

    assert pc.closed
    assert local_media.released
    assert not local_media.acquired
    assert session.state == NegotiationState.CLOSED
    assert signaling.sent[-1] == (events.LEAVE_ROOM, {"roomId": "AB12"})

    await session.leave()
    assert signaling.events().count(events.LEAVE_ROOM) == 1


class BlockingPeerConnection(FakePeerConnection):
    def __init__(self):
        super().__init__("blocking")
        self.offer_requested = asyncio.Event()
        self.release_offer = asyncio.Event()

    async def createOffer(self):
        self.offer_requested.set()
        await self.release_offer.wait()
        return await super().createOffer()


@pytest.mark.asyncio
async def test_leave_mid_negotiation_cancels_the_offer(signaling, local_media):
    pc = BlockingPeerConnection()
    session = NegotiationSession("AB12", signaling, local_media, peer_connection_factory=lambda: pc)
    await started(session)

    offering = asyncio.create_task(session.on_peer_connected("B"))
    await pc.offer_requested.wait()

    await session.leave()
    pc.release_offer.set()
    await offering

    assert pc.closed
    assert local_media.released
    assert events.OFFER not in signaling.events()
    assert session.state == NegotiationState.CLOSED


class SlowLocalMedia(FakeLocalMedia):
    def __init__(self):
        super().__init__()
        self.opening = asyncio.Event()
        self.proceed = asyncio.Event()

    async def _open(self):
        self.opening.set()
        await self.proceed.wait()
        return await super()._open()


@pytest.mark.asyncio
async def test_leave_while_acquiring_media_releases_it(signaling, pc_factory):
    media = SlowLocalMedia()
    session = NegotiationSession("AB12", signaling, media, peer_connection_factory=pc_factory)
    starting = asyncio.create_task(session.start())
    await media.opening.wait()

    await session.leave()
    media.proceed.set()
    await starting

    assert session.state == NegotiationState.CLOSED
    assert media.released
    assert not media.acquired
    assert signaling.sent == []


@pytest.mark.asyncio
async def test_offer_and_candidate_are_serialized(session):
    """A candidate arriving while the offer is being applied waits and lands on the remote description."""
    await started(session)

    handling = asyncio.create_task(
        session.on_offer_received({"roomId": "AB12", "offer": {"type": "offer", "sdp": "v=0"}})
    )
    candidate = asyncio.create_task(
        session.on_ice_candidate_received({"roomId": "AB12", "candidate": HOST_CANDIDATE})
    )
    await asyncio.gather(handling, candidate)

    assert len(session.peer_connection.added_candidates) == 1
    assert session.pending_candidates == []
