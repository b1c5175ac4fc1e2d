"""
Shared fixtures and in-process stand-ins for the network and media layers.

FakePeerConnection mimics the parts of aiortc's RTCPeerConnection the
negotiation state machine uses. LoopbackSignaling plays the SignalingClient
role but is wired straight into a SignalingRelay, so end-to-end scenarios run
without sockets.
"""

import asyncio
import json
from collections import defaultdict

import pytest
from aiortc import AudioStreamTrack, RTCSessionDescription, VideoStreamTrack
from fastapi.testclient import TestClient

import signaling_events as events
from app import create_app
from backend import RoomRegistry
from peer_client.media import LocalMedia
from relay import SignalingRelay


class FakePeerConnection:
    def __init__(self, name="pc"):
        self.name = name
        self.handlers = {}
        self.tracks = []
        self.localDescription = None
        self.remoteDescription = None
        self.signalingState = "stable"
        self.connectionState = "new"
        self.added_candidates = []
        self.closed = False

    def on(self, event, f=None):
        def register(handler):
            self.handlers[event] = handler
            return handler

        return register(f) if f is not None else register

    def addTrack(self, track):
        self.tracks.append(track)

    async def createOffer(self):
        return RTCSessionDescription(sdp=f"v=0 offer from {self.name}", type="offer")

    async def createAnswer(self):
        return RTCSessionDescription(sdp=f"v=0 answer from {self.name}", type="answer")

    async def setLocalDescription(self, description):
        self.localDescription = description
        self.signalingState = "have-local-offer" if description.type == "offer" else "stable"

    async def setRemoteDescription(self, description):
        self.remoteDescription = description
        self.signalingState = "have-remote-offer" if description.type == "offer" else "stable"

    async def addIceCandidate(self, candidate):
        self.added_candidates.append(candidate)

    async def close(self):
        self.closed = True
        self.connectionState = "closed"

    async def set_connection_state(self, state):
        self.connectionState = state
        await self.handlers["connectionstatechange"]()


class PeerConnectionFactory:
    def __init__(self, name="pc"):
        self.name = name
        self.created = []

    def __call__(self):
        pc = FakePeerConnection(f"{self.name}{len(self.created)}")
        self.created.append(pc)
        return pc


class FakeLocalMedia(LocalMedia):
    def __init__(self):
        super().__init__()
        self.open_count = 0
        self.released = False

    async def _open(self):
        self.open_count += 1
        return [AudioStreamTrack(), VideoStreamTrack()]

    def release(self):
        if self.acquired:
            self.released = True
        super().release()


class DeniedLocalMedia(LocalMedia):
    async def _open(self):
        raise PermissionError("Permission denied: /dev/video0")


class RecordingSignaling:
    """Captures what the state machine sends."""

    def __init__(self):
        self.sent = []

    async def emit(self, event, data=None):
        self.sent.append((event, data))

    def events(self):
        return [event for event, _ in self.sent]

    def last(self, event):
        for sent_event, data in reversed(self.sent):
            if sent_event == event:
                return data
        return None


class LoopbackSignaling:
    """SignalingClient stand-in that talks to a SignalingRelay in-process."""

    def __init__(self, relay: SignalingRelay):
        self.relay = relay
        self.inbox = asyncio.Queue()
        self.received = []
        self.handlers = defaultdict(list)
        self.connection = relay.connect(self)
        self.member_id = None
        self.connected = False
        self._pump = None

    # relay side: RelayConnection sends to us as if we were its WebSocket
    async def send_text(self, text):
        await self.inbox.put(json.loads(text))

    async def connect(self):
        self.connected = True
        self.member_id = self.connection.connection_id
        self._pump = asyncio.create_task(self._run())

    def on(self, event, handler):
        self.handlers[event].append(handler)

    def off(self, event, handler=None):
        if handler in self.handlers.get(event, []):
            self.handlers[event].remove(handler)

    async def emit(self, event, data=None, ack=None):
        await self.connection.handle_text(json.dumps({"event": event, "data": data, "ack": ack}))

    async def check_room(self, room_id, timeout=1.0):
        return self.relay.check_room(room_id)

    async def close(self):
        self.connected = False
        await self.relay.disconnect(self.connection)
        if self._pump is not None:
            self._pump.cancel()

    async def _run(self):
        while True:
            frame = await self.inbox.get()
            try:
                self.received.append(frame)
                for handler in list(self.handlers[frame["event"]]):
                    await handler(frame.get("data"))
            finally:
                self.inbox.task_done()


async def settle(*peers, rounds=10):
    """Let queued signaling frames bounce between peers until nothing is left."""
    for _ in range(rounds):
        await asyncio.gather(*(peer.inbox.join() for peer in peers))
        await asyncio.sleep(0)


class FakeWebSocket:
    def __init__(self, fail=False):
        self.frames = []
        self.fail = fail

    async def send_text(self, text):
        if self.fail:
            raise RuntimeError("socket is closed")
        self.frames.append(json.loads(text))

    def events(self):
        return [frame["event"] for frame in self.frames]


@pytest.fixture
def registry():
    return RoomRegistry()


@pytest.fixture
def relay(registry):
    return SignalingRelay(registry)


@pytest.fixture
def client(registry):
    app = create_app(registry)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def signaling():
    return RecordingSignaling()


@pytest.fixture
def local_media():
    return FakeLocalMedia()


@pytest.fixture
def pc_factory():
    return PeerConnectionFactory()


def join_frame(room_id, member_id=None):
    return {"event": events.JOIN_ROOM, "data": {"roomId": room_id, "memberId": member_id}}
