"""Python peer for the One2One signaling relay.

Classes:
    NegotiationSession: offer/answer/candidate state machine for one room
    SignalingClient: WebSocket client for the relay protocol
    PeerCall: signaling + negotiation for a single participant
    LocalMedia, PlayerMedia, RemoteMedia: media capability boundary
"""

from .negotiation import NegotiationSession, NegotiationState
from .signaling import SignalingClient
from .call import PeerCall, generate_room_id, normalize_room_id
from .media import LocalMedia, PlayerMedia, RemoteMedia, ToggleableTrack

__all__ = [
    "NegotiationSession",
    "NegotiationState",
    "SignalingClient",
    "PeerCall",
    "generate_room_id",
    "normalize_room_id",
    "LocalMedia",
    "PlayerMedia",
    "RemoteMedia",
    "ToggleableTrack",
]
