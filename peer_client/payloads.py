from typing import Optional

from aiortc import RTCIceCandidate, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

CANDIDATE_PREFIX = "candidate:"


def description_to_payload(description: RTCSessionDescription) -> dict:
    return {"type": description.type, "sdp": description.sdp}


def description_from_payload(payload: dict) -> RTCSessionDescription:
    return RTCSessionDescription(sdp=payload["sdp"], type=payload["type"])


def candidate_to_payload(candidate: RTCIceCandidate) -> dict:
    return {
        "candidate": CANDIDATE_PREFIX + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_payload(payload: Optional[dict]) -> Optional[RTCIceCandidate]:
    """Browser style {candidate, sdpMid, sdpMLineIndex} -> RTCIceCandidate.

    Returns None for the end-of-candidates marker (missing or empty candidate).
    """
    if not payload:
        return None
    value = payload.get("candidate") or ""
    if not value:
        return None
    if value.startswith(CANDIDATE_PREFIX):
        value = value[len(CANDIDATE_PREFIX):]
    candidate = candidate_from_sdp(value)
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate
