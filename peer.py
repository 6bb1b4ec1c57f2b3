"""aiortc peer connection behind the interface the negotiation session drives.

Payloads use the JSON shapes a browser produces, so either side of a call can
be a browser or this client:

- session descriptions: ``{"type": "offer" | "answer", "sdp": "..."}``
- candidates: ``{"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}``
"""

from typing import Callable, List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.contrib.media import MediaBlackhole
from aiortc.sdp import candidate_from_sdp

from constants import ICE_SERVERS
from errors import NegotiationError
from logging_config import get_logger

logger = get_logger(__name__)

StateCallback = Callable[[str], None]


def rtc_configuration(ice_servers: Optional[List[str]] = None) -> RTCConfiguration:
    urls = ICE_SERVERS if ice_servers is None else ice_servers
    return RTCConfiguration(iceServers=[RTCIceServer(urls=url) for url in urls])


def candidates_from_sdp(sdp: str) -> List[dict]:
    """Extract ``a=candidate`` lines of a session description as candidate payloads."""
    candidates = []
    section = []
    mid = None
    mline_index = -1

    def flush():
        for line in section:
            candidates.append({"candidate": line, "sdpMid": mid, "sdpMLineIndex": mline_index})

    for line in sdp.splitlines():
        if line.startswith("m="):
            flush()
            section = []
            mid = None
            mline_index += 1
        elif mline_index < 0:
            continue
        elif line.startswith("a=mid:"):
            mid = line[len("a=mid:"):]
        elif line.startswith("a=candidate:"):
            section.append(line[len("a="):])
    flush()
    return candidates


def parse_candidate(payload: dict):
    """Build an aiortc candidate from a browser-style candidate payload."""
    text = payload.get("candidate") or ""
    if text.startswith("candidate:"):
        text = text[len("candidate:"):]
    candidate = candidate_from_sdp(text)
    candidate.sdpMid = payload.get("sdpMid")
    candidate.sdpMLineIndex = payload.get("sdpMLineIndex")
    return candidate


class AiortcPeer:
    """Single RTCPeerConnection for one call."""

    def __init__(self, on_state_change: Optional[StateCallback] = None, tracks=None,
                 ice_servers: Optional[List[str]] = None):
        self.pc = RTCPeerConnection(configuration=rtc_configuration(ice_servers))
        self.on_state_change = on_state_change
        self.sink = MediaBlackhole()
        self._has_media = False

        for track in tracks or []:
            self.pc.addTrack(track)
            self._has_media = True

        @self.pc.on("track")
        async def on_track(track):
            logger.info(f"Received remote {track.kind} track")
            self.sink.addTrack(track)
            await self.sink.start()

        @self.pc.on("connectionstatechange")
        async def on_connection_state_change():
            logger.info(f"Connection state: {self.pc.connectionState}")
            if self.on_state_change:
                self.on_state_change(self.pc.connectionState)

    @property
    def connection_state(self) -> str:
        return self.pc.connectionState

    @property
    def has_remote_description(self) -> bool:
        return self.pc.remoteDescription is not None

    def _description(self) -> dict:
        description = self.pc.localDescription
        return {"type": description.type, "sdp": description.sdp}

    async def create_offer(self) -> dict:
        if not self._has_media:
            # Without local tracks the offer still needs media sections to receive into
            self.pc.addTransceiver("audio", direction="recvonly")
            self.pc.addTransceiver("video", direction="recvonly")
            self._has_media = True
        try:
            offer = await self.pc.createOffer()
            await self.pc.setLocalDescription(offer)
        except Exception as e:
            raise NegotiationError(f"Error creating offer: {e}") from e
        return self._description()

    async def create_answer(self) -> dict:
        try:
            answer = await self.pc.createAnswer()
            await self.pc.setLocalDescription(answer)
        except Exception as e:
            raise NegotiationError(f"Error creating answer: {e}") from e
        return self._description()

    async def set_remote_description(self, payload: dict):
        try:
            description = RTCSessionDescription(sdp=payload["sdp"], type=payload["type"])
            await self.pc.setRemoteDescription(description)
        except Exception as e:
            raise NegotiationError(f"Invalid remote description: {e}") from e

    async def add_ice_candidate(self, payload: dict):
        try:
            await self.pc.addIceCandidate(parse_candidate(payload))
        except Exception as e:
            raise NegotiationError(f"Invalid ICE candidate: {e}") from e

    def local_candidates(self) -> List[dict]:
        if self.pc.localDescription is None:
            return []
        return candidates_from_sdp(self.pc.localDescription.sdp)

    async def close(self):
        await self.sink.stop()
        await self.pc.close()


def create_peer(on_state_change: StateCallback) -> AiortcPeer:
    return AiortcPeer(on_state_change=on_state_change)
