"""Adapter between a client session and an aiortc peer connection.

Session descriptions and candidates cross this boundary as plain dicts in the
shape browsers put on the wire::

    {"type": "offer", "sdp": "v=0..."}
    {"candidate": "candidate:...", "sdpMid": "0", "sdpMLineIndex": 0}
"""
import logging
from typing import Awaitable, Callable, Dict, List, Optional

from aiortc import (
    RTCConfiguration,
    RTCIceCandidate,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp

from .errors import NegotiationFailure
from .settings import DEFAULT_ICE_SERVERS

logger = logging.getLogger(__name__)

CandidateCallback = Callable[[Optional[Dict]], Awaitable[None]]
MediaSource = Callable[[], Awaitable[List]]


def description_to_dict(description: RTCSessionDescription) -> Dict:
    return {"type": description.type, "sdp": description.sdp}


def description_from_dict(data) -> RTCSessionDescription:
    if not isinstance(data, dict) or "sdp" not in data or "type" not in data:
        raise NegotiationFailure("Session description needs type and sdp")
    try:
        return RTCSessionDescription(sdp=data["sdp"], type=data["type"])
    except ValueError as e:
        raise NegotiationFailure(str(e)) from e


def candidate_to_dict(candidate: RTCIceCandidate) -> Dict:
    return {
        "candidate": "candidate:" + candidate_to_sdp(candidate),
        "sdpMid": candidate.sdpMid,
        "sdpMLineIndex": candidate.sdpMLineIndex,
    }


def candidate_from_dict(data) -> Optional[RTCIceCandidate]:
    """Build a candidate, or return None for an end-of-candidates marker."""
    if data is None:
        return None
    if not isinstance(data, dict):
        raise NegotiationFailure("ICE candidate must be an object")
    line = data.get("candidate") or ""
    if not line:
        return None
    if line.startswith("candidate:"):
        line = line[len("candidate:"):]
    try:
        candidate = candidate_from_sdp(line)
    except (AssertionError, ValueError, IndexError) as e:
        raise NegotiationFailure(f"Invalid ICE candidate: {e}") from e
    candidate.sdpMid = data.get("sdpMid")
    candidate.sdpMLineIndex = data.get("sdpMLineIndex")
    return candidate


class NegotiationBridge:
    def __init__(
        self,
        ice_servers: Optional[List[str]] = None,
        media_source: Optional[MediaSource] = None,
        on_candidate: Optional[CandidateCallback] = None,
        on_track: Optional[Callable] = None,
        on_ended: Optional[Callable] = None,
    ):
        self.ice_servers = list(DEFAULT_ICE_SERVERS if ice_servers is None else ice_servers)
        self.media_source = media_source
        self.on_candidate = on_candidate
        self.on_track = on_track
        self.on_ended = on_ended
        self.pc: Optional[RTCPeerConnection] = None
        self.local_tracks: List = []

    def create_peer_connection(self) -> RTCPeerConnection:
        config = RTCConfiguration([RTCIceServer(urls=self.ice_servers)] if self.ice_servers else [])
        return RTCPeerConnection(configuration=config)

    async def start(self):
        pc = self.create_peer_connection()
        self.pc = pc

        @pc.on("icecandidate")
        async def on_icecandidate(candidate):
            await self._emit_candidate(candidate_to_dict(candidate) if candidate else None)

        @pc.on("track")
        def on_track(track):
            logger.info(f"Receiving {track.kind} track")
            if self.on_track:
                self.on_track(track)

        @pc.on("connectionstatechange")
        async def on_connection_state_change():
            logger.info(f"Peer connection state: {pc.connectionState}")

    async def add_local_media(self) -> List:
        if self.media_source is None:
            return []
        pc = self._require_pc()
        tracks = await self.media_source()
        for track in tracks:
            self._watch_track(track)
            pc.addTrack(track)
            logger.debug(f"Added local {track.kind} track")
        self.local_tracks = list(tracks)
        return self.local_tracks

    def _watch_track(self, track):
        @track.on("ended")
        def on_ended():
            if self.on_ended:
                self.on_ended(track)

    def _require_pc(self) -> RTCPeerConnection:
        if self.pc is None:
            raise NegotiationFailure("Peer connection is not started")
        return self.pc

    async def create_offer(self) -> Dict:
        pc = self._require_pc()
        try:
            await pc.setLocalDescription(await pc.createOffer())
        except Exception as e:
            raise NegotiationFailure(f"Failed to create offer: {e}") from e
        return await self._local_description(pc)

    async def create_answer(self) -> Dict:
        pc = self._require_pc()
        try:
            await pc.setLocalDescription(await pc.createAnswer())
        except Exception as e:
            raise NegotiationFailure(f"Failed to create answer: {e}") from e
        return await self._local_description(pc)

    async def _local_description(self, pc: RTCPeerConnection) -> Dict:
        # aiortc gathers every candidate into the local description before returning
        await self._emit_candidate(None)
        return description_to_dict(pc.localDescription)

    async def apply_remote_description(self, data) -> str:
        pc = self._require_pc()
        description = description_from_dict(data)
        try:
            await pc.setRemoteDescription(description)
        except Exception as e:
            raise NegotiationFailure(f"Failed to apply remote description: {e}") from e
        return description.type

    async def add_candidate(self, data):
        candidate = candidate_from_dict(data)
        if candidate is None:
            logger.debug("Remote end of candidates")
            return
        pc = self._require_pc()
        try:
            await pc.addIceCandidate(candidate)
        except Exception as e:
            raise NegotiationFailure(f"Failed to add ICE candidate: {e}") from e

    async def _emit_candidate(self, candidate: Optional[Dict]):
        if self.on_candidate is not None:
            await self.on_candidate(candidate)

    async def close(self):
        for track in self.local_tracks:
            track.stop()
        self.local_tracks = []
        if self.pc is not None:
            pc, self.pc = self.pc, None
            await pc.close()
