"""Peer-connection capability consumed by the session.

The session talks to a browser-shaped surface: create/set descriptions, add
tracks and remote candidates, and three notifications (``icecandidate``,
``track``, ``connectionstatechange``) delivered through a pyee emitter.
:class:`AiortcPeerConnection` provides that surface on top of aiortc.
"""
from __future__ import annotations

import logging
from typing import Any, Callable, Protocol

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc import sdp as aiortc_sdp
from aiortc.sdp import candidate_from_sdp, candidate_to_sdp
from pyee.asyncio import AsyncIOEventEmitter

from ..core.config import Settings
from ..schemas.signaling import IceCandidate, SessionDescription

logger = logging.getLogger(__name__)

CANDIDATE_PREFIX = "candidate:"


class PeerConnection(Protocol):
    connection_state: str
    local_description: SessionDescription | None

    def on(self, event: str, f: Callable[..., Any]) -> Any:
        ...

    def add_track(self, track: Any) -> None:
        ...

    async def create_offer(self) -> SessionDescription:
        ...

    async def create_answer(self) -> SessionDescription:
        ...

    async def set_local_description(self, description: SessionDescription) -> None:
        ...

    async def set_remote_description(self, description: SessionDescription) -> None:
        ...

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        ...

    async def close(self) -> None:
        ...


PeerConnectionFactory = Callable[[], PeerConnection]


def build_rtc_configuration(settings: Settings) -> RTCConfiguration:
    """Build the ICE server list once from settings."""

    servers = [RTCIceServer(urls=url) for url in settings.ice_servers]
    if settings.turn_url:
        servers.append(
            RTCIceServer(
                urls=settings.turn_url,
                username=settings.turn_username or None,
                credential=settings.turn_credential or None,
            )
        )
    return RTCConfiguration(iceServers=servers)


def local_candidates(sdp: str) -> list[IceCandidate]:
    """Pull the gathered candidates out of a local description, in m-line order."""

    description = aiortc_sdp.SessionDescription.parse(sdp)
    found: list[IceCandidate] = []
    for index, media in enumerate(description.media):
        mid = media.rtp.muxId if media.rtp is not None else None
        for candidate in media.ice_candidates:
            found.append(
                IceCandidate(
                    candidate=CANDIDATE_PREFIX + candidate_to_sdp(candidate),
                    sdpMid=mid,
                    sdpMLineIndex=index,
                )
            )
    return found


def parse_remote_candidate(candidate: IceCandidate):
    """Turn a browser-style candidate into an aiortc ``RTCIceCandidate``."""

    line = candidate.candidate
    if line.startswith(CANDIDATE_PREFIX):
        line = line[len(CANDIDATE_PREFIX):]
    ice = candidate_from_sdp(line)
    ice.sdpMid = candidate.sdp_mid
    ice.sdpMLineIndex = candidate.sdp_mline_index
    return ice


class AiortcPeerConnection(AsyncIOEventEmitter):
    """Browser-style peer connection over aiortc.

    aiortc gathers candidates while the local description is being set and
    writes them into the SDP rather than firing ``icecandidate``. They are
    re-emitted one at a time afterwards, followed by ``None`` as the
    end-of-candidates marker, so the session can trickle them through the
    store exactly as it would for a browser.
    """

    def __init__(self, configuration: RTCConfiguration | None = None) -> None:
        super().__init__()
        self._pc = RTCPeerConnection(configuration=configuration)
        self._pc.on("track", self._on_track)
        self._pc.on("connectionstatechange", self._on_connection_state_change)
        self._pc.on("iceconnectionstatechange", self._on_ice_connection_state_change)
        self._pc.on("icegatheringstatechange", self._on_ice_gathering_state_change)
        self._pc.on("signalingstatechange", self._on_signaling_state_change)

    @property
    def connection_state(self) -> str:
        return self._pc.connectionState

    @property
    def local_description(self) -> SessionDescription | None:
        description = self._pc.localDescription
        if description is None:
            return None
        return SessionDescription(type=description.type, sdp=description.sdp)

    def add_track(self, track: Any) -> None:
        self._pc.addTrack(track)

    async def create_offer(self) -> SessionDescription:
        offer = await self._pc.createOffer()
        return SessionDescription(type=offer.type, sdp=offer.sdp)

    async def create_answer(self) -> SessionDescription:
        answer = await self._pc.createAnswer()
        return SessionDescription(type=answer.type, sdp=answer.sdp)

    async def set_local_description(self, description: SessionDescription) -> None:
        await self._pc.setLocalDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))
        for candidate in local_candidates(self._pc.localDescription.sdp):
            self.emit("icecandidate", candidate)
        self.emit("icecandidate", None)

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=description.sdp, type=description.type))

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        if not candidate.candidate:
            # Browsers send an empty candidate to mark the end of gathering.
            return
        await self._pc.addIceCandidate(parse_remote_candidate(candidate))

    async def close(self) -> None:
        await self._pc.close()

    def _on_track(self, track: Any) -> None:
        logger.info("Remote %s track received: %s", track.kind, track.id)
        self.emit("track", track)

    def _on_connection_state_change(self) -> None:
        logger.info("Connection state change: %s", self._pc.connectionState)
        self.emit("connectionstatechange", self._pc.connectionState)

    def _on_ice_connection_state_change(self) -> None:
        logger.info("ICE connection state change: %s", self._pc.iceConnectionState)

    def _on_ice_gathering_state_change(self) -> None:
        logger.debug("ICE gathering state changed: %s", self._pc.iceGatheringState)

    def _on_signaling_state_change(self) -> None:
        logger.debug("Signaling state change: %s", self._pc.signalingState)


class AiortcPeerFactory:
    """Create peer connections sharing one ICE configuration."""

    def __init__(self, configuration: RTCConfiguration | None = None) -> None:
        self.configuration = configuration

    def __call__(self) -> AiortcPeerConnection:
        return AiortcPeerConnection(self.configuration)
