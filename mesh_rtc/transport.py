"""Connection transport used by peer sessions.

A PeerSession never touches aiortc directly: it drives a Transport, which is
the capability set a peer connection offers (description exchange, candidate
application, track attachment, ICE restart, close) plus three callbacks the
session installs (``on_track``, ``on_ice_candidate``,
``on_connection_state_change``).

Descriptions and candidates cross this boundary as plain dictionaries in
their wire form so the session can forward them to the signaling channel
unchanged::

    {"type": "offer", "sdp": "v=0..."}
    {"candidate": "candidate:1 1 udp ...", "sdpMid": "0", "sdpMLineIndex": 0}

AiortcTransport is the production implementation on top of
``aiortc.RTCPeerConnection``.
"""

import logging
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional, Protocol

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.sdp import candidate_from_sdp

from mesh_rtc.config import IceServerConfig

logger = logging.getLogger(__name__)

DESCRIPTION_TYPES = ("offer", "answer", "pranswer", "rollback")
MEDIA_KINDS = ("audio", "video")


@dataclass
class RemoteStream:
    """Remote media reported by a transport.

    Attributes:
        id: Stream identifier, stable for the lifetime of the transport.
        tracks: Remote tracks received so far.
    """

    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    tracks: List[Any] = field(default_factory=list)

    def add(self, track: Any) -> None:
        if track not in self.tracks:
            self.tracks.append(track)

    def remove(self, track: Any) -> None:
        if track in self.tracks:
            self.tracks.remove(track)


class Transport(Protocol):
    """Capability set of a peer connection, as seen by a PeerSession."""

    on_track: Optional[Callable[[RemoteStream], None]]
    on_ice_candidate: Optional[Callable[[dict], None]]
    on_connection_state_change: Optional[Callable[[str], None]]

    @property
    def local_description(self) -> Optional[dict]: ...

    @property
    def remote_description(self) -> Optional[dict]: ...

    async def create_offer(self) -> dict: ...

    async def create_answer(self) -> dict: ...

    async def set_local_description(self, description: dict) -> None: ...

    async def set_remote_description(self, description: dict) -> None: ...

    async def add_ice_candidate(self, candidate: dict) -> None: ...

    def add_track(self, track: Any) -> None: ...

    async def restart_ice(self) -> None: ...

    async def close(self) -> None: ...


TransportFactory = Callable[[], Transport]


def validate_description(description: Any) -> dict:
    """Check that ``description`` is a well-formed session description.

    Raises:
        ValueError: If the description is not a dict with a known ``type``
            and a string ``sdp``.
    """
    if not isinstance(description, dict):
        raise ValueError(f"Session description must be an object, got {type(description).__name__}")
    if description.get("type") not in DESCRIPTION_TYPES:
        raise ValueError(f"Invalid session description type: {description.get('type')!r}")
    if description["type"] != "rollback" and not isinstance(description.get("sdp"), str):
        raise ValueError("Session description has no sdp")
    return description


def description_to_dict(description: Optional[RTCSessionDescription]) -> Optional[dict]:
    if description is None:
        return None
    return {"type": description.type, "sdp": description.sdp}


class AiortcTransport:
    """Transport backed by an aiortc RTCPeerConnection.

    aiortc gathers all local candidates before ``setLocalDescription``
    returns and embeds them in the local SDP, so ``on_ice_candidate`` is
    never invoked by this implementation; remote trickled candidates are
    still accepted through ``add_ice_candidate``.
    """

    def __init__(self, ice_servers: Optional[List[IceServerConfig]] = None):
        """Create the underlying peer connection.

        Args:
            ice_servers: STUN/TURN servers. An empty list or None uses
                aiortc's default configuration.
        """
        self._configuration = None
        if ice_servers:
            self._configuration = RTCConfiguration(
                iceServers=[RTCIceServer(**server.to_dict()) for server in ice_servers]
            )

        self.on_track: Optional[Callable[[RemoteStream], None]] = None
        self.on_ice_candidate: Optional[Callable[[dict], None]] = None
        self.on_connection_state_change: Optional[Callable[[str], None]] = None

        self.remote_stream = RemoteStream()
        self._local_tracks: List[Any] = []
        self._closed = False
        self.pc = self._new_peer_connection()

    def _new_peer_connection(self) -> RTCPeerConnection:
        if self._configuration is not None:
            pc = RTCPeerConnection(configuration=self._configuration)
        else:
            pc = RTCPeerConnection()

        # Events from a connection that has since been replaced are ignored.
        @pc.on("track")
        def on_track(track):
            if pc is self.pc:
                self._handle_track(track)

        @pc.on("connectionstatechange")
        def on_connection_state_change():
            if pc is self.pc:
                self._handle_connection_state_change()

        return pc

    @property
    def local_description(self) -> Optional[dict]:
        return description_to_dict(self.pc.localDescription)

    @property
    def remote_description(self) -> Optional[dict]:
        return description_to_dict(self.pc.remoteDescription)

    @property
    def connection_state(self) -> str:
        return self.pc.connectionState

    async def create_offer(self) -> dict:
        """Create an offer that always asks to receive audio and video.

        Kinds without a local track get a receive-only transceiver.
        """
        present = {transceiver.kind for transceiver in self.pc.getTransceivers()}
        for kind in MEDIA_KINDS:
            if kind not in present:
                self.pc.addTransceiver(kind, direction="recvonly")
        offer = await self.pc.createOffer()
        return description_to_dict(offer)

    async def create_answer(self) -> dict:
        answer = await self.pc.createAnswer()
        return description_to_dict(answer)

    async def set_local_description(self, description: dict) -> None:
        validate_description(description)
        await self.pc.setLocalDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def set_remote_description(self, description: dict) -> None:
        validate_description(description)
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def add_ice_candidate(self, candidate: dict) -> None:
        """Apply a remote candidate in its browser JSON form."""
        sdp = (candidate or {}).get("candidate")
        if not sdp:
            logger.debug("Received empty ICE candidate (end of candidates)")
            return
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]

        parsed = candidate_from_sdp(sdp)
        parsed.sdpMid = candidate.get("sdpMid")
        parsed.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(parsed)

    def add_track(self, track: Any) -> None:
        self._local_tracks.append(track)
        self.pc.addTrack(track)

    async def restart_ice(self) -> None:
        """Replace the peer connection with a fresh one.

        aiortc cannot restart ICE on a live connection, so the connection is
        rebuilt with the same configuration and local tracks; the next
        description exchange then negotiates new ICE credentials. Remote
        tracks of the old connection are dropped.
        """
        if self._closed:
            return
        old = self.pc
        self.pc = self._new_peer_connection()
        for track in self._local_tracks:
            self.pc.addTrack(track)
        self.remote_stream = RemoteStream()
        logger.info("Replaced peer connection for ICE restart")
        await old.close()

    async def close(self) -> None:
        """Close the peer connection. Closing twice is a no-op."""
        if self._closed:
            return
        self._closed = True
        await self.pc.close()

    def _handle_track(self, track) -> None:
        logger.info(f"Received remote {track.kind} track")
        self.remote_stream.add(track)

        @track.on("ended")
        def on_ended():
            self.remote_stream.remove(track)

        if self.on_track:
            self.on_track(self.remote_stream)

    def _handle_connection_state_change(self) -> None:
        state = self.pc.connectionState
        logger.debug(f"Peer connection state: {state}")
        if self.on_connection_state_change:
            self.on_connection_state_change(state)


def aiortc_transport_factory(ice_servers: Optional[List[IceServerConfig]] = None) -> TransportFactory:
    """Return a factory that builds AiortcTransports for the given ICE servers."""

    def factory() -> AiortcTransport:
        return AiortcTransport(ice_servers=ice_servers)

    return factory
