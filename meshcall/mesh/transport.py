"""Peer transport primitive.

The negotiator drives connections only through :class:`PeerTransport`;
:class:`AiortcTransport` is the production implementation on top of
aiortc's ``RTCPeerConnection``.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional

from aiortc import RTCConfiguration, RTCIceServer, RTCPeerConnection, RTCSessionDescription
from aiortc.sdp import candidate_from_sdp

from meshcall.utils.config import IceServerConfig
from meshcall.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class RemoteStream:
    """Media received from one remote peer."""
    tracks: List[Any] = field(default_factory=list)

    def kinds(self) -> List[str]:
        return [getattr(track, "kind", "unknown") for track in self.tracks]


class PeerTransport(ABC):
    """Connection primitive for one remote peer.

    Session descriptions and candidates use their JSON shapes:
    ``{"type": ..., "sdp": ...}`` and
    ``{"candidate": ..., "sdpMid": ..., "sdpMLineIndex": ...}``.

    Callbacks are plain functions and must not block:
        on_candidate(candidate): local candidate to relay to the peer
        on_remote_track(track): remote media track arrived
        on_connection_state(state): "new", "connecting", "connected",
            "disconnected", "failed" or "closed"
    """

    def __init__(self):
        self.on_candidate: Optional[Callable[[dict], None]] = None
        self.on_remote_track: Optional[Callable[[Any], None]] = None
        self.on_connection_state: Optional[Callable[[str], None]] = None

    @abstractmethod
    def add_tracks(self, tracks: Iterable[Any]) -> None:
        """Attach local media tracks."""

    @abstractmethod
    def request_receive(self, kinds: Iterable[str]) -> None:
        """Make sure an offer asks to receive these media kinds."""

    @abstractmethod
    async def create_offer(self) -> dict:
        pass

    @abstractmethod
    async def create_answer(self) -> dict:
        pass

    @abstractmethod
    async def set_local_description(self, description: dict) -> None:
        pass

    @abstractmethod
    async def set_remote_description(self, description: dict) -> None:
        pass

    @property
    @abstractmethod
    def local_description(self) -> Optional[dict]:
        """Local description as it should be sent to the peer."""

    @abstractmethod
    async def add_candidate(self, candidate: dict) -> None:
        pass

    @abstractmethod
    async def restart_ice(self) -> bool:
        """Restart connectivity checks.

        Returns:
            True if a restart is under way and the next offer renegotiates
            connectivity, False if the transport cannot restart
        """

    @abstractmethod
    async def close(self) -> None:
        pass

    def _emit(self, callback: Optional[Callable], *args) -> None:
        if callback:
            callback(*args)


def _description_to_dict(description: Optional[RTCSessionDescription]) -> Optional[dict]:
    if description is None:
        return None
    return {"type": description.type, "sdp": description.sdp}


class AiortcTransport(PeerTransport):
    """RTCPeerConnection-backed transport."""

    def __init__(self, ice_servers: Optional[List[IceServerConfig]] = None):
        """Initialize the peer connection.

        Args:
            ice_servers: STUN/TURN servers
        """
        super().__init__()

        config = RTCConfiguration(
            iceServers=[
                RTCIceServer(urls=server.urls, username=server.username, credential=server.credential)
                for server in (ice_servers or [])
            ]
        )
        self.pc = RTCPeerConnection(configuration=config)

        @self.pc.on("track")
        def on_track(track):
            logger.info(f"Remote {track.kind} track received")
            self._emit(self.on_remote_track, track)

        @self.pc.on("connectionstatechange")
        async def on_connectionstatechange():
            logger.debug(f"Connection state: {self.pc.connectionState}")
            self._emit(self.on_connection_state, self.pc.connectionState)

        # aiortc gathers candidates before setLocalDescription returns and
        # embeds them in the description, so on_candidate never fires.

    def add_tracks(self, tracks: Iterable[Any]) -> None:
        for track in tracks:
            self.pc.addTrack(track)

    def request_receive(self, kinds: Iterable[str]) -> None:
        present = {t.kind for t in self.pc.getTransceivers()}
        for kind in kinds:
            if kind not in present:
                self.pc.addTransceiver(kind, direction="recvonly")

    async def create_offer(self) -> dict:
        return _description_to_dict(await self.pc.createOffer())

    async def create_answer(self) -> dict:
        return _description_to_dict(await self.pc.createAnswer())

    async def set_local_description(self, description: dict) -> None:
        await self.pc.setLocalDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    async def set_remote_description(self, description: dict) -> None:
        await self.pc.setRemoteDescription(
            RTCSessionDescription(sdp=description["sdp"], type=description["type"])
        )

    @property
    def local_description(self) -> Optional[dict]:
        return _description_to_dict(self.pc.localDescription)

    async def add_candidate(self, candidate: dict) -> None:
        sdp = candidate.get("candidate", "")
        if sdp.startswith("candidate:"):
            sdp = sdp[len("candidate:"):]
        ice_candidate = candidate_from_sdp(sdp)
        ice_candidate.sdpMid = candidate.get("sdpMid")
        ice_candidate.sdpMLineIndex = candidate.get("sdpMLineIndex")
        await self.pc.addIceCandidate(ice_candidate)

    async def restart_ice(self) -> bool:
        # RTCPeerConnection in aiortc has no ICE restart.
        logger.warning("ICE restart is not supported by aiortc")
        return False

    async def close(self) -> None:
        await self.pc.close()
