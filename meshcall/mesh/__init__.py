"""Client-side mesh negotiation."""

from meshcall.mesh.media import (
    BlackholeSink,
    LocalMediaSource,
    PlayerMediaSource,
    RemoteMediaSink,
    SyntheticMediaSource,
)
from meshcall.mesh.membership import Membership, Status, StatusKind
from meshcall.mesh.negotiator import MeshSession
from meshcall.mesh.state import Phase, PeerConnectionState, PeerTable, Role
from meshcall.mesh.transport import AiortcTransport, PeerTransport, RemoteStream

__all__ = [
    "AiortcTransport",
    "BlackholeSink",
    "LocalMediaSource",
    "Membership",
    "MeshSession",
    "PeerConnectionState",
    "PeerTable",
    "PeerTransport",
    "Phase",
    "PlayerMediaSource",
    "RemoteMediaSink",
    "RemoteStream",
    "Role",
    "Status",
    "StatusKind",
    "SyntheticMediaSource",
]
