"""Signaling module."""

from meshcall.signaling.client import SignalingClient
from meshcall.signaling.protocol import SignalingMessage
from meshcall.signaling.server import Peer, RelayCoordinator, Room, SignalingServer

__all__ = [
    "Peer",
    "RelayCoordinator",
    "Room",
    "SignalingClient",
    "SignalingMessage",
    "SignalingServer",
]
