"""Membership and status projections consumed by the UI."""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, Iterator, List, Optional

from meshcall.utils.logger import get_logger

logger = get_logger(__name__)


class Membership:
    """Ordered, duplicate-free list of remote peer ids.

    Never contains the local participant's own id.
    """

    def __init__(self):
        self.self_id: Optional[str] = None
        self._ids: List[str] = []

    def seed(self, self_id: str, peer_ids: Iterable[str]) -> None:
        """Reset from a join reply."""
        self.self_id = self_id
        self._ids = []
        for peer_id in peer_ids:
            self.add(peer_id)

    def add(self, peer_id: str) -> bool:
        if peer_id == self.self_id or peer_id in self._ids:
            return False
        self._ids.append(peer_id)
        return True

    def remove(self, peer_id: str) -> bool:
        if peer_id not in self._ids:
            return False
        self._ids.remove(peer_id)
        return True

    def clear(self) -> None:
        self._ids = []

    @property
    def ids(self) -> List[str]:
        return list(self._ids)

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._ids

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._ids))

    def __len__(self) -> int:
        return len(self._ids)


class StatusKind(str, Enum):
    INITIALIZING = "initializing"
    JOINING = "joining"
    ALONE = "alone"
    CONNECTING = "connecting"
    PEER_JOINED = "peer-joined"
    CALL_CONNECTED = "call-connected"
    PEER_LEFT = "peer-left"
    MEDIA_BLOCKED = "media-blocked"
    UNREACHABLE = "unreachable"
    DISCONNECTED = "disconnected"
    LEFT = "left"


MESSAGES = {
    StatusKind.INITIALIZING: "Initializing...",
    StatusKind.JOINING: "Joining room...",
    StatusKind.ALONE: "You are the first one here! Share the link to invite others.",
    StatusKind.PEER_JOINED: "Someone joined the room!",
    StatusKind.CALL_CONNECTED: "Call connected!",
    StatusKind.PEER_LEFT: "A participant left the call.",
    StatusKind.MEDIA_BLOCKED: "Camera/mic blocked. Please allow access and refresh.",
    StatusKind.UNREACHABLE: "Cannot reach signaling server. Is it running?",
    StatusKind.DISCONNECTED: "Disconnected from server.",
    StatusKind.LEFT: "Left the room.",
}

ERROR_KINDS = {StatusKind.MEDIA_BLOCKED, StatusKind.UNREACHABLE, StatusKind.DISCONNECTED}


@dataclass(frozen=True)
class Status:
    kind: StatusKind
    message: str

    @property
    def is_error(self) -> bool:
        return self.kind in ERROR_KINDS


def make_status(kind: StatusKind, peer_count: int = 0) -> Status:
    if kind == StatusKind.CONNECTING:
        return Status(kind, f"Connecting to {peer_count} participant(s)...")
    return Status(kind, MESSAGES[kind])


class StatusBoard:
    """Current session status plus change observers."""

    def __init__(self):
        self.current = make_status(StatusKind.INITIALIZING)
        self._observers: List[Callable[[Status], None]] = []

    def subscribe(self, observer: Callable[[Status], None]) -> None:
        self._observers.append(observer)

    def set(self, kind: StatusKind, peer_count: int = 0) -> Status:
        self.current = make_status(kind, peer_count)
        logger.info(f"Status: {self.current.message}")
        for observer in list(self._observers):
            try:
                observer(self.current)
            except Exception as e:
                logger.error(f"Status observer failed: {e}")
        return self.current
