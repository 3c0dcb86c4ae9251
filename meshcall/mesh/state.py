"""Per-peer connection state machine.

    absent -> negotiating(initiator|responder) -> connected -> closed

There are no reverse transitions and ``closed`` is terminal. Remote
candidates are *pending* until the remote description is accepted and
*active* afterwards; pending candidates are applied in arrival order, once,
at the moment the description is accepted.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Deque, Dict, Iterator, List, Optional, Tuple

from meshcall.errors import NegotiationConflict
from meshcall.mesh.transport import PeerTransport, RemoteStream
from meshcall.utils.logger import get_logger

logger = get_logger(__name__)


class Role(str, Enum):
    INITIATOR = "initiator"
    RESPONDER = "responder"


class Phase(str, Enum):
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    CLOSED = "closed"


ALLOWED_TRANSITIONS = {
    Phase.NEGOTIATING: {Phase.CONNECTED, Phase.CLOSED},
    Phase.CONNECTED: {Phase.CONNECTED, Phase.CLOSED},
    Phase.CLOSED: set(),
}


class InvalidTransition(Exception):
    """Raised when a transition is not allowed from the current phase."""


@dataclass
class PeerConnectionState:
    """Everything the local side knows about its connection to one peer."""
    peer_id: str
    role: Role
    transport: PeerTransport
    phase: Phase = Phase.NEGOTIATING
    remote_stream: Optional[RemoteStream] = None
    pending_candidates: Deque[dict] = field(default_factory=deque)
    remote_description_set: bool = False
    awaiting_answer: bool = False
    restart_attempted: bool = False
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def closed(self) -> bool:
        return self.phase == Phase.CLOSED

    @property
    def candidates_active(self) -> bool:
        return self.remote_description_set

    def transition(self, phase: Phase) -> bool:
        """Move to ``phase``.

        Returns:
            True if the phase changed, False for an idempotent repeat

        Raises:
            InvalidTransition: Transition is not allowed
        """
        if phase not in ALLOWED_TRANSITIONS[self.phase]:
            raise InvalidTransition(f"{self.peer_id}: {self.phase.value} -> {phase.value}")
        if phase == self.phase:
            return False
        logger.info(f"Peer {self.peer_id} ({self.role.value}): {self.phase.value} -> {phase.value}")
        self.phase = phase
        return True

    async def accept_remote_description(self, description: dict) -> int:
        """Set the remote description and flush pending candidates.

        Returns:
            Number of buffered candidates applied
        """
        await self.transport.set_remote_description(description)
        self.remote_description_set = True

        flushed = 0
        while self.pending_candidates and not self.closed:
            candidate = self.pending_candidates.popleft()
            await self._apply(candidate)
            flushed += 1

        if flushed:
            logger.debug(f"Applied {flushed} buffered candidate(s) from {self.peer_id}")
        return flushed

    async def add_candidate(self, candidate: dict) -> bool:
        """Apply a remote candidate now, or buffer it until the remote
        description is accepted.

        Returns:
            True if applied immediately, False if buffered or dropped
        """
        if self.closed:
            return False
        if not self.remote_description_set:
            self.pending_candidates.append(candidate)
            logger.debug(f"Buffered candidate from {self.peer_id} ({len(self.pending_candidates)} pending)")
            return False
        await self._apply(candidate)
        return True

    async def _apply(self, candidate: dict) -> None:
        try:
            await self.transport.add_candidate(candidate)
        except Exception as e:
            # One bad candidate must not end the negotiation.
            logger.warning(f"Failed to add candidate from {self.peer_id}: {e}")

    def record_track(self, track: Any) -> None:
        if self.remote_stream is None:
            self.remote_stream = RemoteStream()
        self.remote_stream.tracks.append(track)
        self.transition(Phase.CONNECTED)

    async def close(self) -> None:
        """Enter ``closed`` and release the transport. Safe to call twice."""
        if self.closed:
            return
        self.transition(Phase.CLOSED)
        self.pending_candidates.clear()
        self.remote_stream = None
        self.awaiting_answer = False
        await self.transport.close()


class PeerTable:
    """At most one :class:`PeerConnectionState` per remote peer id."""

    def __init__(self):
        self._states: Dict[str, PeerConnectionState] = {}

    def get_or_create(
        self,
        peer_id: str,
        role: Role,
        transport_factory: Callable[[], PeerTransport],
    ) -> Tuple[PeerConnectionState, bool]:
        """Return the existing state for ``peer_id`` or create one.

        Returns:
            (state, created)
        """
        existing = self._states.get(peer_id)
        if existing is not None:
            logger.debug(str(NegotiationConflict(peer_id)) + "; reusing it")
            return existing, False

        state = PeerConnectionState(peer_id=peer_id, role=role, transport=transport_factory())
        self._states[peer_id] = state
        logger.info(f"Peer {peer_id}: absent -> negotiating ({role.value})")
        return state, True

    def get(self, peer_id: str) -> Optional[PeerConnectionState]:
        return self._states.get(peer_id)

    def remove(self, peer_id: str) -> Optional[PeerConnectionState]:
        return self._states.pop(peer_id, None)

    def ids(self) -> List[str]:
        return list(self._states)

    def __contains__(self, peer_id: str) -> bool:
        return peer_id in self._states

    def __len__(self) -> int:
        return len(self._states)

    def __iter__(self) -> Iterator[PeerConnectionState]:
        return iter(list(self._states.values()))
