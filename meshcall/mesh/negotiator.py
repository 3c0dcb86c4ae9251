"""Mesh negotiator: one session per local participant.

Relay messages and transport callbacks are posted to a single event queue
and handled one at a time, each handler running to completion before the
next starts. Peer state transitions therefore never race each other, and a
candidate can never be buffered and applied for the same arrival.

Roles follow join order: the newcomer is initiator towards every member
already present, and every present member is responder towards the
newcomer.
"""

import asyncio
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from aiortc.contrib.media import MediaRelay

from meshcall.errors import (
    ChannelUnavailable,
    MediaAccessDenied,
    MeshCallError,
    ProtocolViolation,
    TransportConnectivityFailure,
)
from meshcall.mesh.media import BlackholeSink, LocalMediaSource, RemoteMediaSink
from meshcall.mesh.membership import Membership, Status, StatusBoard, StatusKind
from meshcall.mesh.state import Phase, PeerConnectionState, PeerTable, Role
from meshcall.mesh.transport import AiortcTransport, PeerTransport
from meshcall.signaling import protocol
from meshcall.signaling.client import SignalingClient
from meshcall.signaling.protocol import SignalingMessage
from meshcall.utils.config import MeshConfig
from meshcall.utils.logger import get_logger

logger = get_logger(__name__)

TERMINAL_STATES = ("disconnected", "closed")

# Seconds leave() waits for an in-flight handler before cancelling it.
DRAIN_TIMEOUT = 5.0


class MeshSession:
    """Joins a room and maintains one connection per other participant.

    A session joins once. After the relay channel is lost (status
    ``DISCONNECTED``) or after :meth:`leave`, rejoining means building a new
    session; calling :meth:`join` again raises :class:`MeshCallError`.

    A peer whose connectivity fails gets one restart attempt through
    :meth:`PeerTransport.restart_ice`. :class:`AiortcTransport` cannot
    restart ICE, so with the default transport the first failure tears the
    peer down.

    Local tracks are fanned out through one ``MediaRelay``: every peer
    connection sends its own subscription, never the source track itself.
    """

    def __init__(
        self,
        room_id: str,
        media_source: LocalMediaSource,
        signaling: Optional[SignalingClient] = None,
        signaling_url: str = "ws://localhost:3001",
        media_sink: Optional[RemoteMediaSink] = None,
        transport_factory: Optional[Callable[[], PeerTransport]] = None,
        config: Optional[MeshConfig] = None,
    ):
        """Initialize the session.

        Args:
            room_id: Room to join (case-insensitive)
            media_source: Local media sent to every peer
            signaling: Relay channel; built from ``signaling_url`` if omitted
            signaling_url: Relay URL
            media_sink: Destination for remote media
            transport_factory: Creates one transport per remote peer
            config: Negotiation settings
        """
        self.room_id = protocol.normalize_room_id(room_id)
        self.config = config or MeshConfig()
        self.media_source = media_source
        self.media_sink = media_sink or BlackholeSink()
        self.signaling = signaling or SignalingClient(
            signaling_url,
            ping_interval=self.config.ping_interval,
            ping_timeout=self.config.ping_timeout,
        )
        self.transport_factory = transport_factory or (
            lambda: AiortcTransport(self.config.ice_servers)
        )

        self.peer_id: Optional[str] = None
        self.peers = PeerTable()
        self.membership = Membership()
        self.status = StatusBoard()

        self._local_tracks: List[Any] = []
        self._relay = MediaRelay()
        self._outgoing: Dict[str, List[Any]] = {}
        self._started = False
        self._events: "asyncio.Queue[Optional[Tuple[Callable[..., Awaitable[None]], tuple]]]" = asyncio.Queue()
        self._loop_task: Optional[asyncio.Task] = None
        self._timers: dict = {}
        self._joined = asyncio.Event()
        self._left = False

    # Public API

    async def join(self) -> None:
        """Acquire media, open the relay channel and request to join.

        Raises:
            MediaAccessDenied: Local capture unavailable
            ChannelUnavailable: Relay unreachable
            MeshCallError: The session already joined or has left
        """
        if self._left or self._started:
            raise MeshCallError(f"Session for room {self.room_id} is spent; create a new MeshSession to rejoin")
        self._started = True

        self.status.set(StatusKind.INITIALIZING)
        try:
            self._local_tracks = await self.media_source.acquire()
        except MediaAccessDenied:
            self._started = False
            self.status.set(StatusKind.MEDIA_BLOCKED)
            raise
        if self._left:
            self.media_source.stop()
            return

        self.signaling.on_message = lambda message: self._post(self._on_signal, message)
        self.signaling.on_close = lambda: self._post(self._on_channel_closed)
        try:
            await self.signaling.connect()
        except ChannelUnavailable:
            self._started = False
            self.status.set(StatusKind.UNREACHABLE)
            self.media_source.stop()
            raise
        if self._left:
            await self.signaling.close()
            return

        self._loop_task = asyncio.create_task(self._run())
        self.status.set(StatusKind.JOINING)
        await self.signaling.join(self.room_id)

    async def wait_joined(self, timeout: Optional[float] = None) -> str:
        """Wait for the relay's join reply; returns the assigned peer id."""
        await asyncio.wait_for(self._joined.wait(), timeout=timeout)
        return self.peer_id

    async def leave(self) -> None:
        """Tear everything down. Idempotent.

        A handler that is awaiting a transport step when this runs finds its
        peer gone once the step returns and drops the result.
        """
        if self._left:
            return
        self._left = True
        logger.info(f"Leaving room {self.room_id}")

        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()

        self.media_source.stop()
        for state in self.peers:
            await self._teardown(state)
        self.membership.clear()
        await self.signaling.close()
        self.status.set(StatusKind.LEFT)
        await self._stop_loop()

    @property
    def participants(self) -> List[str]:
        return self.membership.ids

    @property
    def remote_streams(self) -> dict:
        return {s.peer_id: s.remote_stream for s in self.peers if s.remote_stream is not None}

    def subscribe(self, observer: Callable[[Status], None]) -> None:
        self.status.subscribe(observer)

    def get_status(self) -> dict:
        return {
            "room_id": self.room_id,
            "peer_id": self.peer_id,
            "status": self.status.current.message,
            "signaling_connected": self.signaling.is_connected,
            "participants": self.participants,
            "peers": {s.peer_id: f"{s.phase.value} ({s.role.value})" for s in self.peers},
        }

    # Event loop

    def _post(self, handler: Callable[..., Awaitable[None]], *args) -> None:
        if not self._left:
            self._events.put_nowait((handler, args))

    async def _run(self) -> None:
        while True:
            item = await self._events.get()
            if item is None:
                break
            if self._left:
                continue
            handler, args = item
            try:
                await handler(*args)
            except asyncio.CancelledError:
                raise
            except ProtocolViolation as e:
                logger.debug(f"Dropped message: {e}")
            except Exception as e:
                if self._left:
                    logger.debug(f"{handler.__name__} interrupted by leave: {e}")
                else:
                    logger.exception(f"Error in {handler.__name__}: {e}")
        logger.debug(f"Event loop for room {self.room_id} stopped")

    async def _stop_loop(self) -> None:
        if self._loop_task is None:
            return
        # Sentinel: events still queued are skipped, the loop then exits.
        self._events.put_nowait(None)
        if self._loop_task is asyncio.current_task():
            return

        done, _ = await asyncio.wait({self._loop_task}, timeout=DRAIN_TIMEOUT)
        if not done:
            logger.warning(f"Handler still running after {DRAIN_TIMEOUT}s, cancelling it")
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass

    # Relay events

    async def _on_signal(self, message: SignalingMessage) -> None:
        handlers = {
            protocol.ROOM_JOINED: self._on_room_joined,
            protocol.PEER_JOINED: self._on_peer_joined,
            protocol.PEER_LEFT: self._on_peer_left,
            protocol.OFFER: self._on_offer,
            protocol.ANSWER: self._on_answer,
            protocol.ICE_CANDIDATE: self._on_candidate,
        }
        await handlers[message.type](message)

    async def _on_room_joined(self, message: SignalingMessage) -> None:
        if self._joined.is_set():
            raise ProtocolViolation("Duplicate room-joined")

        self.peer_id = message.get("peerId")
        existing = message.get("existingPeers")
        self.membership.seed(self.peer_id, existing)
        self._joined.set()
        logger.info(f"Joined room {message.get('roomId')} as {self.peer_id} with {len(self.membership)} peer(s)")

        if not self.membership.ids:
            self.status.set(StatusKind.ALONE)
        else:
            self.status.set(StatusKind.CONNECTING, len(self.membership))

        for peer_id in self.membership.ids:
            await self._start_initiator(peer_id)

    async def _on_peer_joined(self, message: SignalingMessage) -> None:
        # The newcomer sends us an offer; we only record it.
        if self.membership.add(message.get("peerId")):
            self.status.set(StatusKind.PEER_JOINED)

    async def _on_peer_left(self, message: SignalingMessage) -> None:
        peer_id = message.get("peerId")
        self.membership.remove(peer_id)
        state = self.peers.get(peer_id)
        if state is not None:
            await self._teardown(state)
        self.status.set(StatusKind.PEER_LEFT)

    async def _on_offer(self, message: SignalingMessage) -> None:
        sender = message.get("from")
        state = self.peers.get(sender)

        if state is None:
            state, _ = self.peers.get_or_create(sender, Role.RESPONDER, self._create_transport(sender))
            self._add_local_tracks(state)
            self.membership.add(sender)
            self._arm_timeout(state)
        elif state.role != Role.RESPONDER:
            raise ProtocolViolation(f"Offer from {sender}, to whom we are initiator")

        await state.accept_remote_description(message.get("sdp"))
        if self._cancelled(state):
            return
        answer = await state.transport.create_answer()
        if self._cancelled(state):
            return
        await state.transport.set_local_description(answer)
        if self._cancelled(state):
            return
        await self.signaling.send(protocol.answer(sender, state.transport.local_description))
        logger.info(f"Sent answer to {sender}")
        self.status.set(StatusKind.CALL_CONNECTED)

    async def _on_answer(self, message: SignalingMessage) -> None:
        sender = message.get("from")
        state = self.peers.get(sender)
        if state is None or state.closed:
            raise ProtocolViolation(f"Answer from unknown peer {sender}")
        if state.role != Role.INITIATOR or not state.awaiting_answer:
            raise ProtocolViolation(f"Unexpected answer from {sender}")

        state.awaiting_answer = False
        await state.accept_remote_description(message.get("sdp"))
        logger.info(f"Accepted answer from {sender}")
        self.status.set(StatusKind.CALL_CONNECTED)

    async def _on_candidate(self, message: SignalingMessage) -> None:
        sender = message.get("from")
        candidate = message.get("candidate")
        if not candidate or not candidate.get("candidate"):
            return  # end of candidates

        state = self.peers.get(sender)
        if state is None or state.closed:
            raise ProtocolViolation(f"Candidate from unknown peer {sender}")
        await state.add_candidate(candidate)

    async def _on_channel_closed(self) -> None:
        self.status.set(StatusKind.DISCONNECTED)

    # Transport events

    async def _on_remote_track(self, state: PeerConnectionState, track: Any) -> None:
        if not self._current(state):
            return
        state.record_track(track)
        self._disarm_timeout(state.peer_id)
        await self.media_sink.attach(state.peer_id, track)

    async def _on_connection_state(self, state: PeerConnectionState, connection_state: str) -> None:
        if not self._current(state):
            return
        logger.info(f"Peer {state.peer_id} transport: {connection_state}")

        if connection_state == "failed":
            if state.restart_attempted:
                logger.warning(str(TransportConnectivityFailure(state.peer_id, connection_state)))
                await self._teardown(state)
                return
            state.restart_attempted = True
            await self._restart(state)
        elif connection_state in TERMINAL_STATES:
            await self._teardown(state)

    async def _on_timeout(self, state: PeerConnectionState) -> None:
        if self._current(state) and state.phase == Phase.NEGOTIATING:
            logger.warning(f"Peer {state.peer_id} did not connect within {self.config.connect_timeout}s")
            await self._on_connection_state(state, "failed")

    async def _send_candidate(self, state: PeerConnectionState, candidate: dict) -> None:
        if self._current(state):
            await self.signaling.send(protocol.ice_candidate(state.peer_id, candidate))

    # Negotiation steps

    async def _start_initiator(self, peer_id: str) -> None:
        if self._left:
            return
        state, created = self.peers.get_or_create(peer_id, Role.INITIATOR, self._create_transport(peer_id))
        if not created:
            return

        self._add_local_tracks(state)
        state.transport.request_receive(self._receive_kinds())
        self._arm_timeout(state)
        await self._send_offer(state)

    async def _send_offer(self, state: PeerConnectionState) -> None:
        offer = await state.transport.create_offer()
        if self._cancelled(state):
            return
        await state.transport.set_local_description(offer)
        if self._cancelled(state):
            return
        state.awaiting_answer = True
        await self.signaling.send(protocol.offer(state.peer_id, state.transport.local_description))
        logger.info(f"Sent offer to {state.peer_id}")

    async def _restart(self, state: PeerConnectionState) -> None:
        logger.warning(f"Connectivity to {state.peer_id} failed, restarting ICE")
        if not await state.transport.restart_ice():
            await self._teardown(state)
            return
        # Only the initiator offers, also for restarts.
        if state.role == Role.INITIATOR and not self._cancelled(state):
            await self._send_offer(state)

    async def _teardown(self, state: PeerConnectionState) -> None:
        if self.peers.get(state.peer_id) is state:
            self.peers.remove(state.peer_id)
            for track in self._outgoing.pop(state.peer_id, []):
                track.stop()
        self._disarm_timeout(state.peer_id)
        self.membership.remove(state.peer_id)
        await state.close()
        await self.media_sink.detach(state.peer_id)
        logger.info(f"Peer {state.peer_id} torn down")

    # Helpers

    def _add_local_tracks(self, state: PeerConnectionState) -> None:
        # One relay subscription per peer; a source track has a single reader.
        tracks = [self._relay.subscribe(track) for track in self._local_tracks]
        self._outgoing[state.peer_id] = tracks
        state.transport.add_tracks(tracks)

    def _create_transport(self, peer_id: str) -> Callable[[], PeerTransport]:
        def factory() -> PeerTransport:
            transport = self.transport_factory()
            # The state does not exist yet while its transport is built.
            def post(handler, *args):
                state = self.peers.get(peer_id)
                if state is not None and state.transport is transport:
                    self._post(handler, state, *args)

            transport.on_remote_track = lambda track: post(self._on_remote_track, track)
            transport.on_connection_state = lambda value: post(self._on_connection_state, value)
            transport.on_candidate = lambda candidate: post(self._send_candidate, candidate)
            return transport

        return factory

    def _receive_kinds(self) -> List[str]:
        kinds = []
        if self.config.receive_audio:
            kinds.append("audio")
        if self.config.receive_video:
            kinds.append("video")
        return kinds

    def _current(self, state: PeerConnectionState) -> bool:
        return not self._left and not state.closed and self.peers.get(state.peer_id) is state

    def _cancelled(self, state: PeerConnectionState) -> bool:
        return not self._current(state)

    def _arm_timeout(self, state: PeerConnectionState) -> None:
        if not self.config.connect_timeout:
            return
        loop = asyncio.get_running_loop()
        self._timers[state.peer_id] = loop.call_later(
            self.config.connect_timeout, self._post, self._on_timeout, state
        )

    def _disarm_timeout(self, peer_id: str) -> None:
        timer = self._timers.pop(peer_id, None)
        if timer:
            timer.cancel()
