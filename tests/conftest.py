"""Pytest configuration and shared fixtures."""
import asyncio
import json
from typing import List, Optional

import pytest
import pytest_asyncio

from meshcall.mesh.media import LocalMediaSource, RemoteMediaSink
from meshcall.mesh.transport import PeerTransport
from meshcall.errors import MediaAccessDenied
from meshcall.signaling import protocol
from meshcall.signaling.server import RelayCoordinator


class FakeChannel:
    """Duplex channel stand-in that records frames sent to the client."""

    def __init__(self, fail: bool = False):
        self.sent: List[dict] = []
        self.fail = fail

    async def send(self, frame: str) -> None:
        if self.fail:
            raise ConnectionError("channel is gone")
        self.sent.append(json.loads(frame))

    def of_type(self, msg_type: str) -> List[dict]:
        return [m for m in self.sent if m["type"] == msg_type]


class FakeTrack:
    def __init__(self, kind: str):
        self.kind = kind
        self.stopped = False

    def stop(self):
        self.stopped = True


class FakeMediaSource(LocalMediaSource):
    def __init__(self, deny: bool = False):
        super().__init__()
        self.deny = deny

    async def acquire(self):
        if self.deny:
            raise MediaAccessDenied("Permission denied")
        self.tracks = [FakeTrack("audio"), FakeTrack("video")]
        return self.tracks


class FakeSink(RemoteMediaSink):
    def __init__(self):
        self.attached = {}

    async def attach(self, peer_id, track):
        self.attached.setdefault(peer_id, []).append(track)

    async def detach(self, peer_id):
        self.attached.pop(peer_id, None)


class FakeTransport(PeerTransport):
    """Records every call; refuses candidates before the remote description.

    With ``gate`` set, offer and answer creation block until the event is set.
    """

    def __init__(self, restartable: bool = True, gate: Optional[asyncio.Event] = None):
        super().__init__()
        self.gate = gate
        self.calls: List[str] = []
        self.tracks = []
        self.receive_kinds = []
        self.local: Optional[dict] = None
        self.remote: Optional[dict] = None
        self.applied: List[dict] = []
        self.restartable = restartable
        self.restarts = 0
        self.closed = False
        self.offers = 0

    def add_tracks(self, tracks):
        self.calls.append("add_tracks")
        self.tracks.extend(tracks)

    def request_receive(self, kinds):
        self.receive_kinds = list(kinds)

    async def create_offer(self):
        self.calls.append("create_offer")
        if self.gate is not None:
            await self.gate.wait()
        self.offers += 1
        return {"type": "offer", "sdp": f"v=0 offer {self.offers}"}

    async def create_answer(self):
        self.calls.append("create_answer")
        if self.gate is not None:
            await self.gate.wait()
        return {"type": "answer", "sdp": "v=0 answer"}

    async def set_local_description(self, description):
        self.calls.append("set_local_description")
        self.local = description

    async def set_remote_description(self, description):
        self.calls.append("set_remote_description")
        self.remote = description

    @property
    def local_description(self):
        return self.local

    async def add_candidate(self, candidate):
        if self.remote is None:
            raise AssertionError("candidate applied before remote description")
        self.applied.append(candidate)

    async def restart_ice(self):
        self.restarts += 1
        return self.restartable

    async def close(self):
        self.closed = True

    def fire_track(self, kind="video"):
        self._emit(self.on_remote_track, FakeTrack(kind))

    def fire_state(self, state):
        self._emit(self.on_connection_state, state)

    def fire_candidate(self, candidate):
        self._emit(self.on_candidate, candidate)


class FakeSignaling:
    """Signaling client stand-in; tests push server frames with ``deliver``."""

    signaling_url = "ws://test"

    def __init__(self, unreachable: bool = False):
        self.unreachable = unreachable
        self.is_connected = False
        self.sent: List[protocol.SignalingMessage] = []
        self.on_message = None
        self.on_close = None
        self.closed = False

    async def connect(self):
        from meshcall.errors import ChannelUnavailable
        if self.unreachable:
            raise ChannelUnavailable("Cannot reach ws://test")
        self.is_connected = True

    async def join(self, room_id):
        await self.send(protocol.join(room_id))

    async def send(self, message):
        self.sent.append(message)
        return True

    async def close(self):
        self.closed = True
        self.is_connected = False

    def deliver(self, msg_type, **fields):
        self.on_message(protocol.decode(json.dumps({"type": msg_type, **fields}), from_server=True))

    def of_type(self, msg_type):
        return [m for m in self.sent if m.type == msg_type]


class LoopbackSignaling:
    """Signaling client wired straight into an in-process RelayCoordinator."""

    signaling_url = "loopback://"

    class _Channel:
        def __init__(self, owner):
            self.owner = owner

        async def send(self, frame):
            message = protocol.decode(frame, from_server=True)
            if self.owner.on_message:
                self.owner.on_message(message)

    def __init__(self, coordinator: RelayCoordinator):
        self.coordinator = coordinator
        self.channel = self._Channel(self)
        self.peer = None
        self.is_connected = False
        self.on_message = None
        self.on_close = None

    async def connect(self):
        self.is_connected = True

    async def join(self, room_id):
        self.peer = await self.coordinator.join(self.channel, room_id)

    async def send(self, message):
        if self.peer is None:
            return False
        return await self.coordinator.relay(self.peer, message)

    async def close(self):
        self.is_connected = False
        if self.peer is not None:
            await self.coordinator.leave(self.peer)
            self.peer = None


async def settle(*sessions, rounds: int = 10):
    """Wait until every session has processed everything queued so far."""
    for _ in range(rounds):
        for session in sessions:
            if session._left:
                continue
            done = asyncio.Event()

            async def mark(event=done):
                event.set()

            session._post(mark)
            await asyncio.wait_for(done.wait(), timeout=2.0)


@pytest.fixture
def coordinator():
    return RelayCoordinator()


@pytest.fixture
def sdp_offer():
    return {"type": "offer", "sdp": "v=0 remote offer"}


@pytest.fixture
def sdp_answer():
    return {"type": "answer", "sdp": "v=0 remote answer"}


@pytest.fixture
def candidate():
    def make(n: int = 1):
        return {
            "candidate": f"candidate:{n} 1 udp 2122260223 192.168.1.{n} 5000{n} typ host",
            "sdpMid": "0",
            "sdpMLineIndex": 0,
        }
    return make


@pytest.fixture
def make_channel():
    return FakeChannel


@pytest.fixture
def make_transport():
    return FakeTransport


@pytest.fixture
def make_signaling():
    return FakeSignaling


@pytest.fixture
def settled():
    return settle


@pytest_asyncio.fixture
async def make_session():
    """Build a MeshSession on fakes; the session gets ``transports``,
    ``source`` and ``sink`` attributes for inspection."""
    from meshcall.mesh.negotiator import MeshSession
    from meshcall.utils.config import MeshConfig

    sessions = []

    def make(signaling=None, room_id="abcd1", deny=False, restartable=True, gate=None, **config):
        transports = []

        def factory():
            transport = FakeTransport(restartable=restartable, gate=gate)
            transports.append(transport)
            return transport

        source = FakeMediaSource(deny=deny)
        sink = FakeSink()
        session = MeshSession(
            room_id=room_id,
            media_source=source,
            signaling=signaling if signaling is not None else FakeSignaling(),
            media_sink=sink,
            transport_factory=factory,
            config=MeshConfig(**config),
        )
        session.transports = transports
        session.source = source
        session.sink = sink
        sessions.append(session)
        return session

    yield make

    for session in sessions:
        await session.leave()


@pytest.fixture
def loopback(coordinator):
    def make():
        return LoopbackSignaling(coordinator)
    return make


def pytest_configure(config):
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests that open real sockets"
    )
