"""Room relay coordinator and its websocket front end."""

import asyncio
import secrets
from dataclasses import dataclass, field
from datetime import datetime
from http import HTTPStatus
from typing import Any, AsyncIterable, Dict, List, Optional, Set, Union

import websockets
from websockets.exceptions import ConnectionClosed

from meshcall.errors import ProtocolViolation
from meshcall.signaling import protocol
from meshcall.signaling.protocol import SignalingMessage
from meshcall.utils.config import ServerConfig
from meshcall.utils.logger import get_logger

logger = get_logger(__name__)

# 64-bit identifiers; collisions are additionally rejected per room.
PEER_ID_BYTES = 8


@dataclass
class Peer:
    """A channel's membership in one room."""
    peer_id: str
    channel: Any  # anything with ``async send(str)``
    room_id: str
    connected_at: Optional[datetime] = None

    def __post_init__(self):
        if self.connected_at is None:
            self.connected_at = datetime.now()


@dataclass
class Room:
    """Members of a room in join order, guarded by the room's lock."""
    room_id: str
    members: Dict[str, Peer] = field(default_factory=dict)
    issued_ids: Set[str] = field(default_factory=set)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    closed: bool = False

    def new_peer_id(self) -> str:
        while True:
            peer_id = secrets.token_hex(PEER_ID_BYTES).upper()
            if peer_id not in self.issued_ids:
                self.issued_ids.add(peer_id)
                return peer_id


class RelayCoordinator:
    """Authoritative room/peer registry and message router.

    All membership changes of a room happen while holding that room's lock,
    together with the notifications they cause, so every member observes
    joins and departures in the order they were applied.
    """

    def __init__(self):
        self.rooms: Dict[str, Room] = {}

    async def join(self, channel: Any, room_id: str) -> Peer:
        """Add a channel to a room, creating the room if needed.

        The joiner receives ``room-joined`` with the members already present
        (join order); those members each receive ``peer-joined``.

        Raises:
            ProtocolViolation: Room id is empty or not a string
        """
        room_id = protocol.normalize_room_id(room_id)

        while True:
            room = self.rooms.get(room_id)
            if room is None:
                room = Room(room_id=room_id)
                self.rooms[room_id] = room
                logger.info(f"Room created: {room_id}")

            async with room.lock:
                # The room may have emptied and been deleted while we waited.
                if room.closed:
                    continue

                peer = Peer(peer_id=room.new_peer_id(), channel=channel, room_id=room_id)
                existing = list(room.members)
                room.members[peer.peer_id] = peer

                await self._send(peer, protocol.room_joined(peer.peer_id, room_id, existing))
                await self._broadcast(room, protocol.peer_joined(peer.peer_id), exclude=peer.peer_id)

            logger.info(f"Peer {peer.peer_id} joined room {room_id} (total: {len(room.members)})")
            return peer

    async def relay(self, sender: Peer, message: SignalingMessage) -> bool:
        """Forward an addressed negotiation message within the sender's room.

        Returns:
            True if forwarded, False if dropped because sender or target
            is no longer in the room
        """
        room = self.rooms.get(sender.room_id)
        if room is None or sender.peer_id not in room.members:
            logger.debug(f"Dropped {message.type} from {sender.peer_id}: sender not in a room")
            return False

        target = room.members.get(message.get("to"))
        if target is None:
            logger.debug(f"Dropped {message.type} from {sender.peer_id}: {message.get('to')} not in room")
            return False

        await self._send(target, protocol.relayed(message, sender.peer_id))
        logger.debug(f"Forwarded {message.type} from {sender.peer_id} to {target.peer_id}")
        return True

    async def leave(self, peer: Peer) -> None:
        """Remove a peer; delete its room when empty, else notify the rest."""
        room = self.rooms.get(peer.room_id)
        if room is None:
            return

        async with room.lock:
            if room.members.pop(peer.peer_id, None) is None:
                return

            if not room.members:
                room.closed = True
                self.rooms.pop(room.room_id, None)
                logger.info(f"Peer {peer.peer_id} left room {room.room_id}; room deleted")
                return

            await self._broadcast(room, protocol.peer_left(peer.peer_id))

        logger.info(f"Peer {peer.peer_id} left room {room.room_id} ({len(room.members)} left)")

    async def handle_channel(self, channel: Any, frames: AsyncIterable[Union[str, bytes]]) -> None:
        """Serve one duplex channel until its frame stream ends.

        Args:
            channel: Object used to send frames back to this client
            frames: Inbound frames from this client
        """
        peer: Optional[Peer] = None

        try:
            async for raw in frames:
                try:
                    message = protocol.decode(raw)
                    if message.type == protocol.JOIN:
                        if peer is not None:
                            raise ProtocolViolation(f"Peer {peer.peer_id} already joined {peer.room_id}")
                        peer = await self.join(channel, message.get("roomId"))
                    elif peer is None:
                        raise ProtocolViolation(f"'{message.type}' before 'join'")
                    else:
                        await self.relay(peer, message)
                except ProtocolViolation as e:
                    logger.debug(f"Dropped frame: {e}")
        finally:
            if peer is not None:
                await self.leave(peer)

    def room_count(self) -> int:
        return len(self.rooms)

    def members(self, room_id: str) -> List[str]:
        room = self.rooms.get(room_id.upper())
        return list(room.members) if room else []

    def peer_count(self, room_id: str) -> int:
        return len(self.members(room_id))

    async def _send(self, peer: Peer, message: SignalingMessage) -> None:
        try:
            await peer.channel.send(message.encode())
        except Exception as e:
            # A dead channel is cleaned up by its own handler.
            logger.warning(f"Error sending {message.type} to {peer.peer_id}: {e}")

    async def _broadcast(self, room: Room, message: SignalingMessage, exclude: Optional[str] = None) -> None:
        for peer_id, peer in list(room.members.items()):
            if peer_id != exclude:
                await self._send(peer, message)


class SignalingServer:
    """Websocket relay server."""

    def __init__(self, host: str = "0.0.0.0", port: int = 3001, config: Optional[ServerConfig] = None):
        """Initialize signaling server.

        Args:
            host: Server host
            port: Server port
            config: Keepalive, frame size and health check settings
        """
        self.host = host
        self.port = port
        self.config = config or ServerConfig(host=host, port=port)
        self.coordinator = RelayCoordinator()

        logger.info(f"Signaling server initialized on {host}:{port}")

    async def listen(self):
        """Bind the listening socket and return the websockets server."""
        server = await websockets.serve(
            self.handle_client,
            self.host,
            self.port,
            ping_interval=self.config.ping_interval,
            ping_timeout=self.config.ping_timeout,
            max_size=self.config.max_message_size,
            process_request=self._process_request,
        )
        logger.info(f"Signaling server listening on ws://{self.host}:{self.port}")
        return server

    async def start(self):
        """Start the signaling server and run forever."""
        server = await self.listen()
        try:
            await server.serve_forever()
        finally:
            server.close()
            await server.wait_closed()

    async def handle_client(self, websocket: Any):
        """Handle one client connection.

        Args:
            websocket: WebSocket connection
        """
        logger.debug(f"New connection from {websocket.remote_address}")
        try:
            await self.coordinator.handle_channel(websocket, websocket)
        except ConnectionClosed as e:
            logger.info(f"Connection closed abnormally: {e}")

    def _process_request(self, connection: Any, request: Any):
        """Answer plain HTTP requests on the health path."""
        if request.path != self.config.health_path:
            return None
        if request.headers.get("Upgrade", "").lower() == "websocket":
            return None
        return connection.respond(HTTPStatus.OK, "Signaling server is running!\n")


async def main():
    """Run the signaling server."""
    import argparse

    parser = argparse.ArgumentParser(description="Room signaling server")
    parser.add_argument("--host", default="0.0.0.0", help="Server host")
    parser.add_argument("--port", type=int, default=3001, help="Server port")

    args = parser.parse_args()

    server = SignalingServer(host=args.host, port=args.port)
    await server.start()


if __name__ == "__main__":
    asyncio.run(main())
