"""Signaling client: one websocket channel to the relay."""

import asyncio
from typing import Any, Callable, Optional

import websockets
from websockets.exceptions import ConnectionClosed, InvalidHandshake, InvalidURI

from meshcall.errors import ChannelUnavailable, ProtocolViolation
from meshcall.signaling import protocol
from meshcall.signaling.protocol import SignalingMessage
from meshcall.utils.logger import get_logger

logger = get_logger(__name__)


class SignalingClient:
    """Client end of the relay channel.

    Inbound frames are validated and handed to ``on_message``; malformed
    frames are dropped. ``on_close`` fires once when the channel ends for
    any reason other than :meth:`close`.
    """

    def __init__(
        self,
        signaling_url: str,
        ping_interval: Optional[float] = 20.0,
        ping_timeout: Optional[float] = 20.0,
    ):
        """Initialize signaling client.

        Args:
            signaling_url: Signaling server URL (e.g., ws://localhost:3001)
            ping_interval: Keepalive ping interval in seconds
            ping_timeout: Keepalive pong timeout in seconds
        """
        self.signaling_url = signaling_url
        self.ping_interval = ping_interval
        self.ping_timeout = ping_timeout
        self.websocket: Optional[Any] = None
        self.is_connected = False

        self.on_message: Optional[Callable[[SignalingMessage], None]] = None
        self.on_close: Optional[Callable[[], None]] = None

        self._receive_task: Optional[asyncio.Task] = None
        self._closing = False

    async def connect(self) -> None:
        """Open the channel and start receiving.

        Raises:
            ChannelUnavailable: The relay could not be reached
        """
        logger.info(f"Connecting to signaling server: {self.signaling_url}")
        try:
            self.websocket = await websockets.connect(
                self.signaling_url,
                ping_interval=self.ping_interval,
                ping_timeout=self.ping_timeout,
            )
        except (OSError, asyncio.TimeoutError, InvalidURI, InvalidHandshake) as e:
            raise ChannelUnavailable(f"Cannot reach {self.signaling_url}: {e}") from e

        self.is_connected = True
        self._receive_task = asyncio.create_task(self._receive_loop())

    async def join(self, room_id: str) -> None:
        await self.send(protocol.join(room_id))

    async def send(self, message: SignalingMessage) -> bool:
        """Send one message; returns False if the channel is not open."""
        if not self.websocket or not self.is_connected:
            logger.debug(f"Not connected, dropping {message.type}")
            return False

        try:
            await self.websocket.send(message.encode())
            return True
        except ConnectionClosed as e:
            logger.warning(f"Failed to send {message.type}: {e}")
            return False

    async def close(self) -> None:
        """Close the channel without firing ``on_close``."""
        self._closing = True
        self.is_connected = False
        if self.websocket:
            await self.websocket.close()
        if self._receive_task and self._receive_task is not asyncio.current_task():
            self._receive_task.cancel()
            try:
                await self._receive_task
            except asyncio.CancelledError:
                pass
        logger.info("Disconnected from signaling server")

    async def _receive_loop(self) -> None:
        try:
            async for raw in self.websocket:
                try:
                    message = protocol.decode(raw, from_server=True)
                except ProtocolViolation as e:
                    logger.debug(f"Dropped frame from server: {e}")
                    continue
                if self.on_message:
                    self.on_message(message)
        except ConnectionClosed as e:
            logger.warning(f"Signaling connection lost: {e}")
        finally:
            self.is_connected = False
            if not self._closing:
                logger.info("Signaling connection closed")
                if self.on_close:
                    self.on_close()
