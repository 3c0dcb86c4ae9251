"""Interactive terminal client for one room."""

import asyncio
from typing import Optional

import aioconsole

from meshcall.errors import ChannelUnavailable, MediaAccessDenied
from meshcall.mesh.media import LocalMediaSource, PlayerMediaSource, SyntheticMediaSource
from meshcall.mesh.membership import Status
from meshcall.mesh.negotiator import MeshSession
from meshcall.utils.config import Config
from meshcall.utils.logger import get_logger

logger = get_logger(__name__)


def build_media_source(config: Config, source: Optional[str] = None, format: Optional[str] = None) -> LocalMediaSource:
    """Pick the local media source from command line overrides or config."""
    source = source or config.media.source
    if not source:
        return SyntheticMediaSource()
    return PlayerMediaSource(source, format=format or config.media.format, options=config.media.options)


class RoomClient:
    """Runs a :class:`MeshSession` behind a small command prompt."""

    def __init__(self, session: MeshSession):
        self.session = session
        self.is_running = False
        session.subscribe(self._print_status)

    def _print_status(self, status: Status) -> None:
        marker = "!" if status.is_error else "*"
        print(f"\n[{marker}] {status.message}")

    async def run_interactive(self) -> None:
        """Join the room and process commands until ``quit``."""
        print("=" * 60)
        print("Room Call Client")
        print(f"Room: {self.session.room_id}")
        print(f"Signaling Server: {self.session.signaling.signaling_url}")
        print("=" * 60)
        self._print_help()

        try:
            await self.session.join()
        except (MediaAccessDenied, ChannelUnavailable) as e:
            logger.error(str(e))
            return

        self.is_running = True
        try:
            while self.is_running:
                try:
                    command = await aioconsole.ainput(f"[{self.session.room_id}]> ")
                except (KeyboardInterrupt, EOFError):
                    print("\n\nLeaving...")
                    break
                command = command.strip()
                if command:
                    await self._process_command(command)
        finally:
            await self.session.leave()

    async def _process_command(self, command: str) -> None:
        cmd = command.split()[0].lower()

        if cmd in ("quit", "exit", "q", "leave"):
            self.is_running = False

        elif cmd == "peers":
            participants = self.session.participants
            print(f"Participants: {', '.join(participants) if participants else 'None'}")

        elif cmd == "status":
            status = self.session.get_status()
            print("\nClient Status:")
            print(f"  Room: {status['room_id']}")
            print(f"  Peer ID: {status['peer_id'] or '-'}")
            print(f"  Status: {status['status']}")
            print(f"  Signaling: {'Connected' if status['signaling_connected'] else 'Disconnected'}")
            for peer_id, phase in status["peers"].items():
                print(f"  {peer_id}: {phase}")

        elif cmd == "help":
            self._print_help()

        else:
            print(f"Unknown command: {cmd}")
            print("Type 'help' for available commands")

    def _print_help(self) -> None:
        print("\nCommands:")
        print("  peers   - List participants")
        print("  status  - Show connection status")
        print("  help    - Show this help message")
        print("  quit    - Leave the room")
        print()


async def run_room(session: MeshSession) -> None:
    client = RoomClient(session)
    try:
        await client.run_interactive()
    except asyncio.CancelledError:
        await session.leave()
        raise
