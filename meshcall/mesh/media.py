"""Local media sources and remote media sinks."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from aiortc.contrib.media import MediaBlackhole, MediaPlayer
from aiortc.mediastreams import AudioStreamTrack, VideoStreamTrack

from meshcall.errors import MediaAccessDenied
from meshcall.utils.logger import get_logger

logger = get_logger(__name__)


class LocalMediaSource(ABC):
    """Camera/microphone (or stand-in) whose tracks are sent to every peer."""

    def __init__(self):
        self.tracks: List[Any] = []

    @abstractmethod
    async def acquire(self) -> List[Any]:
        """Open the source.

        Returns:
            Local media tracks

        Raises:
            MediaAccessDenied: Capture is unavailable
        """

    def stop(self) -> None:
        for track in self.tracks:
            track.stop()
        if self.tracks:
            logger.info(f"Stopped {len(self.tracks)} local track(s)")
        self.tracks = []


class PlayerMediaSource(LocalMediaSource):
    """Source backed by aiortc's MediaPlayer (capture device, file or URL)."""

    def __init__(self, source: str, format: Optional[str] = None, options: Optional[dict] = None):
        """Initialize the source.

        Args:
            source: Device, file path or URL understood by FFmpeg
            format: FFmpeg input format (e.g. v4l2, avfoundation, dshow)
            options: FFmpeg input options (e.g. {"video_size": "640x480"})
        """
        super().__init__()
        self.source = source
        self.format = format
        self.options = options or {}
        self.player: Optional[MediaPlayer] = None

    async def acquire(self) -> List[Any]:
        try:
            self.player = MediaPlayer(self.source, format=self.format, options=self.options)
        except Exception as e:
            raise MediaAccessDenied(f"Cannot open media source {self.source!r}: {e}") from e

        self.tracks = [t for t in (self.player.audio, self.player.video) if t is not None]
        if not self.tracks:
            raise MediaAccessDenied(f"Media source {self.source!r} has no audio or video")

        logger.info(f"Acquired local media from {self.source}: {[t.kind for t in self.tracks]}")
        return self.tracks


class SyntheticMediaSource(LocalMediaSource):
    """Silence and a blank picture, for hosts without capture devices."""

    async def acquire(self) -> List[Any]:
        self.tracks = [AudioStreamTrack(), VideoStreamTrack()]
        logger.info("Using synthetic local media")
        return self.tracks


class RemoteMediaSink(ABC):
    """Destination for media received from remote peers."""

    @abstractmethod
    async def attach(self, peer_id: str, track: Any) -> None:
        pass

    @abstractmethod
    async def detach(self, peer_id: str) -> None:
        pass


class BlackholeSink(RemoteMediaSink):
    """Consumes and discards remote media so the connections keep flowing."""

    def __init__(self):
        self._sinks: Dict[str, List[MediaBlackhole]] = {}

    async def attach(self, peer_id: str, track: Any) -> None:
        blackhole = MediaBlackhole()
        blackhole.addTrack(track)
        await blackhole.start()
        self._sinks.setdefault(peer_id, []).append(blackhole)

    async def detach(self, peer_id: str) -> None:
        for blackhole in self._sinks.pop(peer_id, []):
            await blackhole.stop()

    def peers(self) -> List[str]:
        return list(self._sinks)
