"""Media capability boundary used by the negotiation state machine.

The state machine only ever calls:
    - LocalMedia.acquire() / .tracks / .set_track_enabled() / .release()
    - RemoteMedia.attach() / .detach()

Capture and rendering live behind these calls. The aiortc based implementations
below read from a device or a file and discard or record the remote stream.
"""
import asyncio
from typing import Dict, List, Optional

from aiortc import MediaStreamTrack
from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder
from av import AudioFrame, VideoFrame
from av.error import FFmpegError

from errors import MediaAccessDenied
from logging_config import get_logger

logger = get_logger(__name__)

TRACK_KINDS = ("audio", "video")


class ToggleableTrack(MediaStreamTrack):
    """Wraps a source track; while disabled it emits silence / blank frames.

    Timing is kept from the source so the remote side sees a continuous stream
    and no renegotiation is needed.
    """

    def __init__(self, source: MediaStreamTrack):
        super().__init__()
        self.kind = source.kind
        self.source = source
        self.enabled = True

    async def recv(self):
        frame = await self.source.recv()
        if self.enabled:
            return frame
        if self.kind == "audio":
            blank = AudioFrame(format=frame.format.name, layout=frame.layout.name, samples=frame.samples)
            blank.sample_rate = frame.sample_rate
        else:
            blank = VideoFrame(width=frame.width, height=frame.height, format=frame.format.name)
        for plane in blank.planes:
            plane.update(bytes(plane.buffer_size))
        blank.pts = frame.pts
        blank.time_base = frame.time_base
        return blank

    def stop(self):
        super().stop()
        self.source.stop()


class LocalMedia:
    """Local capture. Subclasses implement _open() and return raw source tracks."""

    def __init__(self):
        self._tracks: Dict[str, MediaStreamTrack] = {}

    async def _open(self) -> List[MediaStreamTrack]:
        raise NotImplementedError

    async def acquire(self) -> List[MediaStreamTrack]:
        if self._tracks:
            return self.tracks
        try:
            sources = await self._open()
        except MediaAccessDenied:
            raise
        except (OSError, ValueError, FFmpegError) as e:
            logger.error(f"Error accessing media devices: {e}")
            raise MediaAccessDenied(f"Camera/Mic access denied: {e}") from e
        if not sources:
            raise MediaAccessDenied("No audio or video device available")
        for source in sources:
            self._tracks[source.kind] = ToggleableTrack(source)
            logger.info(f"Local {source.kind} track acquired")
        return self.tracks

    @property
    def tracks(self) -> List[MediaStreamTrack]:
        return list(self._tracks.values())

    @property
    def acquired(self) -> bool:
        return bool(self._tracks)

    def set_track_enabled(self, kind: str, enabled: bool) -> bool:
        """Returns False when there is no local track of that kind."""
        if kind not in TRACK_KINDS:
            raise ValueError(f"Unknown track kind: {kind}")
        track = self._tracks.get(kind)
        if track is None:
            return False
        track.enabled = enabled
        logger.info(f"Local {kind} track {'enabled' if enabled else 'disabled'}")
        return True

    def release(self):
        for kind, track in self._tracks.items():
            track.stop()
            logger.debug(f"Stopped local {kind} track")
        self._tracks.clear()


class PlayerMedia(LocalMedia):
    """Capture through aiortc's MediaPlayer: a device (with format) or a media file."""

    def __init__(self, source: str, format: Optional[str] = None, options: Optional[dict] = None,
                 audio: bool = True, video: bool = True):
        super().__init__()
        self.source = source
        self.format = format
        self.options = options or {}
        self.audio = audio
        self.video = video
        self._player: Optional[MediaPlayer] = None

    async def _open(self) -> List[MediaStreamTrack]:
        # MediaPlayer opens the container synchronously
        loop = asyncio.get_running_loop()
        self._player = await loop.run_in_executor(
            None, lambda: MediaPlayer(self.source, format=self.format, options=self.options)
        )
        sources = []
        if self.audio and self._player.audio is not None:
            sources.append(self._player.audio)
        if self.video and self._player.video is not None:
            sources.append(self._player.video)
        return sources

    def release(self):
        super().release()
        self._player = None


class RemoteMedia:
    """Sink for the remote peer's tracks. Discards them unless record_to is set."""

    def __init__(self, record_to: Optional[str] = None):
        self.record_to = record_to
        self._sink = None
        self.tracks: List[MediaStreamTrack] = []

    def _new_sink(self):
        if self.record_to:
            return MediaRecorder(self.record_to)
        return MediaBlackhole()

    async def attach(self, track: MediaStreamTrack):
        if self._sink is None:
            self._sink = self._new_sink()
        self._sink.addTrack(track)
        self.tracks.append(track)
        await self._sink.start()
        logger.info(f"Remote {track.kind} track attached")

    async def detach(self):
        if self._sink is not None:
            await self._sink.stop()
            logger.info("Remote stream detached")
        self._sink = None
        self.tracks = []

    @property
    def attached(self) -> bool:
        return bool(self.tracks)
