"""Local capture and the two media flows of a call.

``MediaEndpoint.acquire`` opens the camera and microphone and hands back an
immutable :class:`TrackSet` plus a fresh :class:`RemoteSink` into which the
active session drops incoming tracks. Capture goes through aiortc's
``MediaPlayer`` (PyAV/FFmpeg underneath); tests inject their own
:class:`CaptureSource`.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass
import logging
from typing import Any, Dict, Iterable, List, Protocol

from aiortc.contrib.media import MediaPlayer
from av.error import FFmpegError

from ..core.config import Settings
from ..core.errors import DeviceUnavailable, PermissionDenied

logger = logging.getLogger(__name__)


class CaptureSource(Protocol):
    def open(self) -> List[Any]:
        """Return the captured tracks. Blocking; called from a worker thread."""
        ...


class CameraCapture:
    """Open the configured camera and optional microphone with aiortc's MediaPlayer."""

    def __init__(
        self,
        *,
        camera_device: str,
        camera_format: str | None = None,
        video_size: str = "640x480",
        framerate: int = 30,
        microphone_device: str | None = None,
        microphone_format: str | None = None,
    ) -> None:
        self.camera_device = camera_device
        self.camera_format = camera_format
        self.video_size = video_size
        self.framerate = framerate
        self.microphone_device = microphone_device
        self.microphone_format = microphone_format

    @classmethod
    def from_settings(cls, settings: Settings) -> "CameraCapture":
        return cls(
            camera_device=settings.camera_device,
            camera_format=settings.camera_format,
            video_size=settings.video_size,
            framerate=settings.framerate,
            microphone_device=settings.microphone_device,
            microphone_format=settings.microphone_format,
        )

    def open(self) -> List[Any]:
        options = {"video_size": self.video_size, "framerate": str(self.framerate)}
        camera = MediaPlayer(self.camera_device, format=self.camera_format, options=options)
        tracks = [track for track in (camera.audio, camera.video) if track is not None]

        if self.microphone_device:
            microphone = MediaPlayer(self.microphone_device, format=self.microphone_format)
            if microphone.audio is not None:
                tracks = [track for track in tracks if track.kind != "audio"]
                tracks.insert(0, microphone.audio)
        return tracks


@dataclass(frozen=True)
class TrackSet:
    """Local tracks captured for one call."""

    tracks: tuple

    @property
    def kinds(self) -> tuple[str, ...]:
        return tuple(track.kind for track in self.tracks)


class RemoteSink:
    """Incoming media for one session, keyed by track id."""

    def __init__(self) -> None:
        self._tracks: Dict[str, Any] = {}

    @property
    def tracks(self) -> tuple:
        return tuple(self._tracks.values())

    def add(self, track: Any) -> bool:
        """Add a remote track; returns False when a track with that id is already present."""

        if track.id in self._tracks:
            return False
        self._tracks[track.id] = track
        return True


def _stop_tracks(tracks: Iterable[Any]) -> int:
    stopped = 0
    for track in tracks:
        if getattr(track, "readyState", "live") == "ended":
            continue
        track.stop()
        stopped += 1
    return stopped


class MediaEndpoint:
    """Owns the local capture and the current remote sink."""

    def __init__(self, capture: CaptureSource) -> None:
        self._capture = capture
        self.local: TrackSet | None = None
        self.remote: RemoteSink | None = None

    @property
    def ready(self) -> bool:
        return self.local is not None

    async def acquire(self) -> tuple[TrackSet, RemoteSink]:
        """Open camera and microphone; a fresh remote sink is created every time."""

        self.release_all()

        loop = asyncio.get_running_loop()
        try:
            tracks = await loop.run_in_executor(None, self._capture.open)
        except PermissionError as exc:
            raise PermissionDenied("Camera or microphone access denied", {"error": str(exc)}) from exc
        except (OSError, FFmpegError) as exc:
            raise DeviceUnavailable("Capture device unavailable", {"error": str(exc)}) from exc

        if not tracks:
            raise DeviceUnavailable("Capture device produced no tracks")

        self.local = TrackSet(tracks=tuple(tracks))
        self.remote = RemoteSink()
        logger.info("Local media acquired: %s", ", ".join(self.local.kinds))
        return self.local, self.remote

    def release(self, media: TrackSet | RemoteSink | None) -> None:
        """Stop every track in ``media``. Safe to call repeatedly."""

        if media is None:
            return
        stopped = _stop_tracks(media.tracks)
        if media is self.local:
            self.local = None
        elif media is self.remote:
            self.remote = None
        if stopped:
            logger.debug("Stopped %d track(s)", stopped)

    def release_all(self) -> None:
        self.release(self.local)
        self.release(self.remote)
