"""
Screen capture and playback sinks built on aiortc's FFmpeg helpers.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Any, Dict, Optional

from aiortc.contrib.media import MediaBlackhole, MediaPlayer, MediaRecorder

from ..errors import MediaAcquisitionFailed
from .media import MediaSink, MediaSource, MediaStream

LOG = logging.getLogger(__name__)


def default_capture_target() -> tuple[str, str]:
    """Return the ``(device, format)`` pair FFmpeg uses to grab the desktop."""

    if sys.platform == "darwin":
        return "1:none", "avfoundation"
    if sys.platform.startswith("win"):
        return "desktop", "gdigrab"
    return os.environ.get("DISPLAY", ":0"), "x11grab"


class ScreenCaptureSource(MediaSource):
    """
    Desktop capture through :class:`aiortc.contrib.media.MediaPlayer`.

    The stream ends when FFmpeg stops producing frames (the grab device goes
    away) or when the session releases it.
    """

    def __init__(
        self,
        *,
        device: Optional[str] = None,
        format: Optional[str] = None,
        framerate: int = 15,
        video_size: Optional[str] = None,
    ) -> None:
        default_device, default_format = default_capture_target()
        self.device = device or default_device
        self.format = format or default_format
        self.framerate = max(1, int(framerate))
        self.video_size = video_size

    def _options(self) -> Dict[str, str]:
        options = {"framerate": str(self.framerate)}
        if self.video_size:
            options["video_size"] = self.video_size
        return options

    async def acquire(self) -> MediaStream:
        LOG.info("Opening %s capture on %s", self.format, self.device)
        try:
            player = MediaPlayer(self.device, format=self.format, options=self._options())
        except Exception as exc:
            raise MediaAcquisitionFailed(
                f"could not open {self.format} capture on {self.device!r}: {exc}"
            ) from exc
        if player.video is None:
            raise MediaAcquisitionFailed(f"{self.device!r} exposes no video track")

        stream = MediaStream([player.video])
        player.video.on("ended", stream.mark_ended)
        return stream


class RecorderSink(MediaSink):
    """
    Consume received tracks.  With a path they are written to a file via
    :class:`MediaRecorder`; without one they are drained and discarded.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path
        self._recorder: Any = self._make_recorder()
        self._started = False

    def _make_recorder(self) -> Any:
        return MediaRecorder(self.path) if self.path else MediaBlackhole()

    async def attach(self, track: Any) -> None:
        self._recorder.addTrack(track)
        if not self._started:
            self._started = True
            await self._recorder.start()
            LOG.info("Receiving %s into %s", getattr(track, "kind", "media"), self.path or "blackhole")

    async def stop(self) -> None:
        if self._started:
            self._started = False
            await self._recorder.stop()
            # A stopped recorder cannot be restarted.
            self._recorder = self._make_recorder()


__all__ = ["RecorderSink", "ScreenCaptureSource", "default_capture_target"]
