"""
Local media source and remote media sink interfaces.
"""

from __future__ import annotations

import abc
import logging
from typing import Any, Callable, List, Optional, Sequence

LOG = logging.getLogger(__name__)


class MediaStream:
    """
    A set of captured tracks.

    ``ended`` fires exactly once, either when the platform stops the capture
    or when :meth:`stop` releases it.
    """

    def __init__(self, tracks: Sequence[Any], *, on_stop: Optional[Callable[[], None]] = None) -> None:
        self.tracks: List[Any] = list(tracks)
        self._on_stop = on_stop
        self._ended_callbacks: List[Callable[[], None]] = []
        self._ended = False
        self._stopped = False

    @property
    def ended(self) -> bool:
        return self._ended

    @property
    def stopped(self) -> bool:
        return self._stopped

    def on_ended(self, callback: Callable[[], None]) -> None:
        if not callable(callback):
            raise TypeError("callback must be callable")
        self._ended_callbacks.append(callback)

    def mark_ended(self, *_args: Any) -> None:
        if self._ended:
            return
        self._ended = True
        for callback in list(self._ended_callbacks):
            try:
                callback()
            except Exception:  # pragma: no cover
                LOG.exception("Media ended listener failed.")

    def stop(self) -> None:
        """Release every track.  Safe to call more than once."""

        if self._stopped:
            return
        self._stopped = True
        for track in self.tracks:
            stop = getattr(track, "stop", None)
            if callable(stop):
                try:
                    stop()
                except Exception:
                    LOG.exception("Failed to stop track %r", track)
        if self._on_stop is not None:
            try:
                self._on_stop()
            except Exception:
                LOG.exception("Failed to release media source")
        self.mark_ended()


class MediaSource(abc.ABC):
    """Local capture device; the host acquires one stream per session."""

    @abc.abstractmethod
    async def acquire(self) -> MediaStream:
        """Return a live stream or raise :class:`MediaAcquisitionFailed`."""


class MediaSink(abc.ABC):
    """Consumer of the tracks a viewer receives."""

    @abc.abstractmethod
    async def attach(self, track: Any) -> None:
        ...

    @abc.abstractmethod
    async def stop(self) -> None:
        ...


__all__ = ["MediaSink", "MediaSource", "MediaStream"]
