"""
Session supervisor.

Owns at most one live signaling session together with the capture stream it
publishes, and guarantees that every exit path (explicit stop, engine failure,
capture revoked by the platform, failed start) releases the capture, the poll
task and the peer connection.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from .config import SessionConfig
from .errors import (
    MediaAcquisitionFailed,
    MediaSourceEnded,
    SessionBusy,
    SessionError,
    StartCancelled,
)
from .rtc.engine import EngineFactory
from .rtc.media import MediaSink, MediaSource, MediaStream
from .signaling.candidates import ClockCallable
from .signaling.coordinator import (
    Session,
    SessionState,
    SignalingCoordinator,
    StateChange,
    StateObserver,
)
from .signaling.room_code import normalise_room_code
from .signaling.store import SignalStore

LOG = logging.getLogger(__name__)


def _log_task_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        LOG.error("Session task failed", exc_info=exc)


class SessionSupervisor:
    """Expose ``start_host`` / ``join_viewer`` / ``stop`` over one coordinator at a time."""

    def __init__(
        self,
        store: SignalStore,
        engine_factory: EngineFactory,
        *,
        media_source: Optional[MediaSource] = None,
        sink: Optional[MediaSink] = None,
        config: Optional[SessionConfig] = None,
        code_factory=None,
        candidate_clock: Optional[ClockCallable] = None,
    ) -> None:
        self.store = store
        self.engine_factory = engine_factory
        self.media_source = media_source
        self.sink = sink
        self.config = config or SessionConfig()
        self._code_factory = code_factory
        self._candidate_clock = candidate_clock

        self._coordinator: Optional[SignalingCoordinator] = None
        self._stream: Optional[MediaStream] = None
        self._starting = False
        self._stopping = False
        self._stop_requested = False
        self._start_done: Optional[asyncio.Event] = None
        self._teardown_task: Optional[asyncio.Task] = None
        self._media_task: Optional[asyncio.Task] = None
        self.last_error: Optional[SessionError] = None
        self.teardowns = 0

        self._observer_counter = 0
        self._observers: Dict[int, StateObserver] = {}

    # ------------------------------------------------------------------ state

    @property
    def coordinator(self) -> Optional[SignalingCoordinator]:
        return self._coordinator

    @property
    def session(self) -> Optional[Session]:
        return self._coordinator.session if self._coordinator is not None else None

    @property
    def state(self) -> SessionState:
        if self._coordinator is None:
            return SessionState.IDLE
        return self._coordinator.state

    @property
    def stream(self) -> Optional[MediaStream]:
        return self._stream

    def describe(self) -> Dict[str, Any]:
        session = self.session
        return {
            "state": self.state.value,
            "role": session.role.value if session is not None else None,
            "code": session.code if session is not None else None,
            "mediaAttached": bool(session.media_attached) if session is not None else False,
            "error": str(self.last_error) if self.last_error is not None else None,
            "errorType": type(self.last_error).__name__ if self.last_error is not None else None,
        }

    def subscribe(self, callback: StateObserver) -> int:
        if not callable(callback):
            raise TypeError("callback must be callable")
        self._observer_counter += 1
        token = self._observer_counter
        self._observers[token] = callback
        session = self.session
        try:
            callback(
                StateChange(
                    previous=None,
                    current=self.state,
                    role=session.role if session is not None else None,
                    code=session.code if session is not None else None,
                )
            )
        except Exception:  # pragma: no cover
            LOG.exception("Session observer %s failed during initial snapshot.", token)
        return token

    def unsubscribe(self, token: int) -> None:
        self._observers.pop(token, None)

    def _notify(self, change: StateChange) -> None:
        for token, callback in list(self._observers.items()):
            try:
                callback(change)
            except Exception:  # pragma: no cover
                LOG.exception("Session observer %s failed.", token)

    def _forward(self, change: StateChange) -> None:
        if change.previous is None:
            return
        self._notify(change)

    def _require_idle(self) -> None:
        if self._starting or self._stopping or self._coordinator is not None:
            raise SessionBusy(f"a session is already {self.state.value}")

    def _new_coordinator(self) -> SignalingCoordinator:
        coordinator = SignalingCoordinator(
            self.store,
            self.engine_factory,
            poll_interval=self.config.poll_interval,
            code_length=self.config.code_length,
            code_factory=self._code_factory,
            candidate_clock=self._candidate_clock,
            cleanup_on_stop=self.config.cleanup_on_stop,
            on_terminal=self._handle_terminal,
            on_remote_track=self._attach_remote_track if self.sink is not None else None,
        )
        coordinator.subscribe(self._forward)
        self._coordinator = coordinator
        return coordinator

    # ------------------------------------------------------------------ callbacks

    async def _attach_remote_track(self, track: Any) -> None:
        if self.sink is not None:
            await self.sink.attach(track)

    def _schedule_stop(self) -> None:
        if self._teardown_task is not None and not self._teardown_task.done():
            return
        self._teardown_task = asyncio.get_running_loop().create_task(self.stop())
        self._teardown_task.add_done_callback(_log_task_failure)

    def _handle_terminal(self, error: SessionError) -> None:
        self.last_error = error
        self._schedule_stop()

    def _handle_media_ended(self, stream: MediaStream) -> None:
        if stream is not self._stream or self._stopping:
            return
        LOG.info("Screen capture ended; stopping session")
        coordinator = self._coordinator
        if coordinator is None:
            self._schedule_stop()
            return
        self._media_task = asyncio.get_running_loop().create_task(
            coordinator.fail(MediaSourceEnded("screen capture ended"))
        )
        self._media_task.add_done_callback(_log_task_failure)

    # ------------------------------------------------------------------ public API

    def _begin_start(self) -> None:
        self._starting = True
        self._stop_requested = False
        self._start_done = asyncio.Event()
        self.last_error = None

    def _end_start(self) -> None:
        self._starting = False
        if self._start_done is not None:
            self._start_done.set()

    async def _honour_pending_stop(self) -> None:
        if not self._stop_requested:
            return
        LOG.info("Stop requested while starting; tearing down")
        self._starting = False
        await self.stop()
        raise StartCancelled("session was stopped while starting") from self.last_error

    async def start_host(self) -> str:
        """Acquire the capture, open a room and return its code."""

        self._require_idle()
        if self.media_source is None:
            raise MediaAcquisitionFailed("no capture source configured")
        self._begin_start()
        try:
            try:
                stream = await self.media_source.acquire()
            except MediaAcquisitionFailed as exc:
                self.last_error = exc
                LOG.warning("Could not start hosting: %s", exc)
                raise
            self._stream = stream
            stream.on_ended(lambda: self._handle_media_ended(stream))
            await self._honour_pending_stop()
            coordinator = self._new_coordinator()
            try:
                code = await coordinator.start_host(stream)
            except Exception as exc:
                if isinstance(exc, SessionError):
                    self.last_error = exc
                self._starting = False
                await self.stop()
                raise
            await self._honour_pending_stop()
            coordinator.start_polling()
            LOG.info("Hosting room %s", code)
            return code
        finally:
            self._end_start()

    async def join_viewer(self, code: str) -> None:
        """Join the room ``code``; raises :class:`RoomNotFound` if it is empty."""

        room_code = normalise_room_code(code)
        self._require_idle()
        self._begin_start()
        try:
            coordinator = self._new_coordinator()
            try:
                await coordinator.join_viewer(room_code)
            except Exception as exc:
                if isinstance(exc, SessionError):
                    self.last_error = exc
                self._starting = False
                await self.stop()
                raise
            await self._honour_pending_stop()
            coordinator.start_polling()
            LOG.info("Joined room %s", room_code)
        finally:
            self._end_start()

    async def stop(self) -> None:
        """
        Release the capture, cancel polling, close the peer connection and
        return to ``idle``.  Calling it again, or with nothing running, does
        nothing.  A stop that arrives while a start is in flight makes that
        start tear down and raise :class:`StartCancelled`; this call returns
        once it has.
        """

        if self._starting:
            self._stop_requested = True
            LOG.info("Stop requested while a session is starting")
            if self._start_done is not None:
                await self._start_done.wait()
            return

        coordinator, stream = self._coordinator, self._stream
        if self._stopping or (coordinator is None and stream is None):
            return
        self._stopping = True
        previous = coordinator.state if coordinator is not None else SessionState.IDLE
        session = coordinator.session if coordinator is not None else None
        try:
            self._stream = None
            if stream is not None:
                stream.stop()
            if coordinator is not None:
                await coordinator.close()
                previous = coordinator.state
            if self.sink is not None:
                try:
                    await self.sink.stop()
                except Exception:
                    LOG.exception("Failed to stop media sink.")
        finally:
            self._coordinator = None
            self._stopping = False
            self.teardowns += 1
            LOG.info("Session stopped")
            self._notify(
                StateChange(
                    previous=previous,
                    current=SessionState.IDLE,
                    role=session.role if session is not None else None,
                    code=session.code if session is not None else None,
                    error=self.last_error,
                )
            )


__all__ = ["SessionSupervisor"]
