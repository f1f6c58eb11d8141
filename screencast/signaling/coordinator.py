"""
Signaling coordinator.

Drives one host or viewer session from ``idle`` to ``connected`` using nothing
but reads and writes against a shared :class:`SignalStore`.  Offers and
answers live in single slots, candidates in per-direction mailboxes, and the
remote side is discovered by polling.  Poll cycles and engine callbacks all
run on the event loop under one lock, so they never interleave.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional, Set

from ..errors import (
    InvalidTransition,
    NegotiationFailed,
    RoomNotFound,
    SessionBusy,
    SessionError,
    StoreUnavailable,
)
from ..rtc.engine import (
    ConnectionState,
    EngineCallbacks,
    EngineFactory,
    PeerConnectionEngine,
    SignalingState,
)
from ..rtc.media import MediaStream
from .candidates import CandidateBuffer, ClockCallable
from .messages import (
    IceCandidate,
    Role,
    RoomPaths,
    SessionDescription,
    SignalKind,
    iter_mailbox,
)
from .room_code import DEFAULT_LENGTH, generate_room_code, normalise_room_code
from .store import SignalStore

LOG = logging.getLogger(__name__)


class SessionState(str, Enum):
    IDLE = "idle"
    OFFERING = "offering"
    AWAITING_OFFER = "awaiting_offer"
    NEGOTIATING = "negotiating"
    CONNECTED = "connected"
    FAILED = "failed"
    CLOSED = "closed"


_TERMINAL = frozenset({SessionState.FAILED, SessionState.CLOSED})

ALLOWED_TRANSITIONS: Dict[SessionState, FrozenSet[SessionState]] = {
    SessionState.IDLE: frozenset(
        {SessionState.OFFERING, SessionState.AWAITING_OFFER} | _TERMINAL
    ),
    SessionState.OFFERING: frozenset({SessionState.NEGOTIATING} | _TERMINAL),
    SessionState.AWAITING_OFFER: frozenset({SessionState.NEGOTIATING} | _TERMINAL),
    SessionState.NEGOTIATING: frozenset({SessionState.CONNECTED} | _TERMINAL),
    SessionState.CONNECTED: _TERMINAL,
    SessionState.FAILED: frozenset({SessionState.CLOSED}),
    SessionState.CLOSED: frozenset(),
}


@dataclass
class Session:
    role: Role
    code: str
    state: SessionState = SessionState.IDLE
    created_at: float = field(default_factory=time.time)
    media_attached: bool = False
    error: Optional[SessionError] = None

    def to_dict(self) -> dict:
        return {
            "role": self.role.value,
            "code": self.code,
            "state": self.state.value,
            "createdAt": self.created_at,
            "mediaAttached": bool(self.media_attached),
            "error": str(self.error) if self.error is not None else None,
        }


@dataclass(frozen=True)
class StateChange:
    """Notification delivered to state observers."""

    previous: Optional[SessionState]
    current: SessionState
    role: Optional[Role] = None
    code: Optional[str] = None
    error: Optional[SessionError] = None

    def to_dict(self) -> dict:
        return {
            "previous": self.previous.value if self.previous is not None else None,
            "state": self.current.value,
            "role": self.role.value if self.role is not None else None,
            "code": self.code,
            "error": str(self.error) if self.error is not None else None,
            "errorType": type(self.error).__name__ if self.error is not None else None,
        }


StateObserver = Callable[[StateChange], None]
TerminalHook = Callable[[SessionError], None]
TrackHook = Callable[[Any], Awaitable[None]]


class SignalingCoordinator:
    """
    State machine for one signaling attempt.

    A coordinator is single use: once :meth:`close` has run it stays
    ``closed``.  Failures raised while starting are returned to the caller;
    failures reported later by the engine move the session to ``failed`` and
    invoke ``on_terminal`` so the owner can tear the session down.
    """

    def __init__(
        self,
        store: SignalStore,
        engine_factory: EngineFactory,
        *,
        poll_interval: float = 2.0,
        code_length: int = DEFAULT_LENGTH,
        code_factory: Optional[Callable[[], str]] = None,
        candidate_clock: Optional[ClockCallable] = None,
        cleanup_on_stop: bool = True,
        on_terminal: Optional[TerminalHook] = None,
        on_remote_track: Optional[TrackHook] = None,
    ) -> None:
        self.store = store
        self.engine_factory = engine_factory
        self.poll_interval = max(0.0, float(poll_interval))
        self.cleanup_on_stop = bool(cleanup_on_stop)
        self._code_factory = code_factory or (lambda: generate_room_code(code_length))
        self._candidate_clock = candidate_clock
        self._on_terminal = on_terminal
        self._on_remote_track = on_remote_track

        self._state = SessionState.IDLE
        self._lock = asyncio.Lock()
        self._closing = False
        self.session: Optional[Session] = None
        self.paths: Optional[RoomPaths] = None
        self.engine: Optional[PeerConnectionEngine] = None
        self.candidates: Optional[CandidateBuffer] = None
        self._unpublished: Optional[SessionDescription] = None
        self._ingested: Set[str] = set()
        self._poll_task: Optional[asyncio.Task] = None
        self._callback_tasks: Set[asyncio.Task] = set()

        self._observer_counter = 0
        self._observers: Dict[int, StateObserver] = {}

        self.poll_count = 0
        self.logger = LOG

    # ------------------------------------------------------------------ helpers

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def role(self) -> Optional[Role]:
        return self.session.role if self.session is not None else None

    @property
    def code(self) -> Optional[str]:
        return self.session.code if self.session is not None else None

    @property
    def ingested(self) -> FrozenSet[str]:
        return frozenset(self._ingested)

    def _change(self, previous: Optional[SessionState], error: Optional[SessionError] = None) -> StateChange:
        return StateChange(
            previous=previous,
            current=self._state,
            role=self.role,
            code=self.code,
            error=error,
        )

    def _notify(self, change: StateChange) -> None:
        for token, callback in list(self._observers.items()):
            try:
                callback(change)
            except Exception:  # pragma: no cover
                self.logger.exception("State observer %s failed.", token)

    def _transition_locked(self, target: SessionState, error: Optional[SessionError] = None) -> None:
        previous = self._state
        if target not in ALLOWED_TRANSITIONS[previous]:
            raise InvalidTransition(f"cannot move from {previous.value} to {target.value}")
        self._state = target
        if self.session is not None:
            self.session.state = target
            if error is not None:
                self.session.error = error
        if error is not None:
            self.logger.warning("%s -> %s: %s", previous.value, target.value, error)
        else:
            self.logger.info("%s -> %s", previous.value, target.value)
        self._notify(self._change(previous, error))

    def _require_idle(self) -> None:
        if self._closing or self._state is not SessionState.IDLE:
            raise SessionBusy(f"coordinator is {self._state.value}")

    def _open_session(self, role: Role, code: str) -> RoomPaths:
        self.session = Session(role=role, code=code)
        self.paths = RoomPaths(code)
        self.logger = LOG.getChild(code)
        self.candidates = CandidateBuffer(
            self.store,
            self.paths.outbound_mailbox(role),
            retry_interval=self.poll_interval,
            clock=self._candidate_clock,
        )
        self.candidates.start()
        return self.paths

    def _create_engine(self) -> PeerConnectionEngine:
        engine = self.engine_factory()
        engine.bind(
            EngineCallbacks(
                on_candidate=self._handle_local_candidate,
                on_connection_state=self._handle_connection_state,
                on_track=self._handle_track,
            )
        )
        self.engine = engine
        return engine

    def _fail_locked(self, error: SessionError) -> None:
        if self._state in (SessionState.FAILED, SessionState.CLOSED):
            return
        self._transition_locked(SessionState.FAILED, error)
        if self._on_terminal is not None:
            try:
                self._on_terminal(error)
            except Exception:  # pragma: no cover
                self.logger.exception("Terminal hook failed.")

    def _abort_start_locked(self, error: SessionError) -> None:
        # Start errors go back to the caller, not through the terminal hook.
        if self._state not in (SessionState.FAILED, SessionState.CLOSED):
            self._transition_locked(SessionState.FAILED, error)

    def _enter_negotiating_locked(self) -> None:
        self._transition_locked(SessionState.NEGOTIATING)
        if self.role is Role.VIEWER and self.session is not None and self.session.media_attached:
            self._transition_locked(SessionState.CONNECTED)

    async def _publish_description_locked(self) -> bool:
        description = self._unpublished
        if description is None or self.paths is None:
            return True
        slot = self.paths.description_slot(description.kind)
        try:
            await self.store.put(slot, description.to_dict())
        except StoreUnavailable as exc:
            self.logger.warning("Publishing %s failed (%s); retrying next poll", description.type, exc)
            return False
        self._unpublished = None
        self.logger.debug("Published %s to %s", description.type, slot)
        return True

    # ------------------------------------------------------------------ public API

    def subscribe(self, callback: StateObserver) -> int:
        if not callable(callback):
            raise TypeError("callback must be callable")
        self._observer_counter += 1
        token = self._observer_counter
        self._observers[token] = callback
        try:
            callback(self._change(None))
        except Exception:  # pragma: no cover
            self.logger.exception("State observer %s failed during initial snapshot.", token)
        return token

    def unsubscribe(self, token: int) -> None:
        self._observers.pop(token, None)

    async def start_host(self, stream: Optional[MediaStream] = None) -> str:
        """
        Open a room as host: allocate a code, create and publish the offer.

        Returns the room code the viewer has to type.
        """

        async with self._lock:
            self._require_idle()
            code = self._code_factory()
            self._open_session(Role.HOST, code)
            self._transition_locked(SessionState.OFFERING)
            engine = self._create_engine()
            if stream is not None:
                for track in stream.tracks:
                    engine.add_track(track)
            try:
                offer = await engine.create_offer()
            except Exception as exc:
                error = NegotiationFailed(f"could not create offer: {exc}")
                self._abort_start_locked(error)
                raise error from exc
            self._unpublished = offer
            await self._publish_description_locked()
        return code

    async def join_viewer(self, code: str) -> None:
        """
        Join a room as viewer.

        The offer slot is read exactly once; an empty slot raises
        :class:`RoomNotFound` before any peer connection is created.
        """

        room_code = normalise_room_code(code)
        async with self._lock:
            self._require_idle()
            paths = self._open_session(Role.VIEWER, room_code)
            self._transition_locked(SessionState.AWAITING_OFFER)

            try:
                raw_offer = await self.store.get(paths.offer)
            except StoreUnavailable as exc:
                error = RoomNotFound(room_code, f"room {room_code!r} could not be read: {exc}")
                self._abort_start_locked(error)
                raise error from exc
            if raw_offer is None:
                error = RoomNotFound(room_code)
                self._abort_start_locked(error)
                raise error

            try:
                offer = SessionDescription.from_dict(raw_offer, expected=SignalKind.OFFER)
            except ValueError as exc:
                error = NegotiationFailed(f"room {room_code!r} holds an invalid offer: {exc}")
                self._abort_start_locked(error)
                raise error from exc

            engine = self._create_engine()
            try:
                await engine.set_remote_description(offer)
                answer = await engine.create_answer()
            except Exception as exc:
                error = NegotiationFailed(f"could not answer offer: {exc}")
                self._abort_start_locked(error)
                raise error from exc

            self._unpublished = answer
            await self._publish_description_locked()
            self._enter_negotiating_locked()

    async def fail(self, error: SessionError) -> None:
        async with self._lock:
            self._fail_locked(error)

    async def poll_once(self) -> None:
        """Run one poll cycle against the shared store."""

        async with self._lock:
            if self.session is None or self.engine is None or self._closing:
                return
            if self._state not in (
                SessionState.OFFERING,
                SessionState.NEGOTIATING,
                SessionState.CONNECTED,
            ):
                return
            self.poll_count += 1
            await self._publish_description_locked()
            if self.session.role is Role.HOST and self._state is SessionState.OFFERING:
                await self._poll_answer_locked()
            if self._state in (SessionState.NEGOTIATING, SessionState.CONNECTED):
                await self._ingest_candidates_locked()

    def start_polling(self) -> None:
        if self._poll_task is not None or self._closing:
            return
        self._poll_task = asyncio.get_running_loop().create_task(self._poll_loop())

    async def close(self) -> None:
        """
        Tear the session down.  The poll task is cancelled before the engine is
        closed so no poll runs against a closed peer connection.
        """

        if self._closing:
            return
        self._closing = True

        poll_task, self._poll_task = self._poll_task, None
        if poll_task is not None:
            poll_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await poll_task

        pending = [task for task in self._callback_tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if self.candidates is not None:
            await self.candidates.close()

        async with self._lock:
            engine, self.engine = self.engine, None
            if engine is not None:
                try:
                    await engine.close()
                except Exception:
                    self.logger.exception("Failed to close peer connection.")
            if (
                self.cleanup_on_stop
                and self.role is Role.HOST
                and self.paths is not None
            ):
                try:
                    await self.store.delete(self.paths.root)
                except StoreUnavailable as exc:
                    self.logger.warning("Could not remove room %s: %s", self.paths.root, exc)
            if self._state is not SessionState.CLOSED:
                self._transition_locked(SessionState.CLOSED)

    # ------------------------------------------------------------------ polling

    async def _poll_loop(self) -> None:
        while True:
            await asyncio.sleep(self.poll_interval)
            try:
                await self.poll_once()
            except asyncio.CancelledError:
                raise
            except Exception:  # pragma: no cover
                self.logger.exception("Poll cycle failed.")

    async def _poll_answer_locked(self) -> None:
        if self.paths is None or self.engine is None:
            return
        try:
            raw_answer = await self.store.get(self.paths.answer)
        except StoreUnavailable as exc:
            self.logger.warning("Reading answer failed (%s); retrying next poll", exc)
            return
        if raw_answer is None:
            return
        if self.engine.signaling_state != SignalingState.HAVE_LOCAL_OFFER:
            self.logger.debug(
                "Answer present but engine is %s; not applying",
                getattr(self.engine.signaling_state, "value", self.engine.signaling_state),
            )
            return
        try:
            answer = SessionDescription.from_dict(raw_answer, expected=SignalKind.ANSWER)
        except ValueError as exc:
            self.logger.warning("Ignoring malformed answer: %s", exc)
            return
        try:
            await self.engine.set_remote_description(answer)
        except Exception as exc:
            self._fail_locked(NegotiationFailed(f"could not apply answer: {exc}"))
            return
        self._enter_negotiating_locked()

    async def _ingest_candidates_locked(self) -> None:
        if self.paths is None or self.session is None:
            return
        mailbox = self.paths.inbound_mailbox(self.session.role)
        try:
            entries = await self.store.get(mailbox)
        except StoreUnavailable as exc:
            self.logger.warning("Reading %s failed (%s); retrying next poll", mailbox, exc)
            return
        for key, value in iter_mailbox(entries):
            identity = f"{mailbox}/{key}"
            if identity in self._ingested:
                continue
            self._ingested.add(identity)
            try:
                candidate = IceCandidate.from_dict(value)
            except ValueError as exc:
                self.logger.debug("Skipping malformed candidate %s: %s", identity, exc)
                continue
            engine = self.engine
            if engine is None:
                return
            try:
                await engine.add_remote_candidate(candidate)
            except Exception:
                self.logger.debug("Engine rejected candidate %s", identity, exc_info=True)

    # ------------------------------------------------------------------ engine events

    def _spawn(self, handler: Callable[..., Awaitable[None]], *args: Any) -> None:
        if self._closing:
            return
        task = asyncio.get_running_loop().create_task(handler(*args))
        self._callback_tasks.add(task)
        task.add_done_callback(self._callback_tasks.discard)

    def _handle_local_candidate(self, candidate: Optional[IceCandidate]) -> None:
        if self.candidates is not None and not self._closing:
            self.candidates.push(candidate)

    def _handle_connection_state(self, state: ConnectionState) -> None:
        self._spawn(self._on_connection_state, ConnectionState(state))

    def _handle_track(self, track: Any) -> None:
        self._spawn(self._on_track, track)

    async def _on_connection_state(self, state: ConnectionState) -> None:
        async with self._lock:
            if self.session is None:
                return
            self.logger.debug("Peer connection is %s", state.value)
            if state is ConnectionState.CONNECTED:
                if self.session.role is Role.HOST and self._state is SessionState.NEGOTIATING:
                    self._transition_locked(SessionState.CONNECTED)
            elif state is ConnectionState.FAILED:
                self._fail_locked(NegotiationFailed("peer connection failed"))

    async def _on_track(self, track: Any) -> None:
        async with self._lock:
            if self.session is None or self._state in (SessionState.FAILED, SessionState.CLOSED):
                return
            self.session.media_attached = True
            if self._on_remote_track is not None:
                try:
                    await self._on_remote_track(track)
                except Exception:
                    self.logger.exception("Remote track hook failed.")
            if self.session.role is Role.VIEWER and self._state is SessionState.NEGOTIATING:
                self._transition_locked(SessionState.CONNECTED)


__all__ = [
    "ALLOWED_TRANSITIONS",
    "Session",
    "SessionState",
    "SignalingCoordinator",
    "StateChange",
]
