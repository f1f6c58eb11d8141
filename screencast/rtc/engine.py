"""
Peer-connection engine interface.

The signaling coordinator never negotiates media itself.  It feeds an engine
remote descriptions and candidates, and reacts to the candidates, connection
states and tracks the engine reports back through :class:`EngineCallbacks`.
"""

from __future__ import annotations

import abc
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from ..signaling.messages import IceCandidate, SessionDescription

LOG = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    NEW = "new"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    FAILED = "failed"
    CLOSED = "closed"


class SignalingState(str, Enum):
    STABLE = "stable"
    HAVE_LOCAL_OFFER = "have-local-offer"
    HAVE_REMOTE_OFFER = "have-remote-offer"
    CLOSED = "closed"


@dataclass
class EngineCallbacks:
    on_candidate: Optional[Callable[[Optional[IceCandidate]], None]] = None
    on_connection_state: Optional[Callable[[ConnectionState], None]] = None
    on_track: Optional[Callable[[Any], None]] = None


class PeerConnectionEngine(abc.ABC):
    """
    Base class for engine adapters.

    Subclasses report events through the ``_emit_*`` helpers; listener errors
    are logged and never propagate back into the engine.
    """

    def __init__(self) -> None:
        self._callbacks = EngineCallbacks()

    def bind(self, callbacks: EngineCallbacks) -> None:
        self._callbacks = callbacks

    # ------------------------------------------------------------------ events

    def _emit_candidate(self, candidate: Optional[IceCandidate]) -> None:
        handler = self._callbacks.on_candidate
        if handler is None:
            return
        try:
            handler(candidate)
        except Exception:  # pragma: no cover
            LOG.exception("Candidate listener failed.")

    def _emit_connection_state(self, state: ConnectionState) -> None:
        handler = self._callbacks.on_connection_state
        if handler is None:
            return
        try:
            handler(state)
        except Exception:  # pragma: no cover
            LOG.exception("Connection state listener failed.")

    def _emit_track(self, track: Any) -> None:
        handler = self._callbacks.on_track
        if handler is None:
            return
        try:
            handler(track)
        except Exception:  # pragma: no cover
            LOG.exception("Track listener failed.")

    # --------------------------------------------------------------- interface

    @property
    @abc.abstractmethod
    def signaling_state(self) -> SignalingState:
        ...

    @property
    @abc.abstractmethod
    def has_remote_description(self) -> bool:
        ...

    @abc.abstractmethod
    def add_track(self, track: Any) -> None:
        ...

    @abc.abstractmethod
    async def create_offer(self) -> SessionDescription:
        """Create an offer and install it as the local description."""

    @abc.abstractmethod
    async def create_answer(self) -> SessionDescription:
        """Create an answer and install it as the local description."""

    @abc.abstractmethod
    async def set_remote_description(self, description: SessionDescription) -> None:
        ...

    @abc.abstractmethod
    async def add_remote_candidate(self, candidate: IceCandidate) -> None:
        """
        Apply a remote candidate.  Candidates already applied, or that cannot
        be parsed, are ignored.
        """

    @abc.abstractmethod
    async def close(self) -> None:
        ...


EngineFactory = Callable[[], PeerConnectionEngine]


__all__ = [
    "ConnectionState",
    "EngineCallbacks",
    "EngineFactory",
    "PeerConnectionEngine",
    "SignalingState",
]
