"""
In-process peer-connection engine and media for demos and tests.

Two :class:`LoopbackPeerEngine` instances created from the same
:class:`LoopbackNetwork` "connect" once each side holds both descriptions and
at least one candidate gathered by the other side.  Nothing is sent on the
wire; the point is to exercise the signaling exchange end to end.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..errors import MediaAcquisitionFailed
from ..signaling.messages import IceCandidate, SessionDescription
from .engine import ConnectionState, PeerConnectionEngine, SignalingState
from .media import MediaSink, MediaSource, MediaStream

LOG = logging.getLogger(__name__)

_ORIGIN_PREFIX = "o=loopback "
_TRACKS_PREFIX = "a=x-loopback-tracks:"


class LoopbackError(RuntimeError):
    """Raised when an engine call is not valid in the current signaling state."""


class LoopbackNetwork:
    """Registry that lets loopback engines find each other by id."""

    def __init__(self, *, candidates_per_peer: int = 2) -> None:
        self.candidates_per_peer = max(0, int(candidates_per_peer))
        self._engines: Dict[str, "LoopbackPeerEngine"] = {}
        self._ids = itertools.count(1)
        self.created: List["LoopbackPeerEngine"] = []

    def create_engine(self) -> "LoopbackPeerEngine":
        engine = LoopbackPeerEngine(self, f"peer{next(self._ids)}")
        self._engines[engine.engine_id] = engine
        self.created.append(engine)
        return engine

    def get(self, engine_id: Optional[str]) -> Optional["LoopbackPeerEngine"]:
        if engine_id is None:
            return None
        return self._engines.get(engine_id)

    def check_link(self, engine: "LoopbackPeerEngine") -> None:
        peer = self.get(engine.remote_peer_id)
        if peer is None or engine.linked or peer.linked:
            return
        if peer.remote_peer_id != engine.engine_id:
            return
        if not (engine.ready_for(peer) and peer.ready_for(engine)):
            return
        engine.linked = True
        peer.linked = True
        LOG.debug("Loopback link %s <-> %s established", engine.engine_id, peer.engine_id)
        loop = asyncio.get_running_loop()
        loop.call_soon(self._establish, engine, peer)

    def _establish(self, first: "LoopbackPeerEngine", second: "LoopbackPeerEngine") -> None:
        for engine in (first, second):
            engine.set_connection_state(ConnectionState.CONNECTING)
        for engine in (first, second):
            engine.set_connection_state(ConnectionState.CONNECTED)
        for receiver, sender in ((first, second), (second, first)):
            if receiver.closed:
                continue
            for track in sender.tracks:
                receiver.received_tracks.append(track)
                receiver._emit_track(track)


class LoopbackPeerEngine(PeerConnectionEngine):
    """Scripted engine with the observable behaviour of a browser peer connection."""

    def __init__(self, network: LoopbackNetwork, engine_id: str) -> None:
        super().__init__()
        self.network = network
        self.engine_id = engine_id
        self.tracks: List[Any] = []
        self.received_tracks: List[Any] = []
        self.applied_candidates: List[str] = []
        self.gathered: List[IceCandidate] = []
        self.remote_description_calls = 0
        self.candidate_calls = 0
        self.connection_state = ConnectionState.NEW
        self.remote_peer_id: Optional[str] = None
        self.linked = False
        self.closed = False
        self._signaling = SignalingState.STABLE
        self._local: Optional[SessionDescription] = None
        self._remote: Optional[SessionDescription] = None

    # ------------------------------------------------------------------ helpers

    def _render(self, kind: str) -> SessionDescription:
        sdp = "\r\n".join(
            [
                "v=0",
                f"{_ORIGIN_PREFIX}{self.engine_id} 0 IN IP4 127.0.0.1",
                "s=-",
                "m=video 9 UDP/TLS/RTP/SAVPF 96",
                "a=mid:0",
                f"{_TRACKS_PREFIX}{len(self.tracks)}",
                "",
            ]
        )
        return SessionDescription(type=kind, sdp=sdp)

    def _candidate(self, index: int) -> IceCandidate:
        line = (
            f"candidate:{index} 1 udp 2130706431 127.0.0.1 {50000 + index} typ host "
            f"ufrag {self.engine_id}"
        )
        return IceCandidate(candidate=line, sdp_mid="0", sdp_mline_index=0)

    def _start_gathering(self) -> None:
        asyncio.get_running_loop().call_soon(self._gather)

    def _gather(self) -> None:
        if self.closed:
            return
        for index in range(self.network.candidates_per_peer):
            candidate = self._candidate(index)
            self.gathered.append(candidate)
            self._emit_candidate(candidate)
        self._emit_candidate(None)

    def _require(self, expected: SignalingState, action: str) -> None:
        if self.closed:
            raise LoopbackError(f"cannot {action}: connection closed")
        if self._signaling is not expected:
            raise LoopbackError(f"cannot {action} in state {self._signaling.value}")

    @staticmethod
    def _origin(description: SessionDescription) -> str:
        for line in description.sdp.splitlines():
            if line.startswith(_ORIGIN_PREFIX):
                return line[len(_ORIGIN_PREFIX):].split()[0]
        raise LoopbackError("description has no loopback origin")

    @staticmethod
    def _ufrag(candidate: IceCandidate) -> Optional[str]:
        tokens = candidate.candidate.split()
        if not tokens or not tokens[0].startswith("candidate:"):
            return None
        try:
            return tokens[tokens.index("ufrag") + 1]
        except (ValueError, IndexError):
            return None

    def ready_for(self, peer: "LoopbackPeerEngine") -> bool:
        if self.closed or self._local is None or self._remote is None:
            return False
        return any(self._ufrag_of(line) == peer.engine_id for line in self.applied_candidates)

    def _ufrag_of(self, line: str) -> Optional[str]:
        return self._ufrag(IceCandidate(candidate=line))

    def set_connection_state(self, state: ConnectionState) -> None:
        if self.closed and state is not ConnectionState.CLOSED:
            return
        self.connection_state = state
        self._emit_connection_state(state)

    def fail(self) -> None:
        """Simulate ICE failure."""

        asyncio.get_running_loop().call_soon(self.set_connection_state, ConnectionState.FAILED)

    # ------------------------------------------------------------------ engine API

    @property
    def signaling_state(self) -> SignalingState:
        return self._signaling

    @property
    def has_remote_description(self) -> bool:
        return self._remote is not None

    def add_track(self, track: Any) -> None:
        self.tracks.append(track)

    async def create_offer(self) -> SessionDescription:
        self._require(SignalingState.STABLE, "create offer")
        self._local = self._render("offer")
        self._signaling = SignalingState.HAVE_LOCAL_OFFER
        self._start_gathering()
        return self._local

    async def create_answer(self) -> SessionDescription:
        self._require(SignalingState.HAVE_REMOTE_OFFER, "create answer")
        self._local = self._render("answer")
        self._signaling = SignalingState.STABLE
        self._start_gathering()
        self.network.check_link(self)
        return self._local

    async def set_remote_description(self, description: SessionDescription) -> None:
        self.remote_description_calls += 1
        if description.type == "offer":
            self._require(SignalingState.STABLE, "apply offer")
            next_state = SignalingState.HAVE_REMOTE_OFFER
        else:
            self._require(SignalingState.HAVE_LOCAL_OFFER, "apply answer")
            next_state = SignalingState.STABLE
        self.remote_peer_id = self._origin(description)
        self._remote = description
        self._signaling = next_state
        self.network.check_link(self)

    async def add_remote_candidate(self, candidate: IceCandidate) -> None:
        self.candidate_calls += 1
        if self.closed:
            return
        if self._remote is None:
            raise LoopbackError("remote description not set")
        if self._ufrag(candidate) is None:
            LOG.debug("%s ignoring malformed candidate %r", self.engine_id, candidate.candidate)
            return
        if candidate.candidate in self.applied_candidates:
            return
        self.applied_candidates.append(candidate.candidate)
        self.network.check_link(self)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._signaling = SignalingState.CLOSED
        self.set_connection_state(ConnectionState.CLOSED)


@dataclass
class LoopbackTrack:
    kind: str = "video"
    label: str = "screen"
    stopped: bool = False

    def stop(self) -> None:
        self.stopped = True


class SyntheticScreenSource(MediaSource):
    """Capture source producing one synthetic video track per stream."""

    def __init__(self, *, deny: bool = False) -> None:
        self.deny = deny
        self.streams: List[MediaStream] = []

    async def acquire(self) -> MediaStream:
        if self.deny:
            raise MediaAcquisitionFailed("screen capture permission denied")
        stream = MediaStream([LoopbackTrack()])
        self.streams.append(stream)
        return stream


@dataclass
class CollectingSink(MediaSink):
    tracks: List[Any] = field(default_factory=list)
    stopped: bool = False

    async def attach(self, track: Any) -> None:
        self.tracks.append(track)

    async def stop(self) -> None:
        self.stopped = True


__all__ = [
    "CollectingSink",
    "LoopbackError",
    "LoopbackNetwork",
    "LoopbackPeerEngine",
    "LoopbackTrack",
    "SyntheticScreenSource",
]
