"""
aiortc-backed peer-connection engine.

aiortc gathers every local candidate while ``setLocalDescription`` runs and
embeds them in the local SDP instead of trickling them.  The adapter replays
those candidates through the candidate callback, followed by the end marker, so
the signaling layer sees the same event stream a browser produces.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, FrozenSet, Iterable, Set

from aiortc import (
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.exceptions import InvalidStateError
from aiortc.sdp import candidate_from_sdp

from ..signaling.messages import IceCandidate, SessionDescription
from .engine import ConnectionState, PeerConnectionEngine, SignalingState
from .sdp import extract_candidates

LOG = logging.getLogger(__name__)

DEFAULT_ICE_SERVERS = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
)


class AiortcPeerEngine(PeerConnectionEngine):
    def __init__(self, ice_servers: Iterable[str] = DEFAULT_ICE_SERVERS) -> None:
        super().__init__()
        servers = [RTCIceServer(urls=url) for url in ice_servers]
        self._pc = RTCPeerConnection(configuration=RTCConfiguration(iceServers=servers))
        self._applied: Set[str] = set()
        self._pc.on("connectionstatechange", self._on_connection_state_change)
        self._pc.on("track", self._on_track)

    # ------------------------------------------------------------------ events

    def _on_connection_state_change(self) -> None:
        state = self._pc.connectionState
        LOG.debug("aiortc connection state: %s", state)
        try:
            self._emit_connection_state(ConnectionState(state))
        except ValueError:
            LOG.debug("Ignoring unknown connection state %r", state)

    def _on_track(self, track: Any) -> None:
        LOG.info("Received remote %s track", getattr(track, "kind", "unknown"))
        self._emit_track(track)

    def _replay_candidates(self, sdp: str) -> None:
        for candidate in extract_candidates(sdp):
            self._emit_candidate(candidate)
        self._emit_candidate(None)

    async def _install_local(self, description: RTCSessionDescription) -> SessionDescription:
        await self._pc.setLocalDescription(description)
        local = self._pc.localDescription
        asyncio.get_running_loop().call_soon(self._replay_candidates, local.sdp)
        return SessionDescription(type=local.type, sdp=local.sdp)

    # ------------------------------------------------------------------ engine API

    @property
    def signaling_state(self) -> SignalingState:
        return SignalingState(self._pc.signalingState)

    @property
    def has_remote_description(self) -> bool:
        return self._pc.remoteDescription is not None

    @property
    def applied_candidates(self) -> FrozenSet[str]:
        return frozenset(self._applied)

    def add_track(self, track: Any) -> None:
        self._pc.addTrack(track)

    async def create_offer(self) -> SessionDescription:
        return await self._install_local(await self._pc.createOffer())

    async def create_answer(self) -> SessionDescription:
        return await self._install_local(await self._pc.createAnswer())

    async def set_remote_description(self, description: SessionDescription) -> None:
        await self._pc.setRemoteDescription(
            RTCSessionDescription(sdp=description.sdp, type=description.type)
        )

    async def add_remote_candidate(self, candidate: IceCandidate) -> None:
        line = candidate.candidate
        if line in self._applied:
            return
        body = line[len("candidate:"):] if line.startswith("candidate:") else line
        if not body:
            return
        try:
            parsed = candidate_from_sdp(body)
        except (AssertionError, IndexError, ValueError):
            LOG.debug("Ignoring malformed candidate %r", line)
            return
        parsed.sdpMid = candidate.sdp_mid
        parsed.sdpMLineIndex = candidate.sdp_mline_index
        self._applied.add(line)
        try:
            await self._pc.addIceCandidate(parsed)
        except (InvalidStateError, ValueError) as exc:
            # Unaddressable, after end-of-candidates, or the connection is closed.
            LOG.debug("Ignoring candidate %r: %s", line, exc)

    async def close(self) -> None:
        await self._pc.close()


__all__ = ["AiortcPeerEngine", "DEFAULT_ICE_SERVERS"]
