"""
Peer-connection engines and media endpoints.

The aiortc backed engine and capture helpers live in ``aiortc_engine`` and
``capture`` and are imported on demand.
"""

from __future__ import annotations

from .engine import ConnectionState, EngineCallbacks, PeerConnectionEngine, SignalingState
from .loopback import LoopbackNetwork, LoopbackPeerEngine, SyntheticScreenSource
from .media import MediaSink, MediaSource, MediaStream

__all__ = [
    "ConnectionState",
    "EngineCallbacks",
    "LoopbackNetwork",
    "LoopbackPeerEngine",
    "MediaSink",
    "MediaSource",
    "MediaStream",
    "PeerConnectionEngine",
    "SignalingState",
    "SyntheticScreenSource",
]
