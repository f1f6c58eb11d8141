"""
Store-based signaling: room codes, message payloads, the shared store and
the coordinator that drives a session through it.
"""

from __future__ import annotations

from .candidates import CandidateBuffer
from .coordinator import SessionState, SignalingCoordinator, StateChange
from .messages import IceCandidate, Role, RoomPaths, SessionDescription, SignalKind
from .room_code import generate_room_code, normalise_room_code
from .store import HttpSignalStore, InMemorySignalStore, SignalStore

__all__ = [
    "CandidateBuffer",
    "HttpSignalStore",
    "IceCandidate",
    "InMemorySignalStore",
    "Role",
    "RoomPaths",
    "SessionDescription",
    "SessionState",
    "SignalKind",
    "SignalStore",
    "SignalingCoordinator",
    "StateChange",
    "generate_room_code",
    "normalise_room_code",
]
