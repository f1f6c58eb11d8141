"""
Screencast package.

Peer-to-peer screen sharing between two machines: the host publishes its
screen, the viewer joins with a short room code, and the two peers exchange
session descriptions and ICE candidates through a shared key/value store that
both sides poll.  Media then flows directly between the peers.
"""

from __future__ import annotations

__all__ = [
    "SessionConfig",
    "SessionSupervisor",
    "load_config",
]

from .config import SessionConfig, load_config
from .session import SessionSupervisor
