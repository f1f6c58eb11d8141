"""
Error hierarchy shared by the signaling core and the session supervisor.
"""

from __future__ import annotations


class SessionError(RuntimeError):
    """Base class for screencast session errors."""


class MediaAcquisitionFailed(SessionError):
    """Raised when the local capture source is denied or unavailable."""


class MediaSourceEnded(SessionError):
    """Recorded when the local capture stops underneath a live session."""


class RoomNotFound(SessionError):
    """Raised when a viewer reads an empty offer slot."""

    def __init__(self, code: str, message: str | None = None) -> None:
        super().__init__(message or f"room {code!r} not found")
        self.code = code


class NegotiationFailed(SessionError):
    """Raised or recorded when the peer connection cannot be negotiated."""


class StoreUnavailable(SessionError):
    """Raised by store clients when a read or write does not complete."""


class InvalidRoomCode(SessionError, ValueError):
    """Raised when a typed room code cannot address a room."""


class InvalidTransition(SessionError):
    """Raised when a state change is not allowed from the current state."""


class SessionBusy(SessionError):
    """Raised when starting a session while another one is still live."""


class StartCancelled(SessionError):
    """Raised by a start that was interrupted by ``stop()``."""


__all__ = [
    "InvalidRoomCode",
    "InvalidTransition",
    "MediaAcquisitionFailed",
    "MediaSourceEnded",
    "NegotiationFailed",
    "RoomNotFound",
    "SessionBusy",
    "SessionError",
    "StartCancelled",
    "StoreUnavailable",
]
