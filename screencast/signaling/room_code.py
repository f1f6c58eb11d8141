"""
Short human-typeable room codes.
"""

from __future__ import annotations

import random
import string
from typing import Optional

from ..errors import InvalidRoomCode

ALPHABET = string.digits + string.ascii_uppercase
MIN_LENGTH = 5
MAX_LENGTH = 6
DEFAULT_LENGTH = MIN_LENGTH

# Characters the path-addressed store cannot carry inside a key.
_FORBIDDEN = set("/.#$[]") | set(string.whitespace)

_SYSTEM_RANDOM = random.SystemRandom()


def generate_room_code(length: int = DEFAULT_LENGTH, rng: Optional[random.Random] = None) -> str:
    """
    Return a fresh uppercase alphanumeric code.

    Codes are not checked against the store; two hosts drawing the same code
    will overwrite each other's room.
    """

    if not MIN_LENGTH <= int(length) <= MAX_LENGTH:
        raise ValueError(f"room code length must be between {MIN_LENGTH} and {MAX_LENGTH}")
    source = rng or _SYSTEM_RANDOM
    return "".join(source.choice(ALPHABET) for _ in range(int(length)))


def normalise_room_code(raw: object) -> str:
    """
    Normalise a typed code (trim, uppercase) and reject codes that cannot be
    used as a store key.
    """

    code = str(raw or "").strip().upper()
    if not code:
        raise InvalidRoomCode("room code is required")
    bad = sorted(set(code) & _FORBIDDEN)
    if bad:
        raise InvalidRoomCode(f"room code contains invalid characters: {''.join(bad)!r}")
    return code


__all__ = ["ALPHABET", "DEFAULT_LENGTH", "generate_room_code", "normalise_room_code"]
