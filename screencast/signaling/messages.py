"""
Signaling payloads and the store path scheme they are written under.

Session descriptions and candidates are opaque to the signaling layer; only
the keys needed to hand them back to a peer-connection engine are checked.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple


class SignalKind(str, Enum):
    """Tag of a signaling message."""

    OFFER = "offer"
    ANSWER = "answer"
    ICE_CANDIDATE = "candidate"


class Role(str, Enum):
    HOST = "host"
    VIEWER = "viewer"


@dataclass(frozen=True)
class SessionDescription:
    """Offer or answer blob produced by the peer-connection engine."""

    type: str
    sdp: str

    @property
    def kind(self) -> SignalKind:
        return SignalKind(self.type)

    def to_dict(self) -> dict:
        return {"type": self.type, "sdp": self.sdp}

    @classmethod
    def from_dict(cls, payload: Any, *, expected: Optional[SignalKind] = None) -> "SessionDescription":
        if not isinstance(payload, Mapping):
            raise ValueError("session description must be an object")
        kind = str(payload.get("type") or "").strip().lower()
        sdp = payload.get("sdp")
        if kind not in {SignalKind.OFFER.value, SignalKind.ANSWER.value}:
            raise ValueError(f"unsupported session description type {kind!r}")
        if expected is not None and kind != expected.value:
            raise ValueError(f"expected {expected.value}, got {kind}")
        if not isinstance(sdp, str) or not sdp:
            raise ValueError("session description has no sdp")
        return cls(type=kind, sdp=sdp)


@dataclass(frozen=True)
class IceCandidate:
    """Serialisable ICE candidate container."""

    candidate: str
    sdp_mid: Optional[str] = None
    sdp_mline_index: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "candidate": self.candidate,
            "sdpMid": self.sdp_mid,
            "sdpMLineIndex": self.sdp_mline_index,
        }

    @classmethod
    def from_dict(cls, payload: Any) -> "IceCandidate":
        if not isinstance(payload, Mapping):
            raise ValueError("candidate must be an object")
        candidate = payload.get("candidate")
        if not isinstance(candidate, str) or not candidate.strip():
            raise ValueError("candidate has no candidate line")
        sdp_mid = payload.get("sdpMid", payload.get("sdp_mid"))
        mline = payload.get("sdpMLineIndex", payload.get("sdp_mline_index"))
        if mline is not None:
            try:
                mline = int(mline)
            except (TypeError, ValueError):
                raise ValueError(f"invalid sdpMLineIndex {mline!r}") from None
        return cls(
            candidate=candidate.strip(),
            sdp_mid=str(sdp_mid) if sdp_mid is not None else None,
            sdp_mline_index=mline,
        )


@dataclass(frozen=True)
class RoomPaths:
    """
    Logical store layout of one room::

        rooms/{code}/offer
        rooms/{code}/answer
        rooms/{code}/host_ice/{seq}
        rooms/{code}/viewer_ice/{seq}
    """

    code: str
    prefix: str = "rooms"

    @property
    def root(self) -> str:
        return f"{self.prefix}/{self.code}"

    @property
    def offer(self) -> str:
        return f"{self.root}/offer"

    @property
    def answer(self) -> str:
        return f"{self.root}/answer"

    @property
    def host_ice(self) -> str:
        return f"{self.root}/host_ice"

    @property
    def viewer_ice(self) -> str:
        return f"{self.root}/viewer_ice"

    def outbound_mailbox(self, role: Role) -> str:
        return self.host_ice if role is Role.HOST else self.viewer_ice

    def inbound_mailbox(self, role: Role) -> str:
        return self.viewer_ice if role is Role.HOST else self.host_ice

    def description_slot(self, kind: SignalKind) -> str:
        if kind is SignalKind.OFFER:
            return self.offer
        if kind is SignalKind.ANSWER:
            return self.answer
        raise ValueError(f"{kind.value} has no description slot")


def _entry_order(key: str) -> Tuple[int, int, str]:
    try:
        return (0, int(key), key)
    except ValueError:
        return (1, 0, key)


def iter_mailbox(entries: Any) -> Iterator[Tuple[str, Any]]:
    """
    Yield ``(key, value)`` pairs of a mailbox read in publication order.

    Numeric keys sort numerically, anything else after them lexically.  A list
    payload (how some stores render small integer keys) is indexed by position
    and its holes are skipped.
    """

    if not entries:
        return
    items: Dict[str, Any]
    if isinstance(entries, Mapping):
        items = {str(key): value for key, value in entries.items()}
    elif isinstance(entries, list):
        items = {str(index): value for index, value in enumerate(entries) if value is not None}
    else:
        return
    for key in sorted(items, key=_entry_order):
        yield key, items[key]


__all__ = [
    "IceCandidate",
    "Role",
    "RoomPaths",
    "SessionDescription",
    "SignalKind",
    "iter_mailbox",
]
