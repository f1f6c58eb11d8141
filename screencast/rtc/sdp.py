"""SDP helpers."""

from __future__ import annotations

from typing import List, Optional

from ..signaling.messages import IceCandidate


def extract_candidates(sdp: str) -> List[IceCandidate]:
    """
    Return the ``a=candidate`` lines of ``sdp`` as trickle candidates, tagged
    with the ``mid`` and m-line index of the media section they belong to.
    """

    candidates: List[IceCandidate] = []
    mline_index = -1
    mid: Optional[str] = None
    section: List[str] = []

    def _flush() -> None:
        for line in section:
            candidates.append(
                IceCandidate(
                    candidate=line,
                    sdp_mid=mid if mid is not None else str(mline_index),
                    sdp_mline_index=mline_index,
                )
            )
        section.clear()

    for raw_line in (sdp or "").splitlines():
        line = raw_line.strip()
        if line.startswith("m="):
            if mline_index >= 0:
                _flush()
            mline_index += 1
            mid = None
        elif mline_index < 0:
            continue
        elif line.startswith("a=mid:"):
            mid = line[len("a=mid:"):]
        elif line.startswith("a=candidate:"):
            section.append(line[len("a="):])
    if mline_index >= 0:
        _flush()
    return candidates


__all__ = ["extract_candidates"]
