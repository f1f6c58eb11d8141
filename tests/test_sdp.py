"""Tests covering candidate extraction from local descriptions."""

from screencast.rtc.sdp import extract_candidates

SDP = "\r\n".join(
    [
        "v=0",
        "o=- 1 1 IN IP4 0.0.0.0",
        "s=-",
        "a=candidate:0 1 udp 1 10.0.0.9 4000 typ host",
        "m=video 9 UDP/TLS/RTP/SAVPF 96",
        "a=candidate:1 1 udp 2130706431 10.0.0.1 5000 typ host",
        "a=mid:0",
        "m=audio 9 UDP/TLS/RTP/SAVPF 111",
        "a=mid:audio",
        "a=candidate:2 1 udp 2130706431 10.0.0.1 5001 typ host",
        "a=candidate:3 1 udp 1694498815 203.0.113.4 5001 typ srflx raddr 10.0.0.1 rport 5001",
        "m=application 9 UDP/DTLS/SCTP webrtc-datachannel",
        "a=candidate:4 1 udp 2130706431 10.0.0.1 5002 typ host",
        "",
    ]
)


def test_candidates_are_tagged_with_their_media_section() -> None:
    candidates = extract_candidates(SDP)

    assert [c.candidate.split()[0] for c in candidates] == [
        "candidate:1",
        "candidate:2",
        "candidate:3",
        "candidate:4",
    ]
    assert all(not c.candidate.startswith("a=") for c in candidates)
    assert [(c.sdp_mid, c.sdp_mline_index) for c in candidates] == [
        ("0", 0),
        ("audio", 1),
        ("audio", 1),
        ("2", 2),
    ]


def test_description_without_candidates() -> None:
    assert extract_candidates("v=0\r\nm=video 9 RTP 96\r\na=mid:0\r\n") == []
    assert extract_candidates("") == []
