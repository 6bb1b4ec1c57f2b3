"""Tests for the aiortc peer adapter.

STUN servers are disabled so candidate gathering stays on local interfaces.
"""

import pytest

from errors import NegotiationError
from peer import AiortcPeer, candidates_from_sdp, parse_candidate


SDP = "\r\n".join([
    "v=0",
    "o=- 1 1 IN IP4 0.0.0.0",
    "s=-",
    "t=0 0",
    "a=group:BUNDLE 0 1",
    "m=audio 9 UDP/TLS/RTP/SAVPF 111",
    "c=IN IP4 0.0.0.0",
    "a=candidate:1 1 udp 2130706431 192.168.1.2 54321 typ host",
    "a=mid:0",
    "a=end-of-candidates",
    "m=video 9 UDP/TLS/RTP/SAVPF 96",
    "c=IN IP4 0.0.0.0",
    "a=mid:1",
    "a=candidate:2 1 udp 1694498815 203.0.113.7 40000 typ srflx raddr 192.168.1.2 rport 54321",
    "",
])


def test_candidates_from_sdp_tracks_media_sections():
    assert candidates_from_sdp(SDP) == [
        {"candidate": "candidate:1 1 udp 2130706431 192.168.1.2 54321 typ host", "sdpMid": "0", "sdpMLineIndex": 0},
        {
            "candidate": "candidate:2 1 udp 1694498815 203.0.113.7 40000 typ srflx raddr 192.168.1.2 rport 54321",
            "sdpMid": "1",
            "sdpMLineIndex": 1,
        },
    ]


def test_candidates_from_sdp_without_media():
    assert candidates_from_sdp("v=0\r\ns=-\r\n") == []


def test_parse_browser_candidate():
    candidate = parse_candidate({
        "candidate": "candidate:1 1 udp 2130706431 192.168.1.2 54321 typ host",
        "sdpMid": "0",
        "sdpMLineIndex": 0,
    })

    assert candidate.ip == "192.168.1.2"
    assert candidate.port == 54321
    assert candidate.type == "host"
    assert candidate.sdpMid == "0"
    assert candidate.sdpMLineIndex == 0


@pytest.mark.asyncio
async def test_offer_answer_between_two_peers():
    states = []
    offerer = AiortcPeer(on_state_change=states.append, ice_servers=[])
    answerer = AiortcPeer(ice_servers=[])
    try:
        offer = await offerer.create_offer()
        assert offer["type"] == "offer"
        assert "m=audio" in offer["sdp"] and "m=video" in offer["sdp"]

        await answerer.set_remote_description(offer)
        assert answerer.has_remote_description
        answer = await answerer.create_answer()
        assert answer["type"] == "answer"

        await offerer.set_remote_description(answer)
        assert offerer.has_remote_description
        for payload in offerer.local_candidates():
            assert payload["candidate"].startswith("candidate:")
    finally:
        await offerer.close()
        await answerer.close()


@pytest.mark.asyncio
async def test_malformed_description_raises_negotiation_error():
    peer = AiortcPeer(ice_servers=[])
    try:
        with pytest.raises(NegotiationError):
            await peer.set_remote_description({"type": "answer", "sdp": "garbage"})
        with pytest.raises(NegotiationError):
            await peer.set_remote_description({"type": "offer"})
    finally:
        await peer.close()


@pytest.mark.asyncio
async def test_malformed_candidate_raises_negotiation_error():
    peer = AiortcPeer(ice_servers=[])
    try:
        with pytest.raises(NegotiationError):
            await peer.add_ice_candidate({"candidate": "candidate:garbage", "sdpMid": "0", "sdpMLineIndex": 0})
    finally:
        await peer.close()
