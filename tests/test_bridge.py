"""Conversion between wire dicts and aiortc objects."""

import pytest

from splitsignal.bridge import (
    NegotiationBridge,
    candidate_from_dict,
    candidate_to_dict,
    description_from_dict,
)
from splitsignal.errors import NegotiationFailure

BROWSER_CANDIDATE = {
    "candidate": "candidate:842163049 1 udp 1677729535 203.0.113.7 46154 typ srflx raddr 10.0.0.2 rport 46154",
    "sdpMid": "0",
    "sdpMLineIndex": 0,
}


class TestCandidates:
    def test_browser_candidate_is_parsed(self) -> None:
        candidate = candidate_from_dict(BROWSER_CANDIDATE)

        assert candidate.ip == "203.0.113.7"
        assert candidate.port == 46154
        assert candidate.type == "srflx"
        assert candidate.sdpMid == "0"
        assert candidate.sdpMLineIndex == 0

    def test_candidate_keeps_its_wire_shape(self) -> None:
        assert candidate_to_dict(candidate_from_dict(BROWSER_CANDIDATE))["candidate"].startswith(
            "candidate:842163049 1 udp 1677729535 203.0.113.7 46154 typ srflx"
        )

    @pytest.mark.parametrize("data", [None, {"candidate": ""}, {}])
    def test_end_of_candidates(self, data) -> None:
        assert candidate_from_dict(data) is None

    @pytest.mark.parametrize("data", ["candidate:1", {"candidate": "candidate:garbage"}])
    def test_invalid_candidate(self, data) -> None:
        with pytest.raises(NegotiationFailure):
            candidate_from_dict(data)


class TestDescriptions:
    @pytest.mark.parametrize("data", [None, {"sdp": "v=0"}, {"type": "offer"}, {"type": "bogus", "sdp": ""}])
    def test_invalid_description(self, data) -> None:
        with pytest.raises(NegotiationFailure):
            description_from_dict(data)


class TestBridge:
    async def test_operations_before_start_fail_cleanly(self) -> None:
        bridge = NegotiationBridge()

        with pytest.raises(NegotiationFailure):
            await bridge.create_offer()
        with pytest.raises(NegotiationFailure):
            await bridge.apply_remote_description({"type": "answer", "sdp": "v=0"})

    async def test_offer_without_media_source(self) -> None:
        candidates = []

        async def on_candidate(candidate):
            candidates.append(candidate)

        bridge = NegotiationBridge(ice_servers=[], on_candidate=on_candidate)
        await bridge.start()
        bridge.pc.addTransceiver("video", direction="sendonly")
        try:
            assert await bridge.add_local_media() == []
            offer = await bridge.create_offer()
        finally:
            await bridge.close()

        assert offer["type"] == "offer"
        assert offer["sdp"].startswith("v=0")
        assert candidates[-1] is None
        assert bridge.pc is None
