"""Tests for the aiortc media engine helpers (gateway.webrtc)."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from confession.errors import StateError
from confession.media import CallState
from gateway.webrtc import (
    FRAME_SAMPLES,
    WEBRTC_SAMPLE_RATE,
    AiortcMediaEngine,
    LocalAudioTrack,
    extract_candidates,
    ice_servers_to_rtc,
    silence_frame,
)

SDP = "\r\n".join([
    "v=0",
    "o=- 1 1 IN IP4 0.0.0.0",
    "s=-",
    "t=0 0",
    "a=candidate:ignored-before-any-m-line",
    "m=audio 9 UDP/TLS/RTP/SAVPF 111",
    "a=mid:0",
    "a=candidate:1 1 udp 2122260223 192.168.1.2 50000 typ host",
    "a=candidate:2 1 udp 1686052607 203.0.113.5 50001 typ srflx raddr 192.168.1.2 rport 50000",
    "m=video 9 UDP/TLS/RTP/SAVPF 96",
    "a=candidate:3 1 udp 2122260223 192.168.1.2 50002 typ host",
    "a=mid:1",
    "",
])


class TestExtractCandidates:
    def test_candidates_per_m_line(self):
        candidates = extract_candidates(SDP)
        assert [(c.sdp_mid, c.sdp_m_line_index) for c in candidates] == [
            ("0", 0),
            ("0", 0),
            ("1", 1),
        ]
        assert candidates[0].sdp == "candidate:1 1 udp 2122260223 192.168.1.2 50000 typ host"

    def test_no_candidates(self):
        assert extract_candidates("v=0\r\nm=audio 9 RTP/AVP 0\r\n") == []


class TestIceServers:
    def test_conversion(self):
        servers = ice_servers_to_rtc([
            {"urls": "stun:stun.example.com"},
            {"url": "turn:turn.example.com", "username": "u", "credential": "p"},
            {"username": "orphan"},
        ])
        assert len(servers) == 2
        assert servers[1].username == "u"
        assert servers[1].credential == "p"


class TestAudio:
    def test_silence_frame(self):
        frame = silence_frame(pts=960)
        assert frame.samples == FRAME_SAMPLES
        assert frame.sample_rate == WEBRTC_SAMPLE_RATE
        assert frame.pts == 960

    async def test_local_track_paces_silence(self):
        track = LocalAudioTrack()
        first = await track.recv()
        second = await track.recv()
        assert first.pts == 0
        assert second.pts == FRAME_SAMPLES
        track.stop()


class TestEngine:
    async def test_peer_connection_lifecycle(self):
        engine = AiortcMediaEngine(ice_servers=[])
        states = []
        pc = await engine.create_peer_connection(lambda c: None, states.append)
        assert pc.state is CallState.IDLE
        assert not pc.has_remote_description
        pc.set_muted(True)
        await pc.close()
        await pc.close()
        with pytest.raises(StateError):
            await pc.create_offer()
