"""aiortc media engine for call sessions.

Each peer connection carries one outbound audio track.  The track forwards
frames from an optional source (a microphone ``MediaPlayer`` track, for
example) and substitutes silence while muted or when there is no source.
Remote audio is drained into a ``MediaBlackhole`` unless a sink factory is
supplied.

aiortc gathers ICE candidates while installing the local description and
embeds them in the SDP rather than trickling them.  The engine extracts
the ``a=candidate`` lines after each local description and reports them
individually, so trickle-only peers receive them over signaling too.

Usage::

    from gateway.webrtc import AiortcMediaEngine

    engine = AiortcMediaEngine()          # ICE servers via gateway.turn
    session = CallSession(room_id, True, channel, engine, identity)
    await session.start()
"""

from __future__ import annotations

import asyncio
import fractions
import logging
import time
from typing import Callable

import av
import numpy as np
from aiortc import (
    MediaStreamTrack,
    RTCConfiguration,
    RTCIceServer,
    RTCPeerConnection,
    RTCSessionDescription,
)
from aiortc.contrib.media import MediaBlackhole
from aiortc.sdp import candidate_from_sdp

from confession.errors import StateError
from confession.media import CallState, IceCallback, MediaEngine, PeerConnection, StateCallback
from confession.models.signal import IceCandidate
from gateway.turn import resolve_ice_servers

log = logging.getLogger("gateway.webrtc")

WEBRTC_SAMPLE_RATE = 48000
FRAME_DURATION_MS = 20
FRAME_SAMPLES = WEBRTC_SAMPLE_RATE * FRAME_DURATION_MS // 1000  # 960

# aiortc connectionState → CallState
_STATE_MAP = {
    "new": CallState.CONNECTING,
    "connecting": CallState.CONNECTING,
    "connected": CallState.CONNECTED,
    "disconnected": CallState.DISCONNECTED,
    "failed": CallState.ERROR,
    "closed": CallState.DISCONNECTED,
}


def ice_servers_to_rtc(servers: list[dict]) -> list[RTCIceServer]:
    """Convert ICE server dicts to RTCIceServer objects."""
    result = []
    for server in servers:
        urls = server.get("urls") or server.get("url")
        if not urls:
            continue
        result.append(
            RTCIceServer(
                urls=urls,
                username=server.get("username"),
                credential=server.get("credential"),
            )
        )
    return result


def extract_candidates(sdp: str) -> list[IceCandidate]:
    """Pull ``a=candidate`` lines out of an SDP, keyed by m-line."""
    candidates = []
    m_line_index = -1
    mid: str | None = None
    pending: list[str] = []

    def flush() -> None:
        for line in pending:
            candidates.append(IceCandidate(sdp=line, sdp_mid=mid, sdp_m_line_index=m_line_index))
        pending.clear()

    for line in sdp.splitlines():
        if line.startswith("m="):
            flush()
            m_line_index += 1
            mid = None
        elif line.startswith("a=mid:"):
            mid = line[len("a=mid:"):].strip()
        elif line.startswith("a=candidate:") and m_line_index >= 0:
            pending.append(line[len("a="):].strip())
    flush()
    return candidates


def silence_frame(pts: int, samples: int = FRAME_SAMPLES, channels: int = 1) -> av.AudioFrame:
    """A packed s16 frame of zeros."""
    layout = "mono" if channels == 1 else "stereo"
    data = np.zeros((1, samples * channels), dtype=np.int16)
    frame = av.AudioFrame.from_ndarray(data, format="s16", layout=layout)
    frame.sample_rate = WEBRTC_SAMPLE_RATE
    frame.pts = pts
    frame.time_base = fractions.Fraction(1, WEBRTC_SAMPLE_RATE)
    return frame


class LocalAudioTrack(MediaStreamTrack):
    """Outbound audio that can be muted.

    With a source, frames are forwarded (or zeroed while muted).  Without
    one, silence is paced in real time at 20 ms per frame.
    """

    kind = "audio"

    def __init__(self, source: MediaStreamTrack | None = None) -> None:
        super().__init__()
        self._source = source
        self.muted = False
        self._start: float | None = None
        self._pts = 0

    async def recv(self) -> av.AudioFrame:
        if self._source is not None:
            frame = await self._source.recv()
            if not self.muted:
                return frame
            channels = len(frame.layout.channels)
            silent = silence_frame(frame.pts or 0, frame.samples, channels)
            silent.sample_rate = frame.sample_rate
            silent.time_base = frame.time_base
            return silent

        if self._start is None:
            self._start = time.time()
        else:
            self._pts += FRAME_SAMPLES
            wait = self._start + self._pts / WEBRTC_SAMPLE_RATE - time.time()
            if wait > 0:
                await asyncio.sleep(wait)
        return silence_frame(self._pts)

    def stop(self) -> None:
        super().stop()
        if self._source is not None:
            self._source.stop()


class AiortcPeerConnection(PeerConnection):
    def __init__(
        self,
        pc: RTCPeerConnection,
        track: LocalAudioTrack,
        on_ice_candidate: IceCallback,
        on_state_change: StateCallback,
        sink: MediaBlackhole,
    ) -> None:
        self._pc = pc
        self._track = track
        self._on_ice_candidate = on_ice_candidate
        self._on_state_change = on_state_change
        self._sink = sink
        self._state = CallState.IDLE
        self._closed = False

        @pc.on("connectionstatechange")
        async def on_connectionstatechange() -> None:
            state = _STATE_MAP.get(pc.connectionState)
            log.info("Peer connection state: %s", pc.connectionState)
            if state is not None and state is not self._state:
                self._state = state
                self._on_state_change(state)

        @pc.on("track")
        def on_track(track: MediaStreamTrack) -> None:
            log.info("Remote %s track received", track.kind)
            if track.kind == "audio":
                self._sink.addTrack(track)
                asyncio.ensure_future(self._sink.start())

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def has_remote_description(self) -> bool:
        return self._pc.remoteDescription is not None

    def _check_open(self) -> None:
        if self._closed:
            raise StateError("Peer connection is closed")

    def _report_local_candidates(self) -> None:
        for candidate in extract_candidates(self._pc.localDescription.sdp):
            self._on_ice_candidate(candidate)

    async def create_offer(self) -> str:
        self._check_open()
        offer = await self._pc.createOffer()
        await self._pc.setLocalDescription(offer)
        self._report_local_candidates()
        return self._pc.localDescription.sdp

    async def create_answer(self) -> str:
        self._check_open()
        answer = await self._pc.createAnswer()
        await self._pc.setLocalDescription(answer)
        self._report_local_candidates()
        return self._pc.localDescription.sdp

    async def set_remote_description(self, kind: str, sdp: str) -> None:
        self._check_open()
        await self._pc.setRemoteDescription(RTCSessionDescription(sdp=sdp, type=kind))

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        self._check_open()
        line = candidate.sdp
        if line.startswith("candidate:"):
            line = line[len("candidate:"):]
        rtc_candidate = candidate_from_sdp(line)
        rtc_candidate.sdpMid = candidate.sdp_mid
        rtc_candidate.sdpMLineIndex = candidate.sdp_m_line_index
        await self._pc.addIceCandidate(rtc_candidate)

    def set_muted(self, muted: bool) -> None:
        self._track.muted = muted

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._track.stop()
        await self._sink.stop()
        await self._pc.close()
        log.info("Peer connection closed")


class AiortcMediaEngine(MediaEngine):
    """Builds aiortc peer connections with one outbound audio track.

    ``ice_servers`` defaults to ``gateway.turn.resolve_ice_servers()`` per
    connection.  ``audio_source`` returns the track to send (a microphone,
    a file player); silence is sent when it is None.
    """

    def __init__(
        self,
        ice_servers: list[dict] | None = None,
        audio_source: Callable[[], MediaStreamTrack | None] | None = None,
    ) -> None:
        self._ice_servers = ice_servers
        self._audio_source = audio_source

    async def create_peer_connection(
        self,
        on_ice_candidate: IceCallback,
        on_state_change: StateCallback,
    ) -> AiortcPeerConnection:
        servers = self._ice_servers
        if servers is None:
            servers = await resolve_ice_servers()
        config = RTCConfiguration(iceServers=ice_servers_to_rtc(servers))
        pc = RTCPeerConnection(configuration=config)

        source = self._audio_source() if self._audio_source else None
        track = LocalAudioTrack(source)
        pc.addTrack(track)
        log.info("Peer connection created with %d ICE server(s)", len(servers))
        return AiortcPeerConnection(pc, track, on_ice_candidate, on_state_change, MediaBlackhole())


__all__ = [
    "AiortcMediaEngine",
    "AiortcPeerConnection",
    "LocalAudioTrack",
    "extract_candidates",
    "ice_servers_to_rtc",
]
