"""Peer media engine contract.

The call session never touches a media stack directly.  It asks a
``MediaEngine`` for a ``PeerConnection`` and feeds it the payloads that
arrive over signaling; the connection reports locally gathered ICE
candidates and connection-state changes back through two callbacks.

``gateway.webrtc.AiortcMediaEngine`` is the production engine.
``LoopbackMediaEngine`` below is an in-process stand-in that completes a
negotiation without any network, used by local runs and the test-suite.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Callable

from confession.errors import StateError
from confession.models.signal import IceCandidate

log = logging.getLogger("confession.media")


class CallState(str, Enum):
    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        return self in (CallState.DISCONNECTED, CallState.ERROR)


IceCallback = Callable[[IceCandidate], None]
StateCallback = Callable[[CallState], None]


class PeerConnection(ABC):
    """One peer audio connection."""

    @property
    @abstractmethod
    def state(self) -> CallState:
        """Current connection state as reported by the engine."""

    @property
    @abstractmethod
    def has_remote_description(self) -> bool:
        """True once ``set_remote_description`` has succeeded."""

    @abstractmethod
    async def create_offer(self) -> str:
        """Create an offer, install it locally and return its SDP."""

    @abstractmethod
    async def create_answer(self) -> str:
        """Answer the installed remote offer and return the answer SDP."""

    @abstractmethod
    async def set_remote_description(self, kind: str, sdp: str) -> None:
        """Install the peer's ``"offer"`` or ``"answer"``."""

    @abstractmethod
    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        """Apply a remote candidate.  Requires a remote description."""

    @abstractmethod
    def set_muted(self, muted: bool) -> None:
        """Mute or unmute the local audio track."""

    @abstractmethod
    async def close(self) -> None:
        """Release local media resources.  Safe to call multiple times."""


class MediaEngine(ABC):
    """Factory for peer connections."""

    @abstractmethod
    async def create_peer_connection(
        self,
        on_ice_candidate: IceCallback,
        on_state_change: StateCallback,
    ) -> PeerConnection:
        """Build a connection with local audio attached."""


# ── In-process engine ──────────────────────────────────────────


class LoopbackPeerConnection(PeerConnection):
    """Peer connection that negotiates without a network.

    Reaches CONNECTED once it holds a local description, a remote
    description and at least one remote candidate.  Local candidates are
    "gathered" one loop turn after the local description is installed.
    """

    _ids = itertools.count(1)

    def __init__(
        self,
        on_ice_candidate: IceCallback,
        on_state_change: StateCallback,
        candidate_count: int = 2,
    ) -> None:
        self.id = next(self._ids)
        self._on_ice_candidate = on_ice_candidate
        self._on_state_change = on_state_change
        self._candidate_count = candidate_count
        self._state = CallState.IDLE
        self.local_description: tuple[str, str] | None = None
        self.remote_description: tuple[str, str] | None = None
        self.remote_candidates: list[IceCandidate] = []
        self.muted = False
        self.closed = False

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def has_remote_description(self) -> bool:
        return self.remote_description is not None

    def _set_state(self, state: CallState) -> None:
        if state is self._state:
            return
        self._state = state
        self._on_state_change(state)

    def _check_open(self) -> None:
        if self.closed:
            raise StateError(f"Peer connection {self.id} is closed")

    def _gather(self) -> None:
        loop = asyncio.get_running_loop()
        for i in range(self._candidate_count):
            candidate = IceCandidate(
                sdp=f"candidate:{self.id}{i} 1 udp 2122260223 127.0.0.1 {50000 + i} typ host",
                sdp_mid="0",
                sdp_m_line_index=0,
            )
            loop.call_soon(self._emit_candidate, candidate)

    def _emit_candidate(self, candidate: IceCandidate) -> None:
        if not self.closed:
            self._on_ice_candidate(candidate)

    def _check_connected(self) -> None:
        if (
            self.local_description is not None
            and self.remote_description is not None
            and self.remote_candidates
            and self._state is CallState.CONNECTING
        ):
            self._set_state(CallState.CONNECTED)

    async def create_offer(self) -> str:
        self._check_open()
        if self.local_description is not None:
            raise StateError("Local description already set")
        sdp = f"v=0\r\no=loopback {self.id} 1 IN IP4 127.0.0.1\r\ns=offer\r\n"
        self.local_description = ("offer", sdp)
        self._set_state(CallState.CONNECTING)
        self._gather()
        return sdp

    async def create_answer(self) -> str:
        self._check_open()
        if self.remote_description is None or self.remote_description[0] != "offer":
            raise StateError("Cannot answer without a remote offer")
        sdp = f"v=0\r\no=loopback {self.id} 1 IN IP4 127.0.0.1\r\ns=answer\r\n"
        self.local_description = ("answer", sdp)
        self._gather()
        self._check_connected()
        return sdp

    async def set_remote_description(self, kind: str, sdp: str) -> None:
        self._check_open()
        if kind not in ("offer", "answer"):
            raise ValueError(f"Unknown description type {kind!r}")
        if kind == "answer" and (
            self.local_description is None or self.local_description[0] != "offer"
        ):
            raise StateError("Received an answer without a local offer")
        self.remote_description = (kind, sdp)
        self._set_state(CallState.CONNECTING)
        self._check_connected()

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        self._check_open()
        if self.remote_description is None:
            raise StateError("Remote description not set")
        self.remote_candidates.append(candidate)
        self._check_connected()

    def set_muted(self, muted: bool) -> None:
        self.muted = muted

    def fail(self) -> None:
        """Simulate an ICE failure."""
        self._set_state(CallState.ERROR)

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        if not self._state.is_terminal:
            self._set_state(CallState.DISCONNECTED)
        log.debug("Loopback peer connection %d closed", self.id)


class LoopbackMediaEngine(MediaEngine):
    def __init__(self, candidate_count: int = 2) -> None:
        self._candidate_count = candidate_count
        self.connections: list[LoopbackPeerConnection] = []

    async def create_peer_connection(
        self,
        on_ice_candidate: IceCallback,
        on_state_change: StateCallback,
    ) -> LoopbackPeerConnection:
        pc = LoopbackPeerConnection(on_ice_candidate, on_state_change, self._candidate_count)
        self.connections.append(pc)
        return pc


__all__ = [
    "CallState",
    "IceCandidate",
    "LoopbackMediaEngine",
    "LoopbackPeerConnection",
    "MediaEngine",
    "PeerConnection",
]
