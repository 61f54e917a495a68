"""Tests for CallSession negotiation over the loopback media engine.

Covers:
  - caller/callee negotiation to CONNECTED, each side on its own channel
  - own-echo suppression and role filtering of OFFER/ANSWER
  - buffering of candidates that arrive before the remote description
  - failures: OFFER publish, engine errors, listener revocation
  - close, mute, chat labels, registry and factory
"""

import asyncio
import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from confession.errors import StateError, TransportError, ValidationError
from confession.identity import StaticIdentity
from confession.media import CallState, LoopbackMediaEngine
from confession.models import IceCandidate, SignalMessage
from confession.session import CallSession, CallSessionFactory, SessionRegistry
from confession.signaling import SignalingChannel
from confession.store import InMemoryRealtimeStore

ROOM = "room-1"


async def settle(turns: int = 10) -> None:
    for _ in range(turns):
        await asyncio.sleep(0)


class Side:
    """One participant: its own identity, channel and engine."""

    def __init__(self, store, user_id, is_caller, display_name=None, registry=None):
        self.channel = SignalingChannel(store, rooms_root="rooms")
        self.engine = LoopbackMediaEngine()
        self.session = CallSession(
            ROOM,
            is_caller,
            channel=self.channel,
            engine=self.engine,
            identity=StaticIdentity(user_id),
            display_name=display_name,
            registry=registry,
        )

    @property
    def pc(self):
        return self.engine.connections[0]


@pytest.fixture
def store():
    return InMemoryRealtimeStore()


@pytest.fixture
def caller(store):
    return Side(store, "confessor-1", is_caller=True)


@pytest.fixture
def callee(store):
    return Side(store, "priest-1", is_caller=False)


@pytest.fixture
def remote(store):
    """A raw channel posting as a third party."""
    return SignalingChannel(store, rooms_root="rooms")


# ── Negotiation ─────────────────────────────────────────────────────


class TestNegotiation:
    async def test_both_sides_connect(self, caller, callee):
        await caller.session.start()
        await callee.session.start()
        assert await caller.session.wait_for(CallState.CONNECTED, timeout=1.0) is CallState.CONNECTED
        assert await callee.session.wait_for(CallState.CONNECTED, timeout=1.0) is CallState.CONNECTED

        assert caller.pc.local_description[0] == "offer"
        assert callee.pc.remote_description == caller.pc.local_description
        assert caller.pc.remote_description == callee.pc.local_description
        assert len(caller.pc.remote_candidates) == 2
        assert len(callee.pc.remote_candidates) == 2

        await caller.session.close()
        await callee.session.close()

    async def test_callee_joining_first(self, caller, callee):
        await callee.session.start()
        await settle()
        assert callee.session.state is CallState.CONNECTING
        await caller.session.start()
        await caller.session.wait_for(CallState.CONNECTED, timeout=1.0)
        await callee.session.wait_for(CallState.CONNECTED, timeout=1.0)

    async def test_state_sequence(self, caller, callee):
        seen = []
        caller.session.add_observer(seen.append)
        await caller.session.start()
        await callee.session.start()
        await caller.session.wait_for(CallState.CONNECTED, timeout=1.0)
        await caller.session.close()
        assert seen == [CallState.CONNECTING, CallState.CONNECTED, CallState.DISCONNECTED]

    async def test_own_signals_are_ignored(self, caller):
        await caller.session.start()
        await settle()
        # The caller's own OFFER and candidates are all in the room
        assert caller.session.signals_sent == 3
        assert caller.session.signals_received == 0
        assert caller.pc.remote_description is None

    async def test_caller_ignores_offers(self, caller, remote):
        await caller.session.start()
        await remote.send(ROOM, SignalMessage.offer("v=0 stray", sender_id="someone"))
        await settle()
        assert caller.pc.remote_description is None
        assert caller.session.state is CallState.CONNECTING

    async def test_callee_ignores_answers(self, callee, remote):
        await callee.session.start()
        await remote.send(ROOM, SignalMessage.answer("v=0 stray", sender_id="someone"))
        await settle()
        assert callee.engine.connections == []
        assert callee.session.state is CallState.CONNECTING

    async def test_candidates_before_offer_are_buffered(self, callee, remote):
        early = IceCandidate(sdp="candidate:9 1 udp 1 10.0.0.9 5000 typ host", sdp_mid="0", sdp_m_line_index=0)
        await remote.send(ROOM, SignalMessage.ice_candidate(early, sender_id="confessor-1"))
        await callee.session.start()
        await settle()
        assert callee.engine.connections == []

        await remote.send(ROOM, SignalMessage.offer("v=0 offer", sender_id="confessor-1"))
        await settle()
        assert callee.pc.remote_candidates == [early]
        assert callee.session.state is CallState.CONNECTED

    async def test_callee_builds_media_on_offer(self, callee, remote):
        await callee.session.start()
        assert callee.session.toggle_mute() is True
        await settle()
        assert callee.engine.connections == []

        await remote.send(ROOM, SignalMessage.offer("v=0 offer", sender_id="confessor-1"))
        await settle()
        assert len(callee.engine.connections) == 1
        assert callee.pc.remote_description == ("offer", "v=0 offer")
        assert callee.pc.local_description[0] == "answer"
        assert callee.pc.muted

    async def test_duplicate_offer_answered_once(self, callee, remote, store):
        await callee.session.start()
        await remote.send(ROOM, SignalMessage.offer("v=0 one", sender_id="confessor-1"))
        await remote.send(ROOM, SignalMessage.offer("v=0 two", sender_id="confessor-1"))
        await settle()
        signals = store.snapshot(f"rooms/{ROOM}/signals")
        answers = [s for s in signals.values() if s["type"] == "ANSWER"]
        assert len(answers) == 1
        assert callee.pc.remote_description == ("offer", "v=0 one")


# ── Failures ────────────────────────────────────────────────────────


class TestFailures:
    async def test_offer_publish_failure(self, caller, store):
        store.fail_next_write()
        with pytest.raises(TransportError):
            await caller.session.start()
        assert caller.session.state is CallState.ERROR
        assert isinstance(caller.session.error, TransportError)
        await caller.session.close()
        assert caller.session.state is CallState.ERROR

    async def test_engine_failure_is_reported(self, caller, callee):
        await caller.session.start()
        await callee.session.start()
        await caller.session.wait_for(CallState.CONNECTED, timeout=1.0)
        caller.pc.fail()
        assert caller.session.state is CallState.ERROR

    async def test_negotiation_error(self, callee, remote):
        await callee.session.start()
        create = callee.engine.create_peer_connection

        async def broken_answer():
            raise RuntimeError("codec mismatch")

        async def create_broken(on_candidate, on_state):
            pc = await create(on_candidate, on_state)
            pc.create_answer = broken_answer
            return pc

        callee.engine.create_peer_connection = create_broken
        await remote.send(ROOM, SignalMessage.offer("v=0", sender_id="confessor-1"))
        await settle()
        assert callee.session.state is CallState.ERROR
        assert "codec mismatch" in str(callee.session.error)

    async def test_listener_revoked(self, caller, store):
        await caller.session.start()
        store.revoke("rooms")
        await settle()
        assert caller.session.state is CallState.ERROR

    async def test_room_required(self, store):
        with pytest.raises(ValidationError):
            CallSession("", True, SignalingChannel(store), LoopbackMediaEngine(), StaticIdentity("u"))

    async def test_requires_signed_in_user(self, store):
        session = CallSession(ROOM, True, SignalingChannel(store), LoopbackMediaEngine(), StaticIdentity(None))
        with pytest.raises(ValidationError):
            await session.start()


# ── Lifecycle ───────────────────────────────────────────────────────


class TestLifecycle:
    async def test_close_is_idempotent(self, caller, store):
        await caller.session.start()
        await settle()
        await caller.session.close()
        await caller.session.close()
        assert caller.session.is_closed
        assert caller.session.state is CallState.DISCONNECTED
        assert caller.pc.closed
        assert store.listener_count == 0

    async def test_start_after_close(self, caller):
        await caller.session.close()
        with pytest.raises(StateError):
            await caller.session.start()

    async def test_second_start_is_ignored(self, caller):
        await caller.session.start()
        await caller.session.start()
        assert len(caller.engine.connections) == 1

    async def test_close_wakes_waiters(self, caller):
        await caller.session.start()
        waiter = asyncio.create_task(caller.session.wait_for(CallState.CONNECTED))
        await settle()
        await caller.session.close()
        assert await asyncio.wait_for(waiter, 1.0) is CallState.DISCONNECTED

    async def test_toggle_mute(self, caller):
        assert caller.session.toggle_mute() is False
        await caller.session.start()
        assert caller.session.toggle_mute() is True
        assert caller.pc.muted
        assert caller.session.toggle_mute() is False
        assert not caller.pc.muted

    async def test_to_dict(self, caller):
        await caller.session.start()
        data = caller.session.to_dict()
        assert data["room_id"] == ROOM
        assert data["role"] == "caller"
        assert data["state"] == "CONNECTING"


# ── Chat ────────────────────────────────────────────────────────────


class TestChat:
    async def test_labels_and_delivery(self, store):
        caller = Side(store, "confessor-1", is_caller=True)
        callee = Side(store, "priest-1", is_caller=False, display_name="Fr. John")
        await caller.session.start()
        await callee.session.start()

        histories = []
        callee.session.add_chat_observer(histories.append)
        sent = await caller.session.send_chat("Bless me, Father")
        reply = await callee.session.send_chat("Peace be with you")
        await settle()

        assert sent.sender_display_name == "Confessor"
        assert reply.sender_display_name == "Fr. John"
        assert [m.text for m in callee.session.chat_messages] == ["Bless me, Father", "Peace be with you"]
        assert [m.text for m in caller.session.chat_messages] == ["Bless me, Father", "Peace be with you"]
        assert len(histories[-1]) == 2

    async def test_default_callee_label(self, callee):
        await callee.session.start()
        message = await callee.session.send_chat("hello")
        assert message.sender_display_name == "Priest"

    async def test_blank_or_unstarted(self, caller):
        assert await caller.session.send_chat("hello") is None
        await caller.session.start()
        assert await caller.session.send_chat("   ") is None
        assert caller.session.chat_messages == []


# ── Registry and factory ────────────────────────────────────────────


class TestRegistry:
    async def test_register_on_start(self, store):
        registry = SessionRegistry()
        side = Side(store, "confessor-1", is_caller=True, registry=registry)
        assert len(registry) == 0
        await side.session.start()
        assert registry.get(ROOM) is side.session
        await registry.close_all()
        assert len(registry) == 0
        assert side.session.is_closed

    async def test_factory_starts_sessions(self, store):
        registry = SessionRegistry()
        factory = CallSessionFactory(
            SignalingChannel(store, rooms_root="rooms"),
            LoopbackMediaEngine(),
            StaticIdentity("priest-1"),
            registry=registry,
            display_name="Fr. John",
            broadcasters=True,
        )
        session = await factory(ROOM, False, "Penitent")
        assert session.state is CallState.CONNECTING
        assert session.peer_display_name == "Penitent"
        assert registry.get(ROOM) is session
        events = session.debug_broadcaster.event_log
        assert events[0]["type"] == "transition"
        assert events[0]["data"] == {"from": "IDLE", "to": "CONNECTING"}
