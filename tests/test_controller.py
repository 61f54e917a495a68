"""Tests for InvitationController (confessor side).

Covers:
  - send: record creation, state sequence, failures and preconditions
  - await_response: accept, reject, timeout, deletion, MISSED, revocation
  - the timeout boundary: responses either side of the deadline, late
    responses and store-authoritative outcomes
  - cancel: while sending, while waiting, before waiting, after a response,
    on failure
  - debug tracing of state transitions
"""

import asyncio
import os
import sys
from unittest.mock import AsyncMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from confession.debug_events import DebugBroadcaster
from confession.errors import ListenError, StateError, TransportError, ValidationError
from confession.identity import StaticIdentity
from confession.invitations import (
    ConfessorState,
    InvitationController,
    InvitationOutcome,
    InvitationRepository,
)
from confession.models import InvitationStatus
from confession.store import InMemoryRealtimeStore, Subscription

PRIEST = "priest-1"


async def settle(turns: int = 5) -> None:
    for _ in range(turns):
        await asyncio.sleep(0)


@pytest.fixture
def store():
    return InMemoryRealtimeStore()


@pytest.fixture
def repo(store):
    return InvitationRepository(store, root="invitations")


@pytest.fixture
def controller(repo):
    return InvitationController(repo, StaticIdentity("confessor-1"), timeout=5.0)


@pytest.fixture
def states(controller):
    seen = []
    controller.add_observer(lambda state, result: seen.append(state))
    return seen


def stored_status(store, invitation):
    return store.snapshot(f"invitations/{invitation.priest_id}/{invitation.invitation_id}/status")


# ── Sending ─────────────────────────────────────────────────────────


class TestSend:
    async def test_creates_pending_record(self, controller, store, states):
        inv = await controller.send_invitation(PRIEST)
        assert inv.priest_id == PRIEST
        assert inv.confessor_id == "confessor-1"
        assert inv.confessor_display_name == "Anonymous Confessor"
        assert inv.room_id and inv.room_id != inv.invitation_id
        assert stored_status(store, inv) == "PENDING"
        assert controller.state is ConfessorState.WAITING
        assert controller.invitation == inv
        assert states == [ConfessorState.SENDING, ConfessorState.WAITING]

    async def test_display_name_override(self, repo):
        controller = InvitationController(repo, StaticIdentity("c1"), display_name="Penitent")
        inv = await controller.send_invitation(PRIEST)
        assert inv.confessor_display_name == "Penitent"

    async def test_fresh_ids_per_invitation(self, controller):
        first = await controller.send_invitation(PRIEST)
        await controller.cancel()
        second = await controller.send_invitation(PRIEST)
        assert first.invitation_id != second.invitation_id
        assert first.room_id != second.room_id

    async def test_write_failure(self, controller, store, states):
        store.fail_next_write("offline")
        with pytest.raises(TransportError):
            await controller.send_invitation(PRIEST)
        assert controller.state is ConfessorState.IDLE
        assert controller.invitation is None
        assert states == [ConfessorState.SENDING, ConfessorState.ERROR, ConfessorState.IDLE]
        assert store.snapshot("invitations") is None
        assert store.listener_count == 0

    async def test_requires_signed_in_user(self, repo):
        controller = InvitationController(repo, StaticIdentity(None))
        with pytest.raises(ValidationError):
            await controller.send_invitation(PRIEST)
        assert controller.state is ConfessorState.IDLE

    async def test_requires_priest(self, controller):
        with pytest.raises(ValidationError):
            await controller.send_invitation("")

    async def test_one_invitation_at_a_time(self, controller):
        await controller.send_invitation(PRIEST)
        with pytest.raises(StateError):
            await controller.send_invitation("priest-2")

    def test_default_timeout(self, repo):
        controller = InvitationController(repo, StaticIdentity("c1"))
        assert controller.timeout == 30.0


# ── Awaiting a response ─────────────────────────────────────────────


class TestAwaitResponse:
    async def test_accepted(self, controller, repo, store, states):
        inv = await controller.send_invitation(PRIEST)
        task = asyncio.create_task(controller.await_response(inv))
        await settle()
        await repo.transition(inv, InvitationStatus.ACCEPTED)
        result = await asyncio.wait_for(task, 1.0)

        assert result.outcome is InvitationOutcome.ACCEPTED
        assert result.room_id == inv.room_id
        assert result.invitation.responded_at is not None
        assert controller.state is ConfessorState.IDLE
        assert controller.last_result is result
        assert states[-2:] == [ConfessorState.ACCEPTED, ConfessorState.IDLE]
        assert store.listener_count == 0

    async def test_rejected(self, controller, repo, store):
        inv = await controller.send_invitation(PRIEST)
        task = asyncio.create_task(controller.await_response(inv))
        await settle()
        await repo.transition(inv, InvitationStatus.REJECTED)
        result = await asyncio.wait_for(task, 1.0)
        assert result.outcome is InvitationOutcome.REJECTED
        assert result.state is ConfessorState.REJECTED
        assert "declined" in result.message
        assert stored_status(store, inv) == "REJECTED"

    async def test_timeout_marks_expired(self, controller, repo, store, states):
        inv = await controller.send_invitation(PRIEST)
        result = await controller.await_response(inv, timeout=0.05)
        assert result.outcome is InvitationOutcome.TIMED_OUT
        assert stored_status(store, inv) == "EXPIRED"
        assert states[-2:] == [ConfessorState.TIMED_OUT, ConfessorState.IDLE]
        assert store.listener_count == 0

    async def test_late_accept_after_timeout_is_refused(self, controller, repo, store):
        inv = await controller.send_invitation(PRIEST)
        result = await controller.await_response(inv, timeout=0.05)
        assert result.outcome is InvitationOutcome.TIMED_OUT
        with pytest.raises(StateError):
            await repo.transition(inv, InvitationStatus.ACCEPTED)
        assert stored_status(store, inv) == "EXPIRED"
        assert controller.last_result is result

    async def test_timeout_survives_failed_expire_write(self, controller, store):
        inv = await controller.send_invitation(PRIEST)
        store.fail_next_write()
        result = await controller.await_response(inv, timeout=0.05)
        assert result.outcome is InvitationOutcome.TIMED_OUT
        assert stored_status(store, inv) == "PENDING"
        assert controller.state is ConfessorState.IDLE

    async def test_store_wins_when_accept_committed_first(self, controller, repo, store, monkeypatch):
        # The status listener never delivers, so the timer wins locally
        # while the store already holds the priest's accept.
        monkeypatch.setattr(
            repo, "subscribe_status",
            lambda invitation, on_change, on_cancelled=None: Subscription("silent"),
        )
        inv = await controller.send_invitation(PRIEST)
        await repo.transition(inv, InvitationStatus.ACCEPTED)
        result = await controller.await_response(inv, timeout=0.01)
        assert result.outcome is InvitationOutcome.ACCEPTED
        assert stored_status(store, inv) == "ACCEPTED"

    async def test_deleted_record_is_canceled(self, controller, store):
        inv = await controller.send_invitation(PRIEST)
        task = asyncio.create_task(controller.await_response(inv))
        await settle()
        await store.set(f"invitations/{PRIEST}/{inv.invitation_id}", None)
        result = await asyncio.wait_for(task, 1.0)
        assert result.outcome is InvitationOutcome.CANCELED

    async def test_missed_is_timed_out(self, controller, repo):
        inv = await controller.send_invitation(PRIEST)
        task = asyncio.create_task(controller.await_response(inv))
        await settle()
        await repo.transition(inv, InvitationStatus.MISSED)
        result = await asyncio.wait_for(task, 1.0)
        assert result.outcome is InvitationOutcome.TIMED_OUT

    async def test_revoked_listener(self, controller, store, states):
        inv = await controller.send_invitation(PRIEST)
        task = asyncio.create_task(controller.await_response(inv))
        await settle()
        store.revoke("invitations")
        result = await asyncio.wait_for(task, 1.0)
        assert result.outcome is InvitationOutcome.LISTEN_ERROR
        assert isinstance(result.error, ListenError)
        assert states[-2:] == [ConfessorState.ERROR, ConfessorState.IDLE]

    async def test_pending_updates_are_ignored(self, controller, store):
        inv = await controller.send_invitation(PRIEST)
        task = asyncio.create_task(controller.await_response(inv, timeout=0.1))
        await settle()
        await store.update(f"invitations/{PRIEST}/{inv.invitation_id}", {"confessorDisplayName": "X"})
        await settle()
        assert not task.done()
        result = await task
        assert result.outcome is InvitationOutcome.TIMED_OUT

    async def test_exactly_one_result_when_accept_races_timer(self, controller, repo):
        inv = await controller.send_invitation(PRIEST)
        results = []
        controller.add_observer(lambda state, result: result and results.append(result))
        task = asyncio.create_task(controller.await_response(inv, timeout=0.02))
        await asyncio.sleep(0.02)
        try:
            await repo.transition(inv, InvitationStatus.ACCEPTED)
        except StateError:
            pass
        result = await asyncio.wait_for(task, 1.0)
        assert result.outcome in (InvitationOutcome.ACCEPTED, InvitationOutcome.TIMED_OUT)
        assert {id(r) for r in results} == {id(result)}

    async def test_requires_invitation_in_flight(self, controller):
        with pytest.raises(StateError):
            await controller.await_response()

    async def test_task_cancellation(self, controller, store):
        inv = await controller.send_invitation(PRIEST)
        task = asyncio.create_task(controller.await_response(inv))
        await settle()
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        assert controller.state is ConfessorState.IDLE
        assert controller.last_result.outcome is InvitationOutcome.CANCELED
        assert store.listener_count == 0

    async def test_invite_convenience(self, controller, store):
        result = await controller.invite(PRIEST, timeout=0.02)
        assert result.outcome is InvitationOutcome.TIMED_OUT
        assert stored_status(store, result.invitation) == "EXPIRED"


# ── Timer boundary ──────────────────────────────────────────────────


class TestTimeoutBoundary:
    async def test_response_before_deadline_wins(self, controller, repo, store):
        inv = await controller.send_invitation(PRIEST)
        task = asyncio.create_task(controller.await_response(inv, timeout=0.3))
        await asyncio.sleep(0.2)
        assert not task.done()
        await repo.transition(inv, InvitationStatus.ACCEPTED)
        result = await asyncio.wait_for(task, 1.0)
        assert result.outcome is InvitationOutcome.ACCEPTED
        assert stored_status(store, inv) == "ACCEPTED"

    async def test_rejection_before_deadline_wins(self, controller, repo, store):
        inv = await controller.send_invitation(PRIEST)
        task = asyncio.create_task(controller.await_response(inv, timeout=0.3))
        await asyncio.sleep(0.2)
        await repo.transition(inv, InvitationStatus.REJECTED)
        result = await asyncio.wait_for(task, 1.0)
        assert result.outcome is InvitationOutcome.REJECTED
        assert stored_status(store, inv) == "REJECTED"

    async def test_response_after_deadline_times_out(self, controller, repo, store):
        inv = await controller.send_invitation(PRIEST)
        task = asyncio.create_task(controller.await_response(inv, timeout=0.3))
        await asyncio.sleep(0.4)
        assert task.done()
        with pytest.raises(StateError):
            await repo.transition(inv, InvitationStatus.ACCEPTED)
        result = await task
        assert result.outcome is InvitationOutcome.TIMED_OUT
        assert stored_status(store, inv) == "EXPIRED"
        assert controller.state is ConfessorState.IDLE


# ── Cancelling ──────────────────────────────────────────────────────


class TestCancel:
    async def test_cancel_while_waiting(self, controller, store, states):
        inv = await controller.send_invitation(PRIEST)
        task = asyncio.create_task(controller.await_response(inv))
        await settle()
        await controller.cancel()
        assert controller.state is ConfessorState.IDLE
        result = await asyncio.wait_for(task, 1.0)
        assert result.outcome is InvitationOutcome.CANCELED
        assert stored_status(store, inv) == "EXPIRED"
        assert states.count(ConfessorState.CANCELED) == 1
        assert store.listener_count == 0

    async def test_cancel_before_waiting(self, controller, store):
        inv = await controller.send_invitation(PRIEST)
        await controller.cancel()
        assert controller.state is ConfessorState.IDLE
        assert controller.last_result.outcome is InvitationOutcome.CANCELED
        assert stored_status(store, inv) == "EXPIRED"

    async def test_cancel_after_priest_accepted(self, controller, repo, store):
        inv = await controller.send_invitation(PRIEST)
        await repo.transition(inv, InvitationStatus.ACCEPTED)
        await controller.cancel()
        assert controller.state is ConfessorState.IDLE
        assert stored_status(store, inv) == "ACCEPTED"

    async def test_cancel_with_nothing_in_flight(self, controller):
        await controller.cancel()
        assert controller.state is ConfessorState.IDLE

    async def test_cancel_twice(self, controller, store):
        inv = await controller.send_invitation(PRIEST)
        await controller.cancel()
        await controller.cancel(inv)
        assert stored_status(store, inv) == "EXPIRED"

    async def test_cancel_write_failure(self, controller, store):
        inv = await controller.send_invitation(PRIEST)
        task = asyncio.create_task(controller.await_response(inv))
        await settle()
        store.fail_next_write()
        with pytest.raises(TransportError):
            await controller.cancel()
        assert controller.state is ConfessorState.IDLE
        result = await asyncio.wait_for(task, 1.0)
        assert result.outcome is InvitationOutcome.CANCELED
        assert stored_status(store, inv) == "PENDING"

    async def test_cancel_while_record_is_being_written(self):
        store = InMemoryRealtimeStore(latency=0.05)
        controller = InvitationController(
            InvitationRepository(store, root="invitations"),
            StaticIdentity("confessor-1"),
            timeout=5.0,
        )
        seen = []
        controller.add_observer(lambda state, result: seen.append(state))

        sending = asyncio.create_task(controller.send_invitation(PRIEST))
        await asyncio.sleep(0.01)
        assert controller.state is ConfessorState.SENDING
        inv = controller.invitation

        await controller.cancel()
        with pytest.raises(StateError):
            await sending
        assert controller.state is ConfessorState.IDLE
        assert controller.invitation is None
        assert controller.last_result.outcome is InvitationOutcome.CANCELED
        assert stored_status(store, inv) == "EXPIRED"
        assert seen == [ConfessorState.SENDING, ConfessorState.CANCELED, ConfessorState.IDLE]

        await controller.send_invitation(PRIEST)
        assert controller.state is ConfessorState.WAITING

    async def test_cancel_while_sending_write_failure(self, monkeypatch):
        store = InMemoryRealtimeStore(latency=0.05)
        repo = InvitationRepository(store, root="invitations")
        controller = InvitationController(repo, StaticIdentity("confessor-1"), timeout=5.0)
        monkeypatch.setattr(repo, "transition", AsyncMock(side_effect=TransportError("down")))

        sending = asyncio.create_task(controller.send_invitation(PRIEST))
        await asyncio.sleep(0.01)
        inv = controller.invitation
        with pytest.raises(TransportError):
            await controller.cancel()
        with pytest.raises(StateError):
            await sending
        assert controller.state is ConfessorState.IDLE
        assert controller.last_result.outcome is InvitationOutcome.CANCELED
        assert stored_status(store, inv) == "PENDING"


# ── Tracing ─────────────────────────────────────────────────────────


class TestTracing:
    async def test_transitions_are_broadcast(self, controller, repo):
        broadcaster = DebugBroadcaster("confessor-1")
        controller.attach_broadcaster(broadcaster)
        queue = broadcaster.subscribe()

        inv = await controller.send_invitation(PRIEST)
        await controller.cancel()

        targets = [e["data"]["to"] for e in broadcaster.event_log]
        assert targets == ["SENDING", "WAITING", "CANCELED", "IDLE"]
        assert broadcaster.event_log[0]["data"]["invitation_id"] == inv.invitation_id
        assert queue.qsize() == 4

    async def test_observer_removal(self, controller):
        seen = []
        remove = controller.add_observer(lambda state, result: seen.append(state))
        remove()
        remove()
        await controller.send_invitation(PRIEST)
        assert seen == []
