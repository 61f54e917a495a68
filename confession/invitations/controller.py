"""Confessor-side invitation lifecycle.

The controller creates an invitation, then races the priest's response
against a countdown and resolves to exactly one terminal outcome::

    IDLE → SENDING → WAITING → {ACCEPTED, REJECTED, TIMED_OUT, CANCELED, ERROR} → IDLE

The race lives in a single-assignment result cell (``_Race``).  Whichever
arm resolves it first also tears down the other arm, synchronously and
before the result is observed:

  status listener sees ACCEPTED / REJECTED   → cancel timer, stop listener
  status listener sees deleted / unknown     → Canceled
  status listener sees MISSED / EXPIRED      → TimedOut (someone else ended it)
  listener revoked by the store              → ListenError
  timer fires                                → stop listener, then write EXPIRED

Because the listener is gone before the EXPIRED write is issued, a late
ACCEPTED can never reach the controller after a timeout.  The EXPIRED write
itself is conditional (see ``InvitationRepository.transition``), so it can
never overwrite a response the store had already committed.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from confession.config import settings
from confession.debug_events import DebugBroadcaster
from confession.errors import ListenError, StateError, TransportError, ValidationError
from confession.identity import IdentityProvider
from confession.invitations.repository import InvitationRepository
from confession.models.invitation import CallInvitation, InvitationStatus

log = logging.getLogger("confession.invitations.controller")


class ConfessorState(str, Enum):
    IDLE = "IDLE"
    SENDING = "SENDING"
    WAITING = "WAITING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    TIMED_OUT = "TIMED_OUT"
    CANCELED = "CANCELED"
    ERROR = "ERROR"


class InvitationOutcome(str, Enum):
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    TIMED_OUT = "timed_out"
    CANCELED = "canceled"
    LISTEN_ERROR = "listen_error"


_OUTCOME_STATES = {
    InvitationOutcome.ACCEPTED: ConfessorState.ACCEPTED,
    InvitationOutcome.REJECTED: ConfessorState.REJECTED,
    InvitationOutcome.TIMED_OUT: ConfessorState.TIMED_OUT,
    InvitationOutcome.CANCELED: ConfessorState.CANCELED,
    InvitationOutcome.LISTEN_ERROR: ConfessorState.ERROR,
}

STATUS_MESSAGES = {
    ConfessorState.IDLE: "",
    ConfessorState.SENDING: "Sending invitation...",
    ConfessorState.WAITING: "Invitation sent. Waiting for the priest to respond.",
    ConfessorState.ACCEPTED: "The priest accepted. Connecting your call.",
    ConfessorState.REJECTED: "The priest declined the invitation.",
    ConfessorState.TIMED_OUT: "The priest did not respond in time.",
    ConfessorState.CANCELED: "The invitation was cancelled.",
    ConfessorState.ERROR: "Something went wrong with the invitation. Please try again.",
}


@dataclass(frozen=True)
class InvitationResult:
    """Terminal outcome of one invitation."""

    outcome: InvitationOutcome
    invitation: CallInvitation
    error: Optional[Exception] = None

    @property
    def state(self) -> ConfessorState:
        return _OUTCOME_STATES[self.outcome]

    @property
    def message(self) -> str:
        return STATUS_MESSAGES[self.state]

    @property
    def room_id(self) -> str:
        return self.invitation.room_id


StateObserver = Callable[[ConfessorState, Optional[InvitationResult]], None]


class _Race:
    """Single-assignment result cell for one response race."""

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self.future: asyncio.Future[InvitationResult] = loop.create_future()
        self.subscription = None
        self.timer: asyncio.TimerHandle | None = None
        self.timer_fired = False

    @property
    def done(self) -> bool:
        return self.future.done()

    def teardown(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
        if self.subscription is not None:
            self.subscription.cancel()

    def resolve(self, result: InvitationResult) -> bool:
        """Settle the race.  Returns False if it was already settled."""
        if self.future.done():
            return False
        self.teardown()
        self.future.set_result(result)
        return True


class InvitationController:
    """Sends one invitation at a time and resolves its outcome.

    Typical use::

        controller = InvitationController(repository, identity)
        invitation = await controller.send_invitation(priest_id)
        result = await controller.await_response(invitation)
        if result.outcome is InvitationOutcome.ACCEPTED:
            await start_call(result.room_id, is_caller=True)
    """

    def __init__(
        self,
        repository: InvitationRepository,
        identity: IdentityProvider,
        timeout: float | None = None,
        display_name: str | None = None,
    ) -> None:
        self._repo = repository
        self._identity = identity
        self._timeout = timeout if timeout is not None else settings.invitation_timeout_seconds
        self._display_name = display_name or settings.anonymous_display_name

        self._state = ConfessorState.IDLE
        self._invitation: CallInvitation | None = None
        self._race: _Race | None = None
        self._sending: asyncio.Future | None = None
        self._cancel_requested = False
        self._last_result: InvitationResult | None = None
        self._observers: list[StateObserver] = []
        self._debug_broadcaster: DebugBroadcaster | None = None

    # ── Observation ────────────────────────────────────────────

    @property
    def state(self) -> ConfessorState:
        return self._state

    @property
    def invitation(self) -> CallInvitation | None:
        """The invitation currently in flight, if any."""
        return self._invitation

    @property
    def last_result(self) -> InvitationResult | None:
        return self._last_result

    @property
    def timeout(self) -> float:
        return self._timeout

    def add_observer(self, observer: StateObserver) -> Callable[[], None]:
        """Register a state observer.  Returns a function that removes it."""
        self._observers.append(observer)

        def remove() -> None:
            if observer in self._observers:
                self._observers.remove(observer)

        return remove

    def attach_broadcaster(self, broadcaster: DebugBroadcaster) -> None:
        self._debug_broadcaster = broadcaster

    def _set_state(self, state: ConfessorState, result: InvitationResult | None = None) -> None:
        previous, self._state = self._state, state
        log.info("Confessor state %s → %s", previous.value, state.value)
        if self._debug_broadcaster:
            data = {"from": previous.value, "to": state.value}
            if self._invitation is not None:
                data["invitation_id"] = self._invitation.invitation_id
            self._debug_broadcaster.emit("transition", state.value, data)
        for observer in list(self._observers):
            observer(state, result)

    def _finish(self, result: InvitationResult) -> bool:
        """Report a terminal state and return to IDLE.  First caller wins."""
        current = self._invitation
        if current is None or current.invitation_id != result.invitation.invitation_id:
            return False
        self._last_result = result
        self._set_state(result.state, result)
        self._invitation = None
        self._set_state(ConfessorState.IDLE, result)
        return True

    # ── Operations ─────────────────────────────────────────────

    async def send_invitation(
        self,
        priest_id: str,
        confessor_id: str | None = None,
        display_name: str | None = None,
    ) -> CallInvitation:
        """Create a PENDING invitation addressed to ``priest_id``.

        Raises ``TransportError`` if the write fails; nothing is listened to
        until the record exists.
        """
        if self._state is not ConfessorState.IDLE:
            raise StateError(f"Cannot send an invitation while {self._state.value}")
        if not priest_id:
            raise ValidationError("priestId is required")
        confessor_id = confessor_id or self._identity.require_user_id()

        invitation = CallInvitation(
            invitation_id=str(uuid.uuid4()),
            room_id=str(uuid.uuid4()),
            confessor_id=confessor_id,
            confessor_display_name=display_name or self._display_name,
            priest_id=priest_id,
            status=InvitationStatus.PENDING.value,
        )
        self._invitation = invitation
        self._sending = asyncio.get_running_loop().create_future()
        self._cancel_requested = False
        cancel_error: TransportError | None = None
        self._set_state(ConfessorState.SENDING)
        try:
            try:
                await self._repo.create(invitation)
            except TransportError as e:
                log.error("Failed to send invitation to %s: %s", priest_id, e)
                self._invitation = None
                self._set_state(ConfessorState.ERROR)
                self._set_state(ConfessorState.IDLE)
                raise

            if self._cancel_requested:
                # The record now exists, so it can be expired
                log.info("Invitation %s cancelled while sending", invitation.invitation_id)
                try:
                    await self._mark_canceled(invitation)
                except TransportError as e:
                    cancel_error = e
                raise StateError(f"Invitation {invitation.invitation_id} was cancelled while sending")

            self._set_state(ConfessorState.WAITING)
            return invitation
        finally:
            sending, self._sending = self._sending, None
            sending.set_result(cancel_error)

    async def await_response(
        self,
        invitation: CallInvitation | None = None,
        timeout: float | None = None,
    ) -> InvitationResult:
        """Race the priest's response against the timeout.

        Always returns exactly one ``InvitationResult``.
        """
        invitation = invitation or self._invitation
        if invitation is None or self._invitation is None:
            raise StateError("No invitation is waiting for a response")
        if invitation.invitation_id != self._invitation.invitation_id:
            raise StateError(f"Invitation {invitation.invitation_id} is not the one in flight")
        if self._race is not None:
            raise StateError("Already waiting for a response")

        timeout = self._timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        race = _Race(loop)
        self._race = race

        def on_change(updated: CallInvitation | None) -> None:
            if race.done:
                return
            if updated is None:
                log.info("Invitation %s disappeared", invitation.invitation_id)
                race.resolve(InvitationResult(InvitationOutcome.CANCELED, invitation))
                return
            status = updated.known_status
            if status is InvitationStatus.PENDING:
                return
            if status is InvitationStatus.ACCEPTED:
                race.resolve(InvitationResult(InvitationOutcome.ACCEPTED, updated))
            elif status is InvitationStatus.REJECTED:
                race.resolve(InvitationResult(InvitationOutcome.REJECTED, updated))
            elif status in (InvitationStatus.MISSED, InvitationStatus.EXPIRED):
                race.resolve(InvitationResult(InvitationOutcome.TIMED_OUT, updated))
            else:
                log.warning(
                    "Invitation %s has unrecognized status %r",
                    invitation.invitation_id, updated.status,
                )
                race.resolve(InvitationResult(InvitationOutcome.CANCELED, updated))

        def on_cancelled(error: ListenError) -> None:
            log.error("Status listener for %s cancelled: %s", invitation.invitation_id, error)
            race.resolve(InvitationResult(InvitationOutcome.LISTEN_ERROR, invitation, error))

        def on_timeout() -> None:
            if race.done:
                return
            race.timer_fired = True
            log.info("Invitation %s timed out after %.1fs", invitation.invitation_id, timeout)
            race.resolve(InvitationResult(InvitationOutcome.TIMED_OUT, invitation))

        race.subscription = self._repo.subscribe_status(invitation, on_change, on_cancelled)
        race.timer = loop.call_later(timeout, on_timeout)

        try:
            result = await race.future
        except asyncio.CancelledError:
            race.teardown()
            log.info("await_response for %s cancelled", invitation.invitation_id)
            self._finish(InvitationResult(InvitationOutcome.CANCELED, invitation))
            raise
        finally:
            if self._race is race:
                self._race = None

        if race.timer_fired:
            result = await self._expire(result)
        self._finish(result)
        return result

    async def invite(self, priest_id: str, timeout: float | None = None) -> InvitationResult:
        """``send_invitation`` followed by ``await_response``."""
        invitation = await self.send_invitation(priest_id)
        return await self.await_response(invitation, timeout)

    async def cancel(self, invitation: CallInvitation | None = None) -> None:
        """Abort the invitation in flight and mark it EXPIRED.

        Idempotent once the invitation is terminal.  A failed write is
        raised after local state has returned to IDLE.  While the record is
        still being created, cancel waits for the write and the pending
        ``send_invitation`` raises ``StateError``.
        """
        invitation = invitation or self._invitation
        if invitation is None:
            log.info("cancel(): no invitation in flight")
            return

        current = self._invitation
        sending = self._sending
        if sending is not None and current is not None and invitation.invitation_id == current.invitation_id:
            self._cancel_requested = True
            error = await asyncio.shield(sending)
            if error is not None:
                raise error
            return

        race = self._race
        if race is not None:
            if race.done:
                return
            race.resolve(InvitationResult(InvitationOutcome.CANCELED, invitation))

        await self._mark_canceled(invitation)

    # ── Internals ──────────────────────────────────────────────

    async def _mark_canceled(self, invitation: CallInvitation) -> None:
        try:
            await self._repo.transition(invitation, InvitationStatus.EXPIRED)
        except StateError:
            log.info("Invitation %s already terminal; nothing to cancel", invitation.invitation_id)
        except TransportError as e:
            log.error("Failed to mark invitation %s EXPIRED: %s", invitation.invitation_id, e)
            raise
        finally:
            self._finish(InvitationResult(InvitationOutcome.CANCELED, invitation))

    async def _expire(self, result: InvitationResult) -> InvitationResult:
        """Best-effort EXPIRED write after the timer won the race.

        If the store had already committed a priest response, the store is
        authoritative and that response becomes the outcome.
        """
        invitation = result.invitation
        try:
            await self._repo.transition(invitation, InvitationStatus.EXPIRED)
            return result
        except TransportError as e:
            log.warning("Could not mark %s EXPIRED after timeout: %s", invitation.invitation_id, e)
            return result
        except StateError:
            pass

        try:
            stored = await self._repo.get(invitation.priest_id, invitation.invitation_id)
        except TransportError as e:
            log.warning("Could not re-read %s after timeout: %s", invitation.invitation_id, e)
            return result
        status = stored.known_status if stored else None
        if status is InvitationStatus.ACCEPTED:
            log.info("Invitation %s was accepted before it expired", invitation.invitation_id)
            return InvitationResult(InvitationOutcome.ACCEPTED, stored)
        if status is InvitationStatus.REJECTED:
            return InvitationResult(InvitationOutcome.REJECTED, stored)
        return result
