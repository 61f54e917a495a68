"""Priest-side invitation directory listener.

Watches ``{invitations_root}/{priestId}`` and presents exactly one pending
invitation at a time.  All mutations of the pending set and of the
presented invitation happen in store callbacks on the event loop, so they
are serialized without a lock.

Presentation is deferred by one loop turn after an arrival.  A burst of
arrivals (including the replay of existing records on ``start``) is
therefore settled before anything is presented, and the oldest record wins
by ``(createdAt, invitationId)``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Optional

from confession.errors import ListenError, StateError, TransportError, ValidationError
from confession.identity import IdentityProvider
from confession.invitations.repository import InvitationRepository
from confession.models.invitation import CallInvitation, InvitationStatus
from confession.store.base import ChildEvent, ChildEventType, Subscription

log = logging.getLogger("confession.invitations.listener")

PresentCallback = Callable[[Optional[CallInvitation]], None]
ErrorCallback = Callable[[Exception], None]
StartCall = Callable[[str, bool, Optional[str]], Awaitable[Any]]


class InvitationDirectoryListener:
    """Queue of pending invitations for one signed-in priest.

    ``on_present`` is called with the invitation to show, or None when the
    presentation is cleared.  ``start_call(room_id, is_caller, peer_name)``
    is awaited after an accept succeeds.
    """

    def __init__(
        self,
        repository: InvitationRepository,
        identity: IdentityProvider | None = None,
        on_present: PresentCallback | None = None,
        on_error: ErrorCallback | None = None,
        start_call: StartCall | None = None,
    ) -> None:
        self._repo = repository
        self._identity = identity
        self._on_present = on_present
        self._on_error = on_error
        self._start_call = start_call

        self._priest_id: str | None = None
        self._subscription: Subscription | None = None
        self._pending: dict[str, CallInvitation] = {}
        self._presented: CallInvitation | None = None
        self._held: set[str] = set()
        self._responding: set[str] = set()
        self._present_scheduled = False
        self.active_call: Any = None

    # ── Observation ────────────────────────────────────────────

    @property
    def running(self) -> bool:
        return self._subscription is not None and self._subscription.active

    @property
    def priest_id(self) -> str | None:
        return self._priest_id

    @property
    def presented(self) -> CallInvitation | None:
        return self._presented

    @property
    def pending(self) -> list[CallInvitation]:
        """Known pending invitations, oldest first."""
        return sorted(self._pending.values(), key=CallInvitation.sort_key)

    @property
    def held(self) -> list[CallInvitation]:
        """Invitations whose response failed and await an explicit retry."""
        return [self._pending[i] for i in sorted(self._held) if i in self._pending]

    # ── Lifecycle ──────────────────────────────────────────────

    def start(self, priest_id: str | None = None) -> Subscription:
        if self.running:
            raise StateError(f"Listener already running for priest {self._priest_id}")
        if priest_id is None and self._identity is not None:
            priest_id = self._identity.require_user_id()
        if not priest_id:
            raise ValidationError("priestId is required")

        self._reset()
        self._priest_id = priest_id
        self._subscription = self._repo.subscribe_namespace(
            priest_id, self._on_event, self._on_cancelled
        )
        log.info("Listening for invitations to priest %s", priest_id)
        return self._subscription

    def stop(self) -> None:
        """Detach the listener and forget local state.  Safe to call twice."""
        if self._subscription is not None:
            self._subscription.cancel()
            self._subscription = None
            log.info("Stopped listening for invitations to priest %s", self._priest_id)
        had_presented = self._presented is not None
        self._reset()
        if had_presented:
            self._notify_present(None)

    def _reset(self) -> None:
        self._pending.clear()
        self._held.clear()
        self._responding.clear()
        self._presented = None
        self._present_scheduled = False

    # ── Store events ───────────────────────────────────────────

    def _on_event(self, event: ChildEvent) -> None:
        if event.type is ChildEventType.REMOVED:
            self._drop(event.key, "removed")
            return

        invitation = CallInvitation.from_wire(event.value, event.key)
        if invitation is None:
            self._drop(event.key, "malformed")
            return
        if not invitation.is_pending:
            self._drop(event.key, invitation.status)
            return

        if event.key not in self._pending:
            log.info(
                "Invitation %s from %s queued",
                event.key, invitation.confessor_display_name,
            )
        self._pending[event.key] = invitation
        if self._presented is not None and self._presented.invitation_id == event.key:
            self._presented = invitation
        self._schedule_present()

    def _on_cancelled(self, error: ListenError) -> None:
        log.error("Invitation listener for priest %s cancelled: %s", self._priest_id, error)
        self._subscription = None
        had_presented = self._presented is not None
        self._reset()
        if had_presented:
            self._notify_present(None)
        if self._on_error is not None:
            self._on_error(error)

    # ── Presentation ───────────────────────────────────────────

    def _drop(self, invitation_id: str, reason: str) -> None:
        known = self._pending.pop(invitation_id, None)
        self._held.discard(invitation_id)
        if known is None:
            return
        log.info("Invitation %s left the queue (%s)", invitation_id, reason)
        if self._presented is not None and self._presented.invitation_id == invitation_id:
            self._presented = None
            self._notify_present(None)
        self._schedule_present()

    def _schedule_present(self) -> None:
        if self._present_scheduled or self._presented is not None:
            return
        self._present_scheduled = True
        asyncio.get_running_loop().call_soon(self._present_next)

    def _present_next(self) -> None:
        self._present_scheduled = False
        if not self.running or self._presented is not None or self._held:
            return
        candidates = [
            inv for key, inv in self._pending.items() if key not in self._responding
        ]
        if not candidates:
            return
        self._presented = min(candidates, key=CallInvitation.sort_key)
        log.info("Presenting invitation %s", self._presented.invitation_id)
        self._notify_present(self._presented)

    def _notify_present(self, invitation: CallInvitation | None) -> None:
        if self._on_present is not None:
            self._on_present(invitation)

    # ── Priest action ──────────────────────────────────────────

    async def respond(self, invitation: CallInvitation, accept: bool) -> CallInvitation:
        """Accept or reject ``invitation``.

        On a failed write the invitation is held: it is not presented again
        until ``respond`` is retried or ``release`` is called.
        """
        if not invitation.invitation_id or not invitation.room_id:
            raise ValidationError("Cannot respond to an invitation without a roomId")
        if not invitation.priest_id:
            raise ValidationError("Cannot respond to an invitation without a priestId")
        invitation_id = invitation.invitation_id
        if invitation_id in self._responding:
            raise StateError(f"Already responding to invitation {invitation_id}")

        status = InvitationStatus.ACCEPTED if accept else InvitationStatus.REJECTED
        self._responding.add(invitation_id)
        try:
            updated = await self._repo.transition(invitation, status)
        except TransportError as e:
            log.error("Failed to %s invitation %s: %s",
                      "accept" if accept else "reject", invitation_id, e)
            self._hold(invitation_id)
            raise
        finally:
            self._responding.discard(invitation_id)

        self._drop(invitation_id, status.value)
        if accept and self._start_call is not None:
            result = self._start_call(
                invitation.room_id, False, invitation.confessor_display_name
            )
            if inspect.isawaitable(result):
                result = await result
            self.active_call = result
        return updated

    def _hold(self, invitation_id: str) -> None:
        self._held.add(invitation_id)
        if self._presented is not None and self._presented.invitation_id == invitation_id:
            self._presented = None
            self._notify_present(None)

    def release(self, invitation: CallInvitation) -> None:
        """Return a held invitation to the queue."""
        if invitation.invitation_id not in self._held:
            return
        self._held.discard(invitation.invitation_id)
        log.info("Invitation %s released back to the queue", invitation.invitation_id)
        self._schedule_present()
