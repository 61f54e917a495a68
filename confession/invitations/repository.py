"""Invitation records in the realtime store.

Records live at ``{invitations_root}/{priestId}/{invitationId}``.  Status
changes go through ``transition``, a conditional write that only commits
while the stored status is still PENDING.  A terminal status is therefore
never overwritten, whichever side writes last.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from confession.config import settings
from confession.errors import StateError
from confession.models.invitation import CallInvitation, InvitationStatus
from confession.store.base import (
    SERVER_TIMESTAMP,
    CancelCallback,
    ChildCallback,
    RealtimeStore,
    Subscription,
    join_path,
)

log = logging.getLogger("confession.invitations.repository")

# Statuses that record when the priest side acted
_RESPONSE_STATUSES = {
    InvitationStatus.ACCEPTED,
    InvitationStatus.REJECTED,
    InvitationStatus.MISSED,
}


class InvitationRepository:
    """Reads, writes and subscriptions for invitation records."""

    def __init__(self, store: RealtimeStore, root: str | None = None) -> None:
        self._store = store
        self._root = root or settings.invitations_root

    @property
    def store(self) -> RealtimeStore:
        return self._store

    def namespace_path(self, priest_id: str) -> str:
        return join_path(self._root, priest_id)

    def record_path(self, priest_id: str, invitation_id: str) -> str:
        return join_path(self._root, priest_id, invitation_id)

    async def create(self, invitation: CallInvitation) -> None:
        """Write a new PENDING record.  The store assigns ``timestamp``."""
        if not invitation.is_pending:
            raise StateError(
                f"New invitations must be PENDING, got {invitation.status}"
            )
        record = invitation.to_wire()
        record["timestamp"] = SERVER_TIMESTAMP
        record["priestRespondedTimestamp"] = None
        path = self.record_path(invitation.priest_id, invitation.invitation_id)
        await self._store.set(path, record)
        log.info(
            "Invitation %s created for priest %s (room=%s)",
            invitation.invitation_id, invitation.priest_id, invitation.room_id,
        )

    async def get(self, priest_id: str, invitation_id: str) -> CallInvitation | None:
        value = await self._store.get(self.record_path(priest_id, invitation_id))
        return CallInvitation.from_wire(value, invitation_id)

    async def transition(
        self, invitation: CallInvitation, new_status: InvitationStatus
    ) -> CallInvitation:
        """Move a PENDING record to ``new_status``.

        Raises ``StateError`` when the record is absent or already terminal,
        ``TransportError`` when the write fails.
        """
        if not new_status.is_terminal:
            raise StateError("Invitations never transition back to PENDING")

        path = self.record_path(invitation.priest_id, invitation.invitation_id)
        seen: dict[str, Any] = {}

        def apply(current: Any) -> Any:
            if not isinstance(current, dict):
                seen["status"] = None
                return None
            if current.get("status") != InvitationStatus.PENDING.value:
                seen["status"] = current.get("status")
                return None
            updated = dict(current)
            updated["status"] = new_status.value
            if new_status in _RESPONSE_STATUSES:
                updated["priestRespondedTimestamp"] = SERVER_TIMESTAMP
            return updated

        committed, value = await self._store.transaction(path, apply)
        if not committed:
            found = seen.get("status") or "absent"
            log.info(
                "Invitation %s not moved to %s: already %s",
                invitation.invitation_id, new_status.value, found,
            )
            raise StateError(
                f"Invitation {invitation.invitation_id} is {found}; "
                f"cannot move to {new_status.value}"
            )

        log.info("Invitation %s → %s", invitation.invitation_id, new_status.value)
        updated = CallInvitation.from_wire(value, invitation.invitation_id)
        return updated or invitation.model_copy(update={"status": new_status.value})

    def subscribe_status(
        self,
        invitation: CallInvitation,
        on_change: Callable[[CallInvitation | None], None],
        on_cancelled: CancelCallback | None = None,
    ) -> Subscription:
        """Watch one record.  ``on_change`` gets None when it is absent or unreadable."""
        invitation_id = invitation.invitation_id

        def on_value(value: Any) -> None:
            on_change(CallInvitation.from_wire(value, invitation_id))

        return self._store.subscribe_value(
            self.record_path(invitation.priest_id, invitation_id),
            on_value,
            on_cancelled,
        )

    def subscribe_namespace(
        self,
        priest_id: str,
        on_event: ChildCallback,
        on_cancelled: CancelCallback | None = None,
    ) -> Subscription:
        """Watch every record addressed to ``priest_id``, oldest first."""
        return self._store.subscribe_child_events(
            self.namespace_path(priest_id),
            on_event,
            on_cancelled,
            order_by="timestamp",
        )
