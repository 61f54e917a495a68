"""Pydantic model for the persisted invitation record."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

log = logging.getLogger("confession.models.invitation")


class InvitationStatus(str, Enum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    MISSED = "MISSED"      # priest never responded
    EXPIRED = "EXPIRED"    # confessor cancelled or timed out waiting

    @property
    def is_terminal(self) -> bool:
        return self is not InvitationStatus.PENDING

    @classmethod
    def parse(cls, value: Any) -> Optional["InvitationStatus"]:
        """Return the status for ``value``, or None when unrecognized."""
        try:
            return cls(value)
        except ValueError:
            return None


TERMINAL_STATUSES = frozenset(s for s in InvitationStatus if s.is_terminal)


class CallInvitation(BaseModel):
    """One confessor → priest call request.

    ``status`` is kept as the raw stored string so that a record carrying an
    unknown status still parses; use ``known_status`` to interpret it.
    Field aliases match the stored record layout.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    invitation_id: str = Field("", alias="invitationId")
    room_id: str = Field("", alias="roomId")
    confessor_id: str = Field("", alias="confessorId")
    confessor_display_name: str = Field("Anonymous Confessor", alias="confessorDisplayName")
    priest_id: str = Field("", alias="priestId")
    status: str = InvitationStatus.PENDING.value
    created_at: Optional[int] = Field(None, alias="timestamp")
    responded_at: Optional[int] = Field(None, alias="priestRespondedTimestamp")

    @property
    def known_status(self) -> Optional[InvitationStatus]:
        return InvitationStatus.parse(self.status)

    @property
    def is_pending(self) -> bool:
        return self.status == InvitationStatus.PENDING.value

    def sort_key(self) -> tuple[int, str]:
        """Presentation order: oldest first, invitation id breaks ties."""
        return (self.created_at or 0, self.invitation_id)

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    @classmethod
    def from_wire(cls, data: Any, key: str = "") -> Optional["CallInvitation"]:
        """Parse a stored record.  Returns None for absent or malformed data."""
        if not isinstance(data, dict):
            return None
        if key and not data.get("invitationId"):
            data = {**data, "invitationId": key}
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            log.warning("Malformed invitation record %s: %s", key or "?", e)
            return None
