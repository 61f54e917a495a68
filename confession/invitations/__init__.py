"""Invitation records and the two sides of the matching protocol."""

from .controller import (
    STATUS_MESSAGES,
    ConfessorState,
    InvitationController,
    InvitationOutcome,
    InvitationResult,
)
from .listener import InvitationDirectoryListener
from .repository import InvitationRepository

__all__ = [
    "STATUS_MESSAGES",
    "ConfessorState",
    "InvitationController",
    "InvitationDirectoryListener",
    "InvitationOutcome",
    "InvitationRepository",
    "InvitationResult",
]
