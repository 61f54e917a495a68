"""Data models for the confession core."""

from .invitation import TERMINAL_STATUSES, CallInvitation, InvitationStatus
from .priest import PriestProfile
from .signal import ChatMessage, IceCandidate, SignalMessage, SignalType

__all__ = [
    "TERMINAL_STATUSES",
    "CallInvitation",
    "ChatMessage",
    "IceCandidate",
    "InvitationStatus",
    "PriestProfile",
    "SignalMessage",
    "SignalType",
]
