"""Error taxonomy shared by the stores, controllers and call sessions."""

from __future__ import annotations


class ConfessionError(Exception):
    """Base error for the confession core."""


class TransportError(ConfessionError):
    """A store or network call failed."""

    def __init__(self, message: str, path: str = "") -> None:
        super().__init__(message)
        self.path = path


class ListenError(ConfessionError):
    """A subscription was cancelled or revoked by the backing store."""

    def __init__(self, message: str, path: str = "") -> None:
        super().__init__(message)
        self.path = path


class ValidationError(ConfessionError):
    """A required identifier was missing before an operation."""


class StateError(ConfessionError):
    """The operation is not allowed in the current state."""
