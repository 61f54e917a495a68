"""Abstract store contracts consumed by the confession core.

Two collaborators back the system:

  RealtimeStore   a tree-structured store with push keys, value listeners
                  and child-added/changed/removed event streams.  Carries
                  invitations and room signaling.
  DocumentStore   a collection/document store with equality and
                  array-contains queries.  Carries user profiles and
                  priest availability.

Listeners are callback based, like the vendor SDKs they model.  Every
subscribe call returns a ``Subscription`` handle; once ``cancel()`` has
returned, no further callback is delivered for it.
"""

from __future__ import annotations

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable

from confession.errors import ListenError, StateError, ValidationError
from confession.store.push_ids import generate_push_id

log = logging.getLogger("confession.store")

# Placeholder resolved to the store's clock (milliseconds) at write time.
SERVER_TIMESTAMP: dict[str, str] = {".sv": "timestamp"}

_FORBIDDEN_KEY_CHARS = re.compile(r"[.#$\[\]]")


def split_path(path: str) -> list[str]:
    """Split ``a/b/c`` into segments, ignoring leading/trailing slashes."""
    return [seg for seg in path.strip("/").split("/") if seg]


def join_path(*parts: str) -> str:
    """Join path segments, rejecting empty or malformed keys."""
    segments: list[str] = []
    for part in parts:
        if not part:
            raise ValidationError(f"Empty path segment in {parts!r}")
        for seg in split_path(part):
            if _FORBIDDEN_KEY_CHARS.search(seg):
                raise ValidationError(f"Invalid key {seg!r} in path")
            segments.append(seg)
    return "/".join(segments)


class ChildEventType(str, Enum):
    ADDED = "added"
    CHANGED = "changed"
    REMOVED = "removed"


@dataclass(frozen=True)
class ChildEvent:
    """One child-level change under a subscribed path.

    For REMOVED events ``value`` is the last known value of the child.
    """

    type: ChildEventType
    key: str
    value: Any


ValueCallback = Callable[[Any], None]
ChildCallback = Callable[[ChildEvent], None]
CancelCallback = Callable[[ListenError], None]


class Subscription:
    """Handle for a live listener.

    ``cancel()`` is idempotent.  Usable as a context manager so a listener
    scoped to a block is always detached::

        with store.subscribe_value(path, on_value) as sub:
            ...
    """

    def __init__(self, path: str, on_cancel: Callable[[], None] | None = None) -> None:
        self.path = path
        self._on_cancel = on_cancel
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        on_cancel, self._on_cancel = self._on_cancel, None
        if on_cancel is not None:
            on_cancel()

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.cancel()

    def __repr__(self) -> str:
        state = "active" if self._active else "cancelled"
        return f"<Subscription {self.path} {state}>"


class ListenerSlot:
    """Holds at most one live subscription per key.

    ``attach`` refuses an occupied key unless ``replace=True``, in which case
    the previous subscription is cancelled before the factory creates the
    new one, so the two never overlap.
    """

    def __init__(self, name: str) -> None:
        self._name = name
        self._subs: dict[str, Subscription] = {}

    def attach(
        self,
        key: str,
        subscribe: Callable[[], Subscription],
        replace: bool = False,
    ) -> Subscription:
        current = self._subs.get(key)
        if current is not None and current.active:
            if not replace:
                raise StateError(
                    f"{self._name}: listener already attached for {key!r}"
                )
            current.cancel()
            log.info("%s: replaced listener for %s", self._name, key)
        sub = subscribe()
        self._subs[key] = sub
        return sub

    def detach(self, key: str) -> bool:
        """Cancel the subscription for ``key``.  Returns False if none was live."""
        sub = self._subs.pop(key, None)
        if sub is None or not sub.active:
            return False
        sub.cancel()
        return True

    def detach_all(self) -> None:
        for key in list(self._subs):
            self.detach(key)

    def get(self, key: str) -> Subscription | None:
        sub = self._subs.get(key)
        return sub if sub is not None and sub.active else None

    def __contains__(self, key: str) -> bool:
        return self.get(key) is not None

    def __len__(self) -> int:
        return sum(1 for sub in self._subs.values() if sub.active)


class RealtimeStore(ABC):
    """Tree-structured realtime store.

    Implementations raise ``TransportError`` when a read or write fails and
    report listener revocation through the ``on_cancelled`` callback with a
    ``ListenError``.
    """

    @abstractmethod
    async def get(self, path: str) -> Any:
        """Return the value at ``path`` or None when absent."""

    @abstractmethod
    async def set(self, path: str, value: Any) -> None:
        """Replace the value at ``path``.  ``None`` deletes it."""

    @abstractmethod
    async def update(self, path: str, fields: dict[str, Any]) -> None:
        """Merge ``fields`` into the node at ``path`` atomically."""

    @abstractmethod
    async def transaction(
        self, path: str, update_fn: Callable[[Any], Any]
    ) -> tuple[bool, Any]:
        """Atomically read-modify-write the value at ``path``.

        ``update_fn`` receives the current value (None if absent) and returns
        the new value, or None to abort.  Returns ``(committed, value)``
        where ``value`` is what the store holds afterwards.
        """

    async def push(self, path: str, value: Any) -> str:
        """Append ``value`` under a new chronologically ordered key."""
        key = generate_push_id()
        await self.set(join_path(path, key), value)
        return key

    @abstractmethod
    def subscribe_value(
        self,
        path: str,
        on_value: ValueCallback,
        on_cancelled: CancelCallback | None = None,
    ) -> Subscription:
        """Deliver the current value, then every change of it."""

    @abstractmethod
    def subscribe_child_events(
        self,
        path: str,
        on_event: ChildCallback,
        on_cancelled: CancelCallback | None = None,
        order_by: str | None = None,
    ) -> Subscription:
        """Deliver existing children as ADDED, then child-level changes.

        Existing children are replayed in ``(child[order_by], key)`` order,
        or key order when ``order_by`` is None.
        """


class DocumentStore(ABC):
    """Collection/document store for profiles."""

    @abstractmethod
    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        """Return the document fields or None when absent."""

    @abstractmethod
    async def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None:
        """Write a document, replacing it unless ``merge`` is set."""

    @abstractmethod
    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        """Merge fields into an existing document.

        Raises ``TransportError`` when the document does not exist.
        """

    @abstractmethod
    async def query(
        self,
        collection: str,
        equals: dict[str, Any] | None = None,
        array_contains: tuple[str, Any] | None = None,
    ) -> list[tuple[str, dict[str, Any]]]:
        """Return ``(doc_id, fields)`` pairs matching every filter."""
