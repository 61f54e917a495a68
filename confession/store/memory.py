"""In-process store implementations.

``InMemoryRealtimeStore`` reproduces the delivery semantics the core relies
on from the hosted realtime store:

  - listeners fire asynchronously, via ``loop.call_soon``, in write order
  - a new value listener first receives the current value
  - a new child listener first receives every existing child as ADDED
  - nothing is delivered to a subscription after ``cancel()`` returns

It also supports failure injection (``fail_next_write``), listener
revocation (``revoke``) and an artificial write latency, which is how the
test-suite exercises transport and listen errors.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from abc import ABC, abstractmethod
from typing import Any, Callable

from confession.errors import ListenError, TransportError
from confession.store import tree
from confession.store.base import (
    CancelCallback,
    ChildCallback,
    ChildEvent,
    ChildEventType,
    DocumentStore,
    RealtimeStore,
    Subscription,
    ValueCallback,
    split_path,
)

log = logging.getLogger("confession.store.memory")


class _Listener(ABC):
    """One registered listener on a path."""

    def __init__(
        self,
        store: "InMemoryRealtimeStore",
        path: str,
        on_cancelled: CancelCallback | None,
    ) -> None:
        self.segments = split_path(path)
        self.subscription = Subscription(path, on_cancel=lambda: store._remove(self))
        self._on_cancelled = on_cancelled
        self._loop = asyncio.get_running_loop()

    def _dispatch(self, fn: Callable[..., None], *args: Any) -> None:
        self._loop.call_soon(self._deliver, fn, args)

    def _deliver(self, fn: Callable[..., None], args: tuple) -> None:
        if self.subscription.active:
            fn(*args)

    def revoke(self, error: ListenError) -> None:
        self._loop.call_soon(self._deliver_cancel, error)

    def _deliver_cancel(self, error: ListenError) -> None:
        if not self.subscription.active:
            return
        self.subscription.cancel()
        if self._on_cancelled is not None:
            self._on_cancelled(error)

    @abstractmethod
    def initial(self, current: Any) -> None:
        """Deliver the current value when the listener is registered."""

    @abstractmethod
    def notify(self, before: Any, after: Any) -> None:
        """Deliver the change between two snapshots of the listened node."""


class _ValueListener(_Listener):
    def __init__(self, store, path, on_value: ValueCallback, on_cancelled) -> None:
        super().__init__(store, path, on_cancelled)
        self._on_value = on_value

    def initial(self, current: Any) -> None:
        self._dispatch(self._on_value, copy.deepcopy(current))

    def notify(self, before: Any, after: Any) -> None:
        if before != after:
            self._dispatch(self._on_value, copy.deepcopy(after))


class _ChildListener(_Listener):
    def __init__(
        self, store, path, on_event: ChildCallback, on_cancelled, order_by: str | None
    ) -> None:
        super().__init__(store, path, on_cancelled)
        self._on_event = on_event
        self._order_by = order_by

    def initial(self, current: Any) -> None:
        for key, child in tree.ordered_children(current, self._order_by):
            self._dispatch(
                self._on_event,
                ChildEvent(ChildEventType.ADDED, key, copy.deepcopy(child)),
            )

    def notify(self, before: Any, after: Any) -> None:
        for event in tree.diff_children(before, after):
            self._dispatch(self._on_event, event)


class InMemoryRealtimeStore(RealtimeStore):
    """Realtime tree store held in process memory."""

    def __init__(
        self,
        latency: float = 0.0,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self._root: Any = None
        self._listeners: list[_Listener] = []
        self._write_failures: list[TransportError] = []
        self._latency = latency
        self._clock = clock or (lambda: int(time.time() * 1000))
        self._last_timestamp = 0

    # ── Test and dev hooks ─────────────────────────────────────

    def fail_next_write(self, message: str = "simulated transport failure", count: int = 1) -> None:
        """Make the next ``count`` writes raise ``TransportError``."""
        for _ in range(count):
            self._write_failures.append(TransportError(message))

    def revoke(self, path: str, message: str = "permission denied") -> int:
        """Cancel every listener at or below ``path`` with a ``ListenError``."""
        segments = split_path(path)
        revoked = [
            lst for lst in self._listeners
            if lst.segments[: len(segments)] == segments
        ]
        for lst in revoked:
            self._listeners.remove(lst)
            lst.revoke(ListenError(message, lst.subscription.path))
        log.info("Revoked %d listener(s) under %s", len(revoked), path or "/")
        return len(revoked)

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def snapshot(self, path: str = "") -> Any:
        """Synchronous read for assertions."""
        return copy.deepcopy(tree.read(self._root, split_path(path)))

    # ── Internals ──────────────────────────────────────────────

    def _now(self) -> int:
        # Server timestamps are strictly increasing
        ts = max(self._clock(), self._last_timestamp + 1)
        self._last_timestamp = ts
        return ts

    async def _before_write(self, path: str) -> None:
        if self._latency:
            await asyncio.sleep(self._latency)
        if self._write_failures:
            error = self._write_failures.pop(0)
            error.path = path
            log.warning("Injected write failure at %s: %s", path, error)
            raise error

    def _commit(self, new_root: Any, touched: list[list[str]]) -> None:
        old_root, self._root = self._root, new_root
        for lst in list(self._listeners):
            if any(tree.is_related(lst.segments, segs) for segs in touched):
                lst.notify(
                    tree.read(old_root, lst.segments),
                    tree.read(new_root, lst.segments),
                )

    def _remove(self, listener: _Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            pass

    def _attach(self, listener: _Listener) -> Subscription:
        self._listeners.append(listener)
        listener.initial(tree.read(self._root, listener.segments))
        return listener.subscription

    # ── RealtimeStore interface ────────────────────────────────

    async def get(self, path: str) -> Any:
        return self.snapshot(path)

    async def set(self, path: str, value: Any) -> None:
        await self._before_write(path)
        segments = split_path(path)
        value = tree.resolve_server_values(value, self._now())
        self._commit(tree.write(self._root, segments, value), [segments])

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        await self._before_write(path)
        base = split_path(path)
        now = self._now()
        root = self._root
        touched = []
        for key, value in fields.items():
            segments = base + split_path(key)
            root = tree.write(root, segments, tree.resolve_server_values(value, now))
            touched.append(segments)
        self._commit(root, touched)

    async def transaction(
        self, path: str, update_fn: Callable[[Any], Any]
    ) -> tuple[bool, Any]:
        await self._before_write(path)
        segments = split_path(path)
        current = tree.read(self._root, segments)
        new_value = update_fn(copy.deepcopy(current))
        if new_value is None:
            return False, copy.deepcopy(current)
        new_value = tree.resolve_server_values(new_value, self._now())
        self._commit(tree.write(self._root, segments, new_value), [segments])
        return True, self.snapshot(path)

    def subscribe_value(
        self,
        path: str,
        on_value: ValueCallback,
        on_cancelled: CancelCallback | None = None,
    ) -> Subscription:
        return self._attach(_ValueListener(self, path, on_value, on_cancelled))

    def subscribe_child_events(
        self,
        path: str,
        on_event: ChildCallback,
        on_cancelled: CancelCallback | None = None,
        order_by: str | None = None,
    ) -> Subscription:
        return self._attach(_ChildListener(self, path, on_event, on_cancelled, order_by))


class InMemoryDocumentStore(DocumentStore):
    """Collection/document store held in process memory."""

    def __init__(self) -> None:
        self._collections: dict[str, dict[str, dict[str, Any]]] = {}
        self._write_failures: list[TransportError] = []

    def fail_next_write(self, message: str = "simulated transport failure") -> None:
        self._write_failures.append(TransportError(message))

    def _check_failure(self, path: str) -> None:
        if self._write_failures:
            error = self._write_failures.pop(0)
            error.path = path
            raise error

    async def get(self, collection: str, doc_id: str) -> dict[str, Any] | None:
        doc = self._collections.get(collection, {}).get(doc_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def set(
        self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False
    ) -> None:
        self._check_failure(f"{collection}/{doc_id}")
        docs = self._collections.setdefault(collection, {})
        if merge and doc_id in docs:
            docs[doc_id] = {**docs[doc_id], **copy.deepcopy(data)}
        else:
            docs[doc_id] = copy.deepcopy(data)

    async def update(self, collection: str, doc_id: str, fields: dict[str, Any]) -> None:
        path = f"{collection}/{doc_id}"
        self._check_failure(path)
        docs = self._collections.get(collection, {})
        if doc_id not in docs:
            raise TransportError(f"No document to update: {path}", path)
        docs[doc_id] = {**docs[doc_id], **copy.deepcopy(fields)}

    async def query(
        self,
        collection: str,
        equals: dict[str, Any] | None = None,
        array_contains: tuple[str, Any] | None = None,
    ) -> list[tuple[str, dict[str, Any]]]:
        results = []
        for doc_id, doc in sorted(self._collections.get(collection, {}).items()):
            if equals and any(doc.get(k) != v for k, v in equals.items()):
                continue
            if array_contains is not None:
                field, member = array_contains
                values = doc.get(field)
                if not isinstance(values, list) or member not in values:
                    continue
            results.append((doc_id, copy.deepcopy(doc)))
        return results
