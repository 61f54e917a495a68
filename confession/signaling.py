"""Room-scoped signaling transport.

Layout under the realtime store::

    {rooms_root}/{roomId}/signals/{pushId}     SignalMessage
    {rooms_root}/{roomId}/chat/{messageId}     ChatMessage

Messages are appended under chronological push keys, so a child listener
replays them in append order.  The channel keeps one listener per room
and remembers which push keys it already delivered, so detaching and
re-attaching never delivers a message twice.
"""

from __future__ import annotations

import logging
from typing import Callable

from confession.config import settings
from confession.errors import TransportError, ValidationError
from confession.models.signal import ChatMessage, SignalMessage, SignalType
from confession.store.base import (
    CancelCallback,
    ChildEvent,
    ChildEventType,
    ListenerSlot,
    RealtimeStore,
    Subscription,
    join_path,
)
from confession.store.push_ids import generate_push_id

log = logging.getLogger("confession.signaling")

SignalCallback = Callable[[SignalMessage], None]
ChatCallback = Callable[[ChatMessage], None]


class SignalingChannel:
    """Publish and receive negotiation payloads for rooms."""

    def __init__(self, store: RealtimeStore, rooms_root: str | None = None) -> None:
        self._store = store
        self._root = rooms_root or settings.rooms_root
        self._signal_slots = ListenerSlot("signals")
        self._chat_slots = ListenerSlot("chat")
        self._delivered: dict[str, set[str]] = {}
        self._delivered_chat: dict[str, set[str]] = {}

    def signals_path(self, room_id: str) -> str:
        return join_path(self._root, room_id, "signals")

    def chat_path(self, room_id: str) -> str:
        return join_path(self._root, room_id, "chat")

    @staticmethod
    def _require_room(room_id: str) -> None:
        if not room_id:
            raise ValidationError("roomId is required")

    # ── Signals ────────────────────────────────────────────────

    async def send(self, room_id: str, message: SignalMessage) -> str | None:
        """Append ``message`` to the room.  Returns its push key.

        A failed ICE candidate is logged and dropped (returns None); a
        failed OFFER or ANSWER raises ``TransportError``.
        """
        self._require_room(room_id)
        try:
            key = await self._store.push(self.signals_path(room_id), message.to_wire())
        except TransportError as e:
            if message.type is SignalType.ICE_CANDIDATE:
                log.warning("Dropped ICE candidate for room %s: %s", room_id, e)
                return None
            log.error("Failed to send %s to room %s: %s", message.type.value, room_id, e)
            raise
        log.debug("Sent %s to room %s (%s)", message.type.value, room_id, key)
        return key

    def listen(
        self,
        room_id: str,
        on_message: SignalCallback,
        on_cancelled: CancelCallback | None = None,
    ) -> Subscription:
        """Deliver each appended message once, in append order.

        Replaces any listener this channel already holds for the room.
        """
        self._require_room(room_id)
        delivered = self._delivered.setdefault(room_id, set())

        def on_event(event: ChildEvent) -> None:
            if event.type is not ChildEventType.ADDED or event.key in delivered:
                return
            delivered.add(event.key)
            message = SignalMessage.from_wire(event.value)
            if message is not None:
                on_message(message)

        path = self.signals_path(room_id)
        sub = self._signal_slots.attach(
            room_id,
            lambda: self._store.subscribe_child_events(path, on_event, on_cancelled),
            replace=True,
        )
        log.info("Listening for signals in room %s", room_id)
        return sub

    def stop_listening(self, room_id: str) -> None:
        if self._signal_slots.detach(room_id):
            log.info("Stopped listening for signals in room %s", room_id)

    def is_listening(self, room_id: str) -> bool:
        return room_id in self._signal_slots

    def forget(self, room_id: str) -> None:
        """Detach both listeners and drop the delivery history of a room."""
        self.stop_listening(room_id)
        self.stop_listening_chat(room_id)
        self._delivered.pop(room_id, None)
        self._delivered_chat.pop(room_id, None)

    async def clear_room(self, room_id: str) -> None:
        """Delete every signal and chat message stored for the room."""
        self._require_room(room_id)
        await self._store.set(join_path(self._root, room_id), None)
        log.info("Cleared room %s", room_id)

    # ── Chat ───────────────────────────────────────────────────

    async def send_chat(self, room_id: str, message: ChatMessage) -> ChatMessage:
        """Store a chat message under its id, assigning one when empty.

        Raises ``TransportError`` when the write fails.
        """
        self._require_room(room_id)
        if not message.message_id:
            message = message.model_copy(update={"message_id": generate_push_id()})
        path = join_path(self.chat_path(room_id), message.message_id)
        try:
            await self._store.set(path, message.to_wire())
        except TransportError as e:
            log.error("Failed to send chat message to room %s: %s", room_id, e)
            raise
        return message

    def listen_chat(
        self,
        room_id: str,
        on_message: ChatCallback,
        on_cancelled: CancelCallback | None = None,
    ) -> Subscription:
        self._require_room(room_id)
        delivered = self._delivered_chat.setdefault(room_id, set())

        def on_event(event: ChildEvent) -> None:
            if event.type is not ChildEventType.ADDED or event.key in delivered:
                return
            delivered.add(event.key)
            message = ChatMessage.from_wire(event.value, event.key)
            if message is not None:
                on_message(message)

        path = self.chat_path(room_id)
        return self._chat_slots.attach(
            room_id,
            lambda: self._store.subscribe_child_events(path, on_event, on_cancelled),
            replace=True,
        )

    def stop_listening_chat(self, room_id: str) -> None:
        self._chat_slots.detach(room_id)

    def close(self) -> None:
        """Detach every listener held by this channel."""
        self._signal_slots.detach_all()
        self._chat_slots.detach_all()
