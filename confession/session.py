"""Call session bootstrap: drive offer/answer/ICE exchange for one room.

Given ``(room_id, is_caller)`` a CallSession:
  1. Listens on the room's signaling path (and chat path)
  2. Caller: builds a peer connection, creates an OFFER and publishes it
     Callee: waits for the OFFER, then builds a peer connection and
     publishes an ANSWER
  3. Publishes every locally gathered ICE candidate, and applies remote
     candidates in arrival order, buffering them until a remote
     description is installed
  4. Re-exposes the engine's connection state unchanged

Incoming signals pass through an asyncio.Queue drained by one pump task,
so negotiation steps never interleave.  Both peers listen on the same
path, so signals carrying the local user's ``senderId`` are ignored.
The session never retries a failed negotiation; it reports ERROR and
leaves teardown to the caller.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Callable, Optional

from confession.debug_events import DebugBroadcaster
from confession.errors import ListenError, StateError, TransportError, ValidationError
from confession.identity import IdentityProvider
from confession.media import CallState, MediaEngine, PeerConnection
from confession.models.signal import ChatMessage, IceCandidate, SignalMessage, SignalType
from confession.signaling import SignalingChannel

log = logging.getLogger("confession.session")

StateObserver = Callable[[CallState], None]
ChatObserver = Callable[[list[ChatMessage]], None]

CALLER_CHAT_LABEL = "Confessor"
CALLEE_CHAT_LABEL = "Priest"


class CallSession:
    """One side of a peer audio call.

    Typical lifecycle::

        session = CallSession(room_id, is_caller=True, channel=channel,
                              engine=engine, identity=identity)
        await session.start()
        await session.wait_for(CallState.CONNECTED, timeout=15)
        ...
        await session.close()

    The caller builds its peer connection in ``start()`` and publishes the
    OFFER.  The callee only listens until the OFFER arrives, then builds its
    peer connection and answers.  Candidates received before the remote
    description is set are buffered.
    """

    def __init__(
        self,
        room_id: str,
        is_caller: bool,
        channel: SignalingChannel,
        engine: MediaEngine,
        identity: IdentityProvider,
        peer_display_name: str | None = None,
        display_name: str | None = None,
        registry: Optional["SessionRegistry"] = None,
    ) -> None:
        if not room_id:
            raise ValidationError("roomId is required to start a call")
        self._room_id = room_id
        self._is_caller = is_caller
        self._channel = channel
        self._engine = engine
        self._identity = identity
        self._peer_display_name = peer_display_name
        self._display_name = display_name
        self._registry = registry

        self._user_id: str = ""
        self._state = CallState.IDLE
        self._pc: PeerConnection | None = None
        self._started = False
        self._closed = False
        self._started_at: float = 0.0
        self._error: Exception | None = None

        self._inbox: asyncio.Queue[SignalMessage] = asyncio.Queue()
        self._pump_task: asyncio.Task | None = None
        self._send_lock = asyncio.Lock()
        self._send_tasks: set[asyncio.Task] = set()
        self._pending_candidates: list[IceCandidate] = []
        self._offer_handled = False
        self._answer_handled = False
        self._muted = False

        self._chat: dict[str, ChatMessage] = {}
        self._observers: list[StateObserver] = []
        self._chat_observers: list[ChatObserver] = []
        self._waiters: list[tuple[frozenset[CallState], asyncio.Future]] = []
        self._debug_broadcaster: DebugBroadcaster | None = None

        self.signals_sent = 0
        self.signals_received = 0

    # ── Observation ────────────────────────────────────────────

    @property
    def room_id(self) -> str:
        return self._room_id

    @property
    def is_caller(self) -> bool:
        return self._is_caller

    @property
    def state(self) -> CallState:
        return self._state

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def is_muted(self) -> bool:
        return self._muted

    @property
    def error(self) -> Exception | None:
        return self._error

    @property
    def peer_display_name(self) -> str | None:
        return self._peer_display_name

    @property
    def chat_messages(self) -> list[ChatMessage]:
        """Chat history, oldest first, one entry per message id."""
        return sorted(self._chat.values(), key=lambda m: (m.timestamp, m.message_id))

    @property
    def debug_broadcaster(self) -> DebugBroadcaster | None:
        return self._debug_broadcaster

    def attach_broadcaster(self, broadcaster: DebugBroadcaster) -> None:
        self._debug_broadcaster = broadcaster

    def add_observer(self, observer: StateObserver) -> None:
        self._observers.append(observer)

    def add_chat_observer(self, observer: ChatObserver) -> None:
        self._chat_observers.append(observer)

    async def wait_for(self, *states: CallState, timeout: float | None = None) -> CallState:
        """Wait until the session reaches one of ``states``."""
        wanted = frozenset(states)
        if self._state in wanted:
            return self._state
        future = asyncio.get_running_loop().create_future()
        entry = (wanted, future)
        self._waiters.append(entry)
        try:
            return await asyncio.wait_for(future, timeout)
        finally:
            if entry in self._waiters:
                self._waiters.remove(entry)

    def to_dict(self) -> dict[str, Any]:
        return {
            "room_id": self._room_id,
            "role": "caller" if self._is_caller else "callee",
            "state": self._state.value,
            "muted": self._muted,
            "peer_display_name": self._peer_display_name,
            "started_at": self._started_at,
            "duration_s": round(time.time() - self._started_at, 1) if self._started_at else 0.0,
            "signals_sent": self.signals_sent,
            "signals_received": self.signals_received,
            "chat_messages": len(self._chat),
        }

    def _emit(self, event_type: str, data: dict) -> None:
        if self._debug_broadcaster:
            self._debug_broadcaster.emit(event_type, self._state.value, data)

    def _set_state(self, state: CallState) -> None:
        if state is self._state:
            return
        previous, self._state = self._state, state
        log.info("Room %s: %s → %s", self._room_id, previous.value, state.value)
        self._emit("transition", {"from": previous.value, "to": state.value})
        for observer in list(self._observers):
            observer(state)
        for wanted, future in list(self._waiters):
            if state in wanted and not future.done():
                future.set_result(state)

    def _fail(self, error: Exception) -> None:
        self._error = error
        self._emit("error", {"message": str(error)})
        self._set_state(CallState.ERROR)

    # ── Lifecycle ──────────────────────────────────────────────

    async def start(self) -> None:
        """Begin negotiation.

        Raises ``TransportError`` if the caller's OFFER cannot be published.
        """
        if self._closed:
            raise StateError(f"Session for room {self._room_id} is closed")
        if self._started:
            log.info("Session for room %s already started", self._room_id)
            return
        self._user_id = self._identity.require_user_id()
        self._started = True
        self._started_at = time.time()
        if self._registry is not None:
            self._registry.register(self)

        log.info(
            "Starting call in room %s as %s",
            self._room_id, "caller" if self._is_caller else "callee",
        )
        self._set_state(CallState.CONNECTING)
        if self._is_caller:
            await self._open_peer_connection()
        self._pump_task = asyncio.create_task(self._pump())
        self._channel.listen(self._room_id, self._on_signal, self._on_listen_cancelled)
        self._channel.listen_chat(self._room_id, self._on_chat)

        if self._is_caller:
            sdp = await self._pc.create_offer()
            try:
                await self._send(SignalMessage.offer(sdp, sender_id=self._user_id))
            except TransportError as e:
                self._fail(e)
                raise

    async def close(self) -> None:
        """Release media and listeners.  Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        log.info("Closing call in room %s", self._room_id)

        self._channel.forget(self._room_id)
        if self._pump_task is not None:
            self._pump_task.cancel()
        for task in list(self._send_tasks):
            task.cancel()
        self._pending_candidates.clear()

        if self._pc is not None:
            await self._pc.close()
            self._pc = None
        if not self._state.is_terminal:
            self._set_state(CallState.DISCONNECTED)
        for _, future in self._waiters:
            if not future.done():
                future.set_result(self._state)
        if self._registry is not None:
            self._registry.unregister(self)

    async def _open_peer_connection(self) -> PeerConnection:
        self._pc = await self._engine.create_peer_connection(
            self._on_local_candidate, self._on_engine_state
        )
        if self._muted:
            self._pc.set_muted(True)
        return self._pc

    # ── Outbound ───────────────────────────────────────────────

    async def _send(self, message: SignalMessage) -> None:
        async with self._send_lock:
            key = await self._channel.send(self._room_id, message)
        if key is not None:
            self.signals_sent += 1
            self._emit("signal_out", {"type": message.type.value, "key": key})

    def _on_local_candidate(self, candidate: IceCandidate) -> None:
        if self._closed:
            return
        self._emit("ice", {"direction": "local", "sdp_mid": candidate.sdp_mid})
        task = asyncio.get_running_loop().create_task(
            self._send(SignalMessage.ice_candidate(candidate, sender_id=self._user_id))
        )
        self._send_tasks.add(task)
        task.add_done_callback(self._send_tasks.discard)

    def _on_engine_state(self, state: CallState) -> None:
        # close() settles the final state itself
        if self._closed:
            return
        self._set_state(state)

    # ── Inbound ────────────────────────────────────────────────

    def _on_signal(self, message: SignalMessage) -> None:
        if message.sender_id and message.sender_id == self._user_id:
            return
        self.signals_received += 1
        self._emit("signal_in", {"type": message.type.value})
        self._inbox.put_nowait(message)

    def _on_listen_cancelled(self, error: ListenError) -> None:
        log.error("Signaling listener for room %s cancelled: %s", self._room_id, error)
        self._fail(error)

    async def _pump(self) -> None:
        while True:
            message = await self._inbox.get()
            if self._closed:
                return
            try:
                await self._handle(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error("Room %s: failed to apply %s: %s", self._room_id, message.type.value, e)
                self._fail(e)

    async def _handle(self, message: SignalMessage) -> None:
        pc = self._pc
        if message.type is SignalType.OFFER:
            if self._is_caller or self._offer_handled:
                log.debug("Room %s: ignoring OFFER", self._room_id)
                return
            self._offer_handled = True
            if pc is None:
                pc = await self._open_peer_connection()
            await pc.set_remote_description("offer", message.sdp)
            await self._flush_candidates()
            sdp = await pc.create_answer()
            await self._send(SignalMessage.answer(sdp, sender_id=self._user_id))

        elif message.type is SignalType.ANSWER:
            if not self._is_caller or self._answer_handled:
                log.debug("Room %s: ignoring ANSWER", self._room_id)
                return
            self._answer_handled = True
            await pc.set_remote_description("answer", message.sdp)
            await self._flush_candidates()

        elif message.type is SignalType.ICE_CANDIDATE:
            candidate = message.candidate
            self._emit("ice", {"direction": "remote", "sdp_mid": candidate.sdp_mid})
            if pc is not None and pc.has_remote_description:
                await pc.add_ice_candidate(candidate)
            else:
                self._pending_candidates.append(candidate)

    async def _flush_candidates(self) -> None:
        pending, self._pending_candidates = self._pending_candidates, []
        if pending:
            log.debug("Room %s: applying %d buffered candidate(s)", self._room_id, len(pending))
        for candidate in pending:
            await self._pc.add_ice_candidate(candidate)

    # ── In-call actions ────────────────────────────────────────

    def toggle_mute(self) -> bool:
        """Flip the local audio mute.  Returns the new muted flag."""
        if not self._started or self._closed:
            return self._muted
        self._muted = not self._muted
        if self._pc is not None:
            self._pc.set_muted(self._muted)
        log.info("Room %s: local audio %s", self._room_id, "muted" if self._muted else "unmuted")
        return self._muted

    async def send_chat(self, text: str) -> ChatMessage | None:
        """Send a chat message into the room.  Blank text is ignored."""
        if not text.strip() or not self._started or self._closed:
            return None
        if self._is_caller:
            label = CALLER_CHAT_LABEL
        else:
            label = self._display_name or CALLEE_CHAT_LABEL
        message = ChatMessage(
            sender_id=self._user_id,
            sender_display_name=label,
            text=text,
        )
        message = await self._channel.send_chat(self._room_id, message)
        self._on_chat(message)
        return message

    def _on_chat(self, message: ChatMessage) -> None:
        if message.message_id and message.message_id in self._chat:
            return
        self._chat[message.message_id] = message
        self._emit("chat", {"sender": message.sender_display_name})
        history = self.chat_messages
        for observer in list(self._chat_observers):
            observer(history)


class SessionRegistry:
    """Live call sessions keyed by room id."""

    def __init__(self) -> None:
        self._sessions: dict[str, CallSession] = {}

    def register(self, session: CallSession) -> None:
        self._sessions[session.room_id] = session
        log.info("Session registered: %s", session.room_id)

    def unregister(self, session: CallSession) -> None:
        if self._sessions.get(session.room_id) is session:
            del self._sessions[session.room_id]
            log.info("Session unregistered: %s", session.room_id)

    def get(self, room_id: str) -> CallSession | None:
        return self._sessions.get(room_id)

    def all(self) -> dict[str, CallSession]:
        return dict(self._sessions)

    def __len__(self) -> int:
        return len(self._sessions)

    async def close_all(self) -> None:
        for session in list(self._sessions.values()):
            await session.close()


class CallSessionFactory:
    """Builds and starts sessions with shared collaborators.

    Its call signature matches the ``start_call`` hook of
    ``InvitationDirectoryListener``.
    """

    def __init__(
        self,
        channel: SignalingChannel,
        engine: MediaEngine,
        identity: IdentityProvider,
        registry: SessionRegistry | None = None,
        display_name: str | None = None,
        broadcasters: bool = False,
    ) -> None:
        self._channel = channel
        self._engine = engine
        self._identity = identity
        self._display_name = display_name
        self._registry = registry
        self._broadcasters = broadcasters

    async def __call__(
        self, room_id: str, is_caller: bool, peer_display_name: str | None = None
    ) -> CallSession:
        session = CallSession(
            room_id,
            is_caller,
            channel=self._channel,
            engine=self._engine,
            identity=self._identity,
            peer_display_name=peer_display_name,
            display_name=self._display_name,
            registry=self._registry,
        )
        if self._broadcasters:
            session.attach_broadcaster(DebugBroadcaster(room_id))
        await session.start()
        return session
