"""Realtime store adapter for the Firebase Realtime Database REST API.

Reads and writes map onto plain HTTP verbs against ``{base}/{path}.json``::

    get          GET
    set          PUT     (PUT null deletes)
    update       PATCH   (multi-path keys such as "a/b")
    transaction  GET with X-Firebase-ETag, then PUT with if-match, retried on 412

Listeners use the streaming endpoint (``Accept: text/event-stream``).  The
stream sends ``put`` / ``patch`` events relative to the listened path; the
adapter applies them to a local copy of the node and turns the difference
into value or child events.  ``cancel``, ``auth_revoked`` and malformed events
end the listener with a ``ListenError``; dropped connections are retried with
backoff before giving up the same way.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
from typing import Any, Callable, Mapping, Union

import aiohttp

from confession.config import settings
from confession.errors import ListenError, TransportError, ValidationError
from confession.store import tree
from confession.store.base import (
    CancelCallback,
    ChildCallback,
    ChildEvent,
    ChildEventType,
    RealtimeStore,
    Subscription,
    ValueCallback,
    split_path,
)

log = logging.getLogger("confession.store.firebase")

TokenSource = Union[str, Callable[[], "str | None"], None]

_MAX_TRANSACTION_ATTEMPTS = 25
_RECONNECT_DELAYS = (1.0, 2.0, 5.0)
_STREAM_TIMEOUT = aiohttp.ClientTimeout(total=None, sock_read=None)


class FirebaseRealtimeStore(RealtimeStore):
    """``RealtimeStore`` over HTTPS.

    ``auth`` is an ID token, or a callable returning the current one (for
    example ``FirebaseAuthClient.id_token`` wrapped in a lambda).
    """

    def __init__(
        self,
        database_url: str | None = None,
        auth: TokenSource = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        base = database_url if database_url is not None else settings.firebase_database_url
        if not base:
            raise ValidationError("FIREBASE_DATABASE_URL is not configured")
        self._base = base.rstrip("/")
        self._auth = auth
        self._session = session
        self._owns_session = session is None
        self._tasks: set[asyncio.Task] = set()

    # ── HTTP plumbing ──────────────────────────────────────────

    def _url(self, path: str) -> str:
        return f"{self._base}/{'/'.join(split_path(path))}.json"

    def _params(self) -> dict[str, str]:
        token = self._auth() if callable(self._auth) else self._auth
        return {"auth": token} if token else {}

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._owns_session and self._session is not None:
            await self._session.close()

    async def _request(
        self,
        method: str,
        path: str,
        body: Any = None,
        headers: dict[str, str] | None = None,
        ok: tuple[int, ...] = (200,),
    ) -> tuple[int, Any, Mapping[str, str]]:
        data = json.dumps(body) if method in ("PUT", "PATCH") else None
        try:
            async with self._client().request(
                method, self._url(path), params=self._params(), data=data, headers=headers
            ) as resp:
                text = await resp.text(errors="replace")
                try:
                    payload = json.loads(text) if text else None
                except ValueError:
                    if resp.status in ok:
                        log.error("%s %s returned a non-JSON body", method, path)
                        raise TransportError(f"{method} returned a non-JSON body", path)
                    payload = text.strip()[:200]
                if resp.status not in ok:
                    message = payload.get("error") if isinstance(payload, dict) else payload
                    log.error("%s %s failed (%d): %s", method, path, resp.status, message)
                    raise TransportError(f"{method} failed ({resp.status}): {message}", path)
                return resp.status, payload, resp.headers.copy()
        except aiohttp.ClientError as e:
            log.error("%s %s failed: %s", method, path, e)
            raise TransportError(f"{method} failed: {e}", path) from e

    # ── RealtimeStore interface ────────────────────────────────

    async def get(self, path: str) -> Any:
        _, value, _ = await self._request("GET", path)
        return value

    async def set(self, path: str, value: Any) -> None:
        await self._request("PUT", path, value)

    async def update(self, path: str, fields: dict[str, Any]) -> None:
        await self._request("PATCH", path, fields)

    async def transaction(
        self, path: str, update_fn: Callable[[Any], Any]
    ) -> tuple[bool, Any]:
        status, current, headers = await self._request(
            "GET", path, headers={"X-Firebase-ETag": "true"}
        )
        for _ in range(_MAX_TRANSACTION_ATTEMPTS):
            etag = headers.get("ETag", "")
            new_value = update_fn(copy.deepcopy(current))
            if new_value is None:
                return False, current
            status, stored, headers = await self._request(
                "PUT", path, new_value, headers={"if-match": etag}, ok=(200, 412)
            )
            if status == 200:
                return True, stored
            # 412 carries the current value and its ETag
            log.debug("Transaction on %s lost a race, retrying", path)
            current = stored
        raise TransportError(f"Transaction on {path} did not converge", path)

    def subscribe_value(
        self,
        path: str,
        on_value: ValueCallback,
        on_cancelled: CancelCallback | None = None,
    ) -> Subscription:
        delivered: dict[str, Any] = {}

        def apply(before: Any, after: Any) -> None:
            if "value" in delivered and delivered["value"] == after:
                return
            delivered["value"] = copy.deepcopy(after)
            on_value(copy.deepcopy(after))

        return self._listen(path, apply, on_cancelled)

    def subscribe_child_events(
        self,
        path: str,
        on_event: ChildCallback,
        on_cancelled: CancelCallback | None = None,
        order_by: str | None = None,
    ) -> Subscription:
        state = {"initial": True}

        def apply(before: Any, after: Any) -> None:
            if state.pop("initial", False):
                for key, child in tree.ordered_children(after, order_by):
                    on_event(ChildEvent(ChildEventType.ADDED, key, copy.deepcopy(child)))
                return
            for event in tree.diff_children(before, after):
                on_event(event)

        return self._listen(path, apply, on_cancelled)

    # ── Streaming ──────────────────────────────────────────────

    def _listen(
        self,
        path: str,
        apply: Callable[[Any, Any], None],
        on_cancelled: CancelCallback | None,
    ) -> Subscription:
        task: asyncio.Task | None = None

        def cancel() -> None:
            if task is not None:
                task.cancel()

        subscription = Subscription(path, on_cancel=cancel)
        task = asyncio.get_running_loop().create_task(
            self._stream(path, subscription, apply, on_cancelled)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return subscription

    async def _stream(
        self,
        path: str,
        subscription: Subscription,
        apply: Callable[[Any, Any], None],
        on_cancelled: CancelCallback | None,
    ) -> None:
        node: Any = None
        failures = 0

        def deliver(event: str, data: Any) -> None:
            nonlocal node
            if not isinstance(data, dict) or not subscription.active:
                return
            segments = split_path(data.get("path", "/"))
            before = node
            if event == "put":
                node = tree.write(node, segments, data.get("data"))
            else:
                for key, value in (data.get("data") or {}).items():
                    node = tree.write(node, segments + split_path(key), value)
            apply(before, node)

        while subscription.active:
            try:
                reason = await self._consume(path, deliver)
                failures = 0
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                if failures >= len(_RECONNECT_DELAYS):
                    reason = f"stream failed: {e}"
                else:
                    delay = _RECONNECT_DELAYS[failures]
                    failures += 1
                    log.warning("Stream %s dropped (%s), reconnecting in %.0fs", path, e, delay)
                    await asyncio.sleep(delay)
                    continue
            if reason is None:
                await asyncio.sleep(_RECONNECT_DELAYS[0])
                continue
            if subscription.active:
                log.error("Listener on %s cancelled by server: %s", path, reason)
                subscription.cancel()
                if on_cancelled is not None:
                    on_cancelled(ListenError(reason, path))
            return

    async def _consume(self, path: str, deliver: Callable[[str, Any], None]) -> str | None:
        """Read one stream connection.

        Returns a cancel reason (server cancel, revoked auth or an event that
        is not valid JSON), or None on EOF.
        """
        headers = {"Accept": "text/event-stream"}
        async with self._client().get(
            self._url(path), params=self._params(), headers=headers, timeout=_STREAM_TIMEOUT
        ) as resp:
            if resp.status == 401:
                return "permission denied"
            if resp.status != 200:
                raise aiohttp.ClientResponseError(
                    resp.request_info, resp.history, status=resp.status
                )
            event, data_lines = "", []
            async for raw in resp.content:
                line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
                if line.startswith("event:"):
                    event = line[6:].strip()
                elif line.startswith("data:"):
                    data_lines.append(line[5:].strip())
                elif not line:
                    data = "\n".join(data_lines)
                    event, data_lines, name = "", [], event
                    if name not in ("put", "patch", "cancel", "auth_revoked"):
                        continue
                    try:
                        payload = json.loads(data) if data else None
                    except ValueError:
                        log.error("Malformed %s event on %s: %.80r", name, path, data)
                        return f"malformed {name} event"
                    if name in ("put", "patch"):
                        deliver(name, payload)
                    else:
                        return str(payload) if payload is not None else name
        return None

