"""FastAPI operations surface for live call sessions.

Endpoints:

  GET  /health                          Health check
  GET  /api/sessions                    Live sessions (admin)
  GET  /api/sessions/{room_id}          One session (admin)
  GET  /api/sessions/{room_id}/events   Recorded debug events (admin)
  POST /api/sessions/{room_id}/end      Tear a session down (admin)
  WS   /ws/debug/{room_id}?token=       Live debug events (admin)

Sessions appear here once they register with the ``SessionRegistry``
passed to ``create_app``.
"""

from __future__ import annotations

from dotenv import load_dotenv
load_dotenv()

import logging
import re
import time

# Configure the root logger before any app logger is used, so output is
# visible when run via `uvicorn confession.app:app`.
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(name)-20s %(levelname)-7s %(message)s",
)

from fastapi import Depends, FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.responses import JSONResponse

from confession.auth import require_admin_token, require_admin_ws
from confession.config import settings
from confession.debug_events import DebugBroadcaster
from confession.session import CallSession, SessionRegistry

log = logging.getLogger("confession.app")

_START_TIME = time.time()

_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]{1,64}$")


def _lookup(registry: SessionRegistry, room_id: str) -> CallSession:
    if not _ID_PATTERN.match(room_id):
        raise HTTPException(status_code=400, detail="Invalid room id")
    session = registry.get(room_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def create_app(registry: SessionRegistry | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    registry = registry if registry is not None else SessionRegistry()
    app = FastAPI(
        title="Confession Match",
        description="Invitation matching and call signaling operations",
        version="0.1.0",
    )
    app.state.registry = registry

    for warning in settings.validate_startup():
        log.warning(warning)

    # ── Health check ───────────────────────────────────────────

    @app.get("/health")
    async def health() -> JSONResponse:
        uptime = round(time.time() - _START_TIME, 1)
        return JSONResponse({"status": "ok", "uptime": uptime, "sessions": len(registry)})

    # ── Sessions ───────────────────────────────────────────────

    @app.get("/api/sessions", dependencies=[Depends(require_admin_token)])
    async def list_sessions() -> JSONResponse:
        sessions = registry.all()
        return JSONResponse({
            "sessions": [s.to_dict() for s in sessions.values()],
            "count": len(sessions),
        })

    @app.get("/api/sessions/{room_id}", dependencies=[Depends(require_admin_token)])
    async def get_session(room_id: str) -> JSONResponse:
        session = _lookup(registry, room_id)
        data = session.to_dict()
        data["chat"] = [m.to_wire() for m in session.chat_messages]
        return JSONResponse(data)

    @app.get("/api/sessions/{room_id}/events", dependencies=[Depends(require_admin_token)])
    async def get_session_events(room_id: str) -> JSONResponse:
        session = _lookup(registry, room_id)
        broadcaster = session.debug_broadcaster
        events = broadcaster.event_log if broadcaster else []
        return JSONResponse({"room_id": room_id, "events": events})

    @app.post("/api/sessions/{room_id}/end", dependencies=[Depends(require_admin_token)])
    async def end_session(room_id: str) -> JSONResponse:
        session = _lookup(registry, room_id)
        await session.close()
        log.info("Session %s ended by admin", room_id)
        return JSONResponse({"room_id": room_id, "ended": True, "state": session.state.value})

    # ── Debug stream WebSocket ─────────────────────────────────

    @app.websocket("/ws/debug/{room_id}")
    async def debug_stream(websocket: WebSocket, room_id: str, token: str = Query(default="")) -> None:
        if not await require_admin_ws(websocket, token):
            return
        session = registry.get(room_id) if _ID_PATTERN.match(room_id) else None
        if session is None:
            await websocket.close(code=4004, reason="Session not found")
            return

        await websocket.accept()
        broadcaster = session.debug_broadcaster
        if broadcaster is None:
            broadcaster = DebugBroadcaster(room_id)
            session.attach_broadcaster(broadcaster)
        queue = broadcaster.subscribe()

        try:
            while True:
                event = await queue.get()
                await websocket.send_json(event)
        except WebSocketDisconnect:
            pass
        finally:
            broadcaster.unsubscribe(queue)

    return app


# ── Module-level app instance for uvicorn ──────────────────────

app = create_app()


if __name__ == "__main__":
    import uvicorn

    log_config = uvicorn.config.LOGGING_CONFIG
    log_config["formatters"]["default"]["fmt"] = (
        "%(asctime)s %(name)-12s %(levelname)-8s %(message)s"
    )

    uvicorn.run(
        "confession.app:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        log_config=log_config,
    )
