"""Admin guards for the operations surface.

  require_admin_token()  HTTP endpoints, ``Authorization: Bearer <key>``
  require_admin_ws()     WebSocket endpoints, ``?token=<key>``

Behavior matrix:
  ADMIN_API_KEY set + valid token   → allow
  ADMIN_API_KEY set + wrong/missing → 401 Unauthorized
  ADMIN_API_KEY empty + DEBUG=true  → allow (local dev)
  ADMIN_API_KEY empty + DEBUG=false → 403 Forbidden
"""

from __future__ import annotations

import logging
import secrets

from fastapi import Depends, HTTPException, WebSocket, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from confession.config import settings

log = logging.getLogger("confession.auth")

_bearer_scheme = HTTPBearer(auto_error=False)


def admin_denial(token: str | None) -> int | None:
    """HTTP status refusing ``token``, or None when it is accepted."""
    key = settings.admin_api_key
    if not key:
        return None if settings.debug else status.HTTP_403_FORBIDDEN
    if not token or not secrets.compare_digest(token.encode(), key.encode()):
        return status.HTTP_401_UNAUTHORIZED
    return None


async def require_admin_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(_bearer_scheme),
) -> None:
    denial = admin_denial(credentials.credentials if credentials else None)
    if denial == status.HTTP_403_FORBIDDEN:
        raise HTTPException(
            status_code=denial,
            detail="Admin API key not configured. Set ADMIN_API_KEY in .env.",
        )
    if denial == status.HTTP_401_UNAUTHORIZED:
        log.warning("Rejected admin request with invalid token")
        raise HTTPException(
            status_code=denial,
            detail="Invalid or missing admin token.",
            headers={"WWW-Authenticate": "Bearer"},
        )


async def require_admin_ws(websocket: WebSocket, token: str) -> bool:
    """Check a WebSocket's ``?token=`` and close it when refused.

    Browsers cannot set headers on a WebSocket, so the key comes as a query
    param.  Returns True when the connection may proceed.
    """
    denial = admin_denial(token)
    if denial is None:
        return True
    if denial == status.HTTP_403_FORBIDDEN:
        await websocket.close(code=4003, reason="Admin API key not configured")
    else:
        await websocket.close(code=4001, reason="Unauthorized")
    return False
