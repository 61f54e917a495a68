"""Identity providers issuing opaque user ids.

Components never reach for a process-wide "current user"; they receive an
``IdentityProvider`` in their constructor and ask it for the signed-in id.

``FirebaseAuthClient`` talks to the Identity Toolkit REST API:

  POST accounts:signUp              {"returnSecureToken": true}      anonymous
  POST accounts:signUp              {"email", "password", ...}       register
  POST accounts:signInWithPassword  {"email", "password", ...}       sign in

Each returns ``localId`` (the user id) and ``idToken`` (used to authorize
realtime store requests).
"""

from __future__ import annotations

import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any

import aiohttp

from confession.config import settings
from confession.errors import TransportError, ValidationError

log = logging.getLogger("confession.identity")

IDENTITY_TOOLKIT_URL = "https://identitytoolkit.googleapis.com/v1"


class IdentityProvider(ABC):
    """Source of the signed-in user's id."""

    @property
    @abstractmethod
    def current_user_id(self) -> str | None:
        """The signed-in user's id, or None when signed out."""

    @abstractmethod
    async def sign_in_anonymously(self) -> str:
        """Sign in without credentials and return the new user id."""

    @abstractmethod
    async def sign_in_with_email(self, email: str, password: str) -> str:
        """Sign in with credentials and return the user id."""

    @abstractmethod
    async def register_with_email(self, email: str, password: str) -> str:
        """Create a credentialed account and return its user id."""

    @abstractmethod
    def sign_out(self) -> None:
        """Forget the signed-in user."""

    def require_user_id(self) -> str:
        user_id = self.current_user_id
        if not user_id:
            raise ValidationError("User not logged in.")
        return user_id


class StaticIdentity(IdentityProvider):
    """Identity held in memory.  Used for local runs and tests."""

    def __init__(self, user_id: str | None = None) -> None:
        self._user_id = user_id
        self._accounts: dict[str, tuple[str, str]] = {}  # email -> (password, uid)

    @property
    def current_user_id(self) -> str | None:
        return self._user_id

    async def sign_in_anonymously(self) -> str:
        self._user_id = uuid.uuid4().hex
        return self._user_id

    async def sign_in_with_email(self, email: str, password: str) -> str:
        account = self._accounts.get(email)
        if account is None or account[0] != password:
            raise TransportError("INVALID_LOGIN_CREDENTIALS")
        self._user_id = account[1]
        return self._user_id

    async def register_with_email(self, email: str, password: str) -> str:
        if email in self._accounts:
            raise TransportError("EMAIL_EXISTS")
        uid = uuid.uuid4().hex
        self._accounts[email] = (password, uid)
        self._user_id = uid
        return uid

    def sign_out(self) -> None:
        self._user_id = None


class FirebaseAuthClient(IdentityProvider):
    """Identity provider backed by the Identity Toolkit REST API."""

    def __init__(
        self,
        api_key: str | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self._api_key = api_key if api_key is not None else settings.firebase_api_key
        self._session = session
        self._user_id: str | None = None
        self._id_token: str | None = None
        self._refresh_token: str | None = None

    @property
    def current_user_id(self) -> str | None:
        return self._user_id

    @property
    def id_token(self) -> str | None:
        return self._id_token

    async def sign_in_anonymously(self) -> str:
        return await self._authenticate("signUp", {"returnSecureToken": True})

    async def sign_in_with_email(self, email: str, password: str) -> str:
        return await self._authenticate(
            "signInWithPassword",
            {"email": email, "password": password, "returnSecureToken": True},
        )

    async def register_with_email(self, email: str, password: str) -> str:
        return await self._authenticate(
            "signUp",
            {"email": email, "password": password, "returnSecureToken": True},
        )

    def sign_out(self) -> None:
        log.info("Signed out %s", self._user_id)
        self._user_id = None
        self._id_token = None
        self._refresh_token = None

    async def _authenticate(self, endpoint: str, payload: dict[str, Any]) -> str:
        if not self._api_key:
            raise ValidationError("FIREBASE_API_KEY is not configured")
        data = await self._post(f"{IDENTITY_TOOLKIT_URL}/accounts:{endpoint}", payload)
        self._user_id = data["localId"]
        self._id_token = data.get("idToken")
        self._refresh_token = data.get("refreshToken")
        log.info("Signed in via %s as %s", endpoint, self._user_id)
        return self._user_id

    async def _post(self, url: str, payload: dict[str, Any]) -> dict[str, Any]:
        if self._session is not None:
            return await self._send(self._session, url, payload)
        async with aiohttp.ClientSession() as session:
            return await self._send(session, url, payload)

    async def _send(
        self, session: aiohttp.ClientSession, url: str, payload: dict[str, Any]
    ) -> dict[str, Any]:
        try:
            async with session.post(url, params={"key": self._api_key}, json=payload) as resp:
                data = await resp.json(content_type=None)
                if resp.status != 200:
                    message = (data or {}).get("error", {}).get("message", "unknown error")
                    log.error("Identity request failed (%d): %s", resp.status, message)
                    raise TransportError(f"Sign-in failed: {message}")
                return data
        except aiohttp.ClientError as e:
            log.error("Identity request error: %s", e)
            raise TransportError(f"Sign-in request failed: {e}") from e
