"""Tests for the identity providers."""

import os
import sys
from unittest.mock import AsyncMock, MagicMock

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from confession.errors import TransportError, ValidationError
from confession.identity import IDENTITY_TOOLKIT_URL, FirebaseAuthClient, StaticIdentity


def mock_session(status, payload):
    resp = MagicMock()
    resp.status = status
    resp.json = AsyncMock(return_value=payload)
    ctx = MagicMock()
    ctx.__aenter__ = AsyncMock(return_value=resp)
    ctx.__aexit__ = AsyncMock(return_value=False)
    session = MagicMock()
    session.post.return_value = ctx
    return session


class TestStaticIdentity:
    async def test_anonymous_sign_in(self):
        identity = StaticIdentity()
        assert identity.current_user_id is None
        uid = await identity.sign_in_anonymously()
        assert identity.require_user_id() == uid

    async def test_register_then_sign_in(self):
        identity = StaticIdentity()
        uid = await identity.register_with_email("a@example.com", "pw")
        identity.sign_out()
        with pytest.raises(ValidationError):
            identity.require_user_id()
        assert await identity.sign_in_with_email("a@example.com", "pw") == uid

    async def test_bad_credentials(self):
        identity = StaticIdentity()
        await identity.register_with_email("a@example.com", "pw")
        with pytest.raises(TransportError):
            await identity.sign_in_with_email("a@example.com", "nope")
        with pytest.raises(TransportError):
            await identity.register_with_email("a@example.com", "pw")


class TestFirebaseAuthClient:
    async def test_requires_api_key(self):
        client = FirebaseAuthClient(api_key="")
        with pytest.raises(ValidationError):
            await client.sign_in_anonymously()

    async def test_anonymous_sign_in(self):
        session = mock_session(200, {"localId": "uid-1", "idToken": "tok", "refreshToken": "r"})
        client = FirebaseAuthClient(api_key="key", session=session)
        assert await client.sign_in_anonymously() == "uid-1"
        assert client.current_user_id == "uid-1"
        assert client.id_token == "tok"

        url = session.post.call_args[0][0]
        assert url == f"{IDENTITY_TOOLKIT_URL}/accounts:signUp"
        assert session.post.call_args.kwargs["params"] == {"key": "key"}
        assert session.post.call_args.kwargs["json"] == {"returnSecureToken": True}

    async def test_email_sign_in_endpoint(self):
        session = mock_session(200, {"localId": "uid-2", "idToken": "tok"})
        client = FirebaseAuthClient(api_key="key", session=session)
        await client.sign_in_with_email("a@example.com", "pw")
        assert session.post.call_args[0][0].endswith("accounts:signInWithPassword")
        assert session.post.call_args.kwargs["json"]["email"] == "a@example.com"

    async def test_error_response(self):
        session = mock_session(400, {"error": {"message": "EMAIL_EXISTS"}})
        client = FirebaseAuthClient(api_key="key", session=session)
        with pytest.raises(TransportError, match="EMAIL_EXISTS"):
            await client.register_with_email("a@example.com", "pw")
        assert client.current_user_id is None

    async def test_sign_out(self):
        session = mock_session(200, {"localId": "uid-1", "idToken": "tok"})
        client = FirebaseAuthClient(api_key="key", session=session)
        await client.sign_in_anonymously()
        client.sign_out()
        assert client.current_user_id is None
        assert client.id_token is None
