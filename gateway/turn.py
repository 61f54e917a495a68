"""ICE server resolution for call sessions.

Peers need STUN to discover their public address and TURN to relay media
when a direct path is blocked.  Servers are resolved in this order:

  1. A static TURN server from settings (TURN_URL + credentials), expanded
     into udp, tcp and turns variants, followed by the fallback STUN list
  2. Ephemeral TURN/STUN credentials from Twilio's Network Traversal
     Service (TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN), followed by the
     fallback STUN list
  3. The fallback list alone (ICE_SERVERS_JSON, public STUN by default)
"""

from __future__ import annotations

import asyncio
import json
import logging

import aiohttp

from confession.config import settings

log = logging.getLogger("gateway.turn")

_PLACEHOLDERS = {"your_turn_username", "your_turn_password"}


def get_fallback_ice_servers() -> list[dict]:
    """Parse the fallback ICE servers from settings."""
    try:
        servers = json.loads(settings.ice_servers_json)
    except (json.JSONDecodeError, TypeError):
        log.warning("Invalid ICE_SERVERS_JSON in settings, using empty list")
        return []
    if not isinstance(servers, list):
        log.warning("ICE_SERVERS_JSON is not a list, using empty list")
        return []
    return servers


def static_turn_servers() -> list[dict]:
    """TURN entries for the configured static server, or [] when unset."""
    host = settings.turn_url
    username = settings.turn_username
    password = settings.turn_password
    if not host:
        return []
    if not username or not password or username in _PLACEHOLDERS or password in _PLACEHOLDERS:
        log.warning("TURN_URL set without real credentials, skipping static TURN")
        return []

    hostname = host.rsplit(":", 1)[0] if ":" in host else host
    creds = {"username": username, "credential": password}
    return [
        {"urls": f"turn:{host}?transport=udp", **creds},
        {"urls": f"turn:{host}?transport=tcp", **creds},
        {"urls": f"turns:{hostname}:{settings.turn_tls_port}?transport=tcp", **creds},
    ]


async def fetch_twilio_turn_credentials(
    account_sid: str | None = None,
    auth_token: str | None = None,
) -> list[dict]:
    """Call Twilio's Network Traversal Service to get temporary TURN/STUN creds.

    Returns a list of ICE server dicts in the format::

        [
            {"urls": "stun:global.stun.twilio.com:3478"},
            {"urls": "turn:global.turn.twilio.com:3478?transport=udp",
             "username": "...", "credential": "..."},
            ...
        ]

    Returns an empty list if Twilio is not configured or the request fails.
    """
    account_sid = account_sid if account_sid is not None else settings.twilio_account_sid
    auth_token = auth_token if auth_token is not None else settings.twilio_auth_token

    if not account_sid or not auth_token:
        log.info("TWILIO_ACCOUNT_SID / TWILIO_AUTH_TOKEN not set, no ephemeral TURN")
        return []

    url = f"https://api.twilio.com/2010-04-01/Accounts/{account_sid}/Tokens.json"

    try:
        async with aiohttp.ClientSession() as session:
            async with session.post(
                url,
                auth=aiohttp.BasicAuth(account_sid, auth_token),
            ) as resp:
                if resp.status != 201:
                    body = await resp.text()
                    log.error("Twilio token request failed (%d): %s", resp.status, body)
                    return []

                data = await resp.json()

        ice_servers = data.get("ice_servers", [])
        log.info(
            "Got %d ICE servers from Twilio (TTL: %ss)",
            len(ice_servers),
            data.get("ttl", "?"),
        )
        return ice_servers

    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        log.error("Failed to fetch Twilio TURN credentials: %s", e)
        return []


async def resolve_ice_servers() -> list[dict]:
    """ICE servers for a new peer connection."""
    fallback = get_fallback_ice_servers()

    static = static_turn_servers()
    if static:
        log.info("Using static TURN server %s", settings.turn_url)
        return static + fallback

    ephemeral = await fetch_twilio_turn_credentials()
    if ephemeral:
        return ephemeral + fallback

    return fallback
