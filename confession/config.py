"""Application configuration via environment variables."""

from __future__ import annotations

import logging

from pydantic_settings import BaseSettings

log = logging.getLogger("confession.config")


class Settings(BaseSettings):
    # Invitation protocol
    invitation_timeout_seconds: float = 30.0
    anonymous_display_name: str = "Anonymous Confessor"

    # Store layout
    invitations_root: str = "invitations"
    rooms_root: str = "confession_rooms"
    users_collection: str = "users"

    # Firebase
    firebase_database_url: str = ""
    firebase_api_key: str = ""

    # WebRTC
    ice_servers_json: str = (
        '[{"urls":"stun:stun.l.google.com:19302"},'
        '{"urls":"stun:stun1.l.google.com:19302"}]'
    )
    turn_url: str = ""          # e.g. "your.turn.server.com:3478"
    turn_tls_port: int = 5349
    turn_username: str = ""
    turn_password: str = ""

    # Twilio NTS (ephemeral TURN credentials)
    twilio_account_sid: str = ""
    twilio_auth_token: str = ""

    # Admin auth
    admin_api_key: str = ""

    # Server
    host: str = "127.0.0.1"
    port: int = 8080
    debug: bool = False

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}

    def validate_startup(self) -> list[str]:
        """Validate configuration at startup. Returns warnings, raises on errors."""
        warnings: list[str] = []
        _placeholders = {"your_turn_username", "your_turn_password", "AC..."}

        if self.invitation_timeout_seconds <= 0:
            raise ValueError(
                "INVITATION_TIMEOUT_SECONDS must be positive, "
                f"got {self.invitation_timeout_seconds}"
            )

        if not self.firebase_database_url:
            warnings.append(
                "FIREBASE_DATABASE_URL not set. Only the in-memory store is usable."
            )

        if not self.admin_api_key:
            if self.debug:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are open (DEBUG=true)."
                )
            else:
                warnings.append(
                    "ADMIN_API_KEY not set. Admin APIs are locked in production. "
                    "Set ADMIN_API_KEY in .env to enable admin access."
                )

        if self.turn_url and (
            not self.turn_username
            or not self.turn_password
            or self.turn_username in _placeholders
            or self.turn_password in _placeholders
        ):
            warnings.append(
                "TURN_URL is set without real credentials. The TURN server will be skipped."
            )

        if self.twilio_account_sid in _placeholders:
            warnings.append("TWILIO_ACCOUNT_SID is a placeholder. No ephemeral TURN credentials.")

        return warnings


settings = Settings()
