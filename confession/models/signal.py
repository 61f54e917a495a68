"""Pydantic models for room-scoped signaling and chat payloads."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic import ValidationError as PydanticValidationError

log = logging.getLogger("confession.models.signal")


class SignalType(str, Enum):
    OFFER = "OFFER"
    ANSWER = "ANSWER"
    ICE_CANDIDATE = "ICE_CANDIDATE"


@dataclass(frozen=True)
class IceCandidate:
    """A single ICE candidate as exchanged between peers."""

    sdp: str
    sdp_mid: Optional[str] = None
    sdp_m_line_index: Optional[int] = None


class SignalMessage(BaseModel):
    """Negotiation payload published under a room.

    OFFER and ANSWER carry ``sdp``; ICE_CANDIDATE carries the three
    ``ice_candidate_*`` fields.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    type: SignalType
    sdp: Optional[str] = None
    ice_candidate_sdp: Optional[str] = Field(None, alias="iceCandidateSdp")
    ice_candidate_sdp_mid: Optional[str] = Field(None, alias="iceCandidateSdpMid")
    ice_candidate_sdp_m_line_index: Optional[int] = Field(
        None, alias="iceCandidateSdpMLineIndex"
    )
    sender_id: Optional[str] = Field(None, alias="senderId")

    @model_validator(mode="after")
    def _check_payload(self) -> "SignalMessage":
        if self.type in (SignalType.OFFER, SignalType.ANSWER) and not self.sdp:
            raise ValueError(f"{self.type.value} requires sdp")
        if self.type is SignalType.ICE_CANDIDATE and not self.ice_candidate_sdp:
            raise ValueError("ICE_CANDIDATE requires iceCandidateSdp")
        return self

    @classmethod
    def offer(cls, sdp: str, sender_id: str | None = None) -> "SignalMessage":
        return cls(type=SignalType.OFFER, sdp=sdp, sender_id=sender_id)

    @classmethod
    def answer(cls, sdp: str, sender_id: str | None = None) -> "SignalMessage":
        return cls(type=SignalType.ANSWER, sdp=sdp, sender_id=sender_id)

    @classmethod
    def ice_candidate(
        cls, candidate: IceCandidate, sender_id: str | None = None
    ) -> "SignalMessage":
        return cls(
            type=SignalType.ICE_CANDIDATE,
            ice_candidate_sdp=candidate.sdp,
            ice_candidate_sdp_mid=candidate.sdp_mid,
            ice_candidate_sdp_m_line_index=candidate.sdp_m_line_index,
            sender_id=sender_id,
        )

    @property
    def candidate(self) -> Optional[IceCandidate]:
        if self.type is not SignalType.ICE_CANDIDATE:
            return None
        return IceCandidate(
            sdp=self.ice_candidate_sdp or "",
            sdp_mid=self.ice_candidate_sdp_mid,
            sdp_m_line_index=self.ice_candidate_sdp_m_line_index,
        )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")

    @classmethod
    def from_wire(cls, data: Any) -> Optional["SignalMessage"]:
        if not isinstance(data, dict):
            return None
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            log.warning("Dropping malformed signal: %s", e)
            return None


class ChatMessage(BaseModel):
    """Text message exchanged inside a room during a call."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    message_id: str = Field("", alias="messageId")
    sender_id: str = Field("", alias="senderId")
    sender_display_name: str = Field("User", alias="senderDisplayName")
    text: str = ""
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True)

    @classmethod
    def from_wire(cls, data: Any, key: str = "") -> Optional["ChatMessage"]:
        if not isinstance(data, dict):
            return None
        if key and not data.get("messageId"):
            data = {**data, "messageId": key}
        try:
            return cls.model_validate(data)
        except PydanticValidationError as e:
            log.warning("Dropping malformed chat message: %s", e)
            return None
