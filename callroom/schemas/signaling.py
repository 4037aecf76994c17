"""Signaling records exchanged through the rendezvous store."""
from __future__ import annotations

from datetime import datetime
import enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class CandidateLog(str, enum.Enum):
    """The two append-only candidate logs kept under every room."""

    CALLER = "callerCandidates"
    CALLEE = "calleeCandidates"


class SessionDescription(BaseModel):
    """SDP offer or answer, stored as ``{type, sdp}``."""

    model_config = ConfigDict(frozen=True)

    type: Literal["offer", "answer"]
    sdp: str = Field(..., min_length=1)


class IceCandidate(BaseModel):
    """Serialized ICE candidate in the browser's ``RTCIceCandidate.toJSON()`` shape."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    candidate: str
    sdp_mid: str | None = Field(default=None, alias="sdpMid")
    sdp_mline_index: int | None = Field(default=None, alias="sdpMLineIndex")
    username_fragment: str | None = Field(default=None, alias="usernameFragment")

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class RoomSnapshot(BaseModel):
    """Point-in-time view of a room record."""

    model_config = ConfigDict(frozen=True)

    id: str
    offer: SessionDescription | None = None
    answer: SessionDescription | None = None
    creator: str = "Anonymous"
    created_at: datetime


class CandidateRecord(BaseModel):
    """One entry of a room's candidate log. ``payload`` is opaque to the store."""

    model_config = ConfigDict(frozen=True)

    id: str
    room_id: str
    log: CandidateLog
    payload: dict[str, Any]

    def to_candidate(self) -> IceCandidate:
        return IceCandidate.model_validate(self.payload)
