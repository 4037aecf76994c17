"""Data contracts for call endpoints."""
from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class CreateRoomRequest(BaseModel):
    creator: str | None = Field(default=None, description="Identity shown as the room creator")


class CreateRoomResponse(BaseModel):
    room_id: str = Field(..., description="Room id to share with the other participant")


class JoinRoomRequest(BaseModel):
    creator: str | None = Field(default=None, description="Identity of the joining participant")


class CallStateResponse(BaseModel):
    room_id: str | None = None
    state: str
    role: str | None = None
    peer_state: str | None = None
    media_ready: bool
    error: str | None = None


class RoomSummary(BaseModel):
    id: str
    creator: str
    created_at: datetime
    has_offer: bool
    has_answer: bool


class RoomListResponse(BaseModel):
    items: list[RoomSummary]
