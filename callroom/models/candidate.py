"""Candidate log model."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, DateTime, Enum, ForeignKey, Integer
from sqlalchemy.orm import Mapped, mapped_column, relationship

if TYPE_CHECKING:
    from .room import Room

from ..schemas.signaling import CandidateLog
from .base import Base


class Candidate(Base):
    """One trickled ICE candidate. Rows are only ever inserted, then removed with the room."""

    __tablename__ = "room_candidates"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    room_id: Mapped[str] = mapped_column(ForeignKey("rooms.id", ondelete="CASCADE"), index=True, nullable=False)
    log: Mapped[CandidateLog] = mapped_column(Enum(CandidateLog, name="candidate_log"), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), nullable=False
    )

    room: Mapped["Room"] = relationship("Room", back_populates="candidates")
