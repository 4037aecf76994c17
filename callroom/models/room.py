"""Room model."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

if TYPE_CHECKING:
    from .candidate import Candidate

from .base import Base


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Room(Base):
    """Rendezvous record holding the offer and, once joined, the answer."""

    __tablename__ = "rooms"

    id: Mapped[str] = mapped_column(String, primary_key=True)
    offer: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True))
    answer: Mapped[dict[str, Any] | None] = mapped_column(JSON(none_as_null=True))
    creator: Mapped[str] = mapped_column(String, default="Anonymous", nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    candidates: Mapped[list["Candidate"]] = relationship(
        "Candidate", back_populates="room", cascade="all, delete-orphan", passive_deletes=True
    )
