"""Room repository helpers."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Select, delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.candidate import Candidate
from ..models.room import Room


async def get_by_id(session: AsyncSession, room_id: str) -> Room | None:
    """Return a room record by identifier."""

    return await session.get(Room, room_id)


async def create(
    session: AsyncSession,
    *,
    room_id: str,
    offer: dict[str, Any],
    creator: str,
) -> Room:
    """Insert a room holding only its offer."""

    room = Room(
        id=room_id,
        offer=offer,
        answer=None,
        creator=creator,
        created_at=datetime.now(timezone.utc),
    )
    session.add(room)
    await session.flush()
    return room


async def list_recent(session: AsyncSession, *, limit: int = 100) -> list[Room]:
    """Return rooms, newest first."""

    stmt: Select[tuple[Room]] = select(Room).order_by(Room.created_at.desc()).limit(limit)
    result = await session.execute(stmt)
    return list(result.scalars())


async def set_answer_if_absent(session: AsyncSession, room_id: str, answer: dict[str, Any]) -> bool:
    """Write the answer only when none exists. Returns whether the row was updated."""

    stmt = (
        update(Room)
        .where(Room.id == room_id, Room.answer.is_(None))
        .values(answer=answer)
        .execution_options(synchronize_session=False)
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def delete_with_candidates(session: AsyncSession, room_id: str) -> None:
    """Remove both candidate logs and the room record in one transaction."""

    await session.execute(delete(Candidate).where(Candidate.room_id == room_id))
    await session.execute(delete(Room).where(Room.id == room_id))
