"""Candidate log repository helpers."""
from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..models.candidate import Candidate
from ..schemas.signaling import CandidateLog


async def append(
    session: AsyncSession,
    *,
    room_id: str,
    log: CandidateLog,
    payload: dict[str, Any],
) -> Candidate:
    """Append a candidate to one of the room's logs."""

    candidate = Candidate(
        room_id=room_id,
        log=log,
        payload=payload,
        created_at=datetime.now(timezone.utc),
    )
    session.add(candidate)
    await session.flush()
    return candidate


async def list_after(
    session: AsyncSession,
    *,
    room_id: str,
    log: CandidateLog,
    after_id: int = 0,
) -> list[Candidate]:
    """Return log entries with an id greater than ``after_id`` in append order."""

    stmt: Select[tuple[Candidate]] = (
        select(Candidate)
        .where(Candidate.room_id == room_id, Candidate.log == log, Candidate.id > after_id)
        .order_by(Candidate.id.asc())
    )
    result = await session.execute(stmt)
    return list(result.scalars())


async def last_id(session: AsyncSession, *, room_id: str, log: CandidateLog) -> int:
    """Return the highest id currently in the log, or 0 when it is empty."""

    stmt = select(func.max(Candidate.id)).where(Candidate.room_id == room_id, Candidate.log == log)
    result = await session.execute(stmt)
    return result.scalar_one_or_none() or 0
