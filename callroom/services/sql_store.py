"""Signaling store backed by an async SQLAlchemy database.

Rooms live in the ``rooms`` table and both candidate logs in
``room_candidates``. Live notifications are produced by polling with a bounded
interval; candidate rows carry an autoincrement id, which gives each watch a
cursor that preserves append order and never re-delivers a row.
"""
from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone
import logging
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.errors import AlreadyAnswered, RoomNotFound, StoreUnavailable
from ..models.candidate import Candidate
from ..models.room import Room
from ..repositories import candidates as candidates_repo
from ..repositories import rooms as rooms_repo
from ..schemas.signaling import (
    CandidateLog,
    CandidateRecord,
    IceCandidate,
    RoomSnapshot,
    SessionDescription,
)
from .store import CandidateCallback, RoomCallback, Subscription, dispatch

logger = logging.getLogger(__name__)


def _ensure_tz(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_snapshot(room: Room) -> RoomSnapshot:
    return RoomSnapshot(
        id=room.id,
        offer=SessionDescription.model_validate(room.offer) if room.offer else None,
        answer=SessionDescription.model_validate(room.answer) if room.answer else None,
        creator=room.creator,
        created_at=_ensure_tz(room.created_at),
    )


def _to_record(row: Candidate) -> CandidateRecord:
    return CandidateRecord(id=str(row.id), room_id=row.room_id, log=row.log, payload=dict(row.payload))


class SqlSignalingStore:
    """SignalingStore implementation over SQLAlchemy's asyncio extension."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        poll_interval: float = 0.5,
    ) -> None:
        self._session_factory = session_factory
        self._poll_interval = poll_interval

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except (SQLAlchemyError, OSError) as exc:
            raise StoreUnavailable("Signaling database unavailable", {"error": str(exc)}) from exc

    async def create_room(self, offer: SessionDescription, *, creator: str) -> str:
        room_id = str(uuid4())
        async with self._transaction() as session:
            await rooms_repo.create(session, room_id=room_id, offer=offer.model_dump(), creator=creator)
        return room_id

    async def get_room(self, room_id: str) -> RoomSnapshot | None:
        async with self._transaction() as session:
            room = await rooms_repo.get_by_id(session, room_id)
            return _to_snapshot(room) if room else None

    async def list_rooms(self) -> list[RoomSnapshot]:
        async with self._transaction() as session:
            return [_to_snapshot(room) for room in await rooms_repo.list_recent(session)]

    async def set_answer(self, room_id: str, answer: SessionDescription) -> None:
        async with self._transaction() as session:
            updated = await rooms_repo.set_answer_if_absent(session, room_id, answer.model_dump())
            if not updated:
                exists = await rooms_repo.get_by_id(session, room_id)
                if exists is None:
                    raise RoomNotFound(room_id)
                raise AlreadyAnswered(room_id)

    async def append_candidate(
        self, room_id: str, log: CandidateLog, candidate: IceCandidate
    ) -> CandidateRecord:
        async with self._transaction() as session:
            if await rooms_repo.get_by_id(session, room_id) is None:
                raise RoomNotFound(room_id)
            row = await candidates_repo.append(
                session, room_id=room_id, log=log, payload=candidate.to_payload()
            )
            return _to_record(row)

    async def list_candidates(self, room_id: str, log: CandidateLog) -> list[CandidateRecord]:
        async with self._transaction() as session:
            rows = await candidates_repo.list_after(session, room_id=room_id, log=log)
            return [_to_record(row) for row in rows]

    async def watch_candidates(
        self,
        room_id: str,
        log: CandidateLog,
        on_added: CandidateCallback,
        *,
        include_existing: bool = False,
    ) -> Subscription:
        async with self._transaction() as session:
            if await rooms_repo.get_by_id(session, room_id) is None:
                raise RoomNotFound(room_id)
            cursor = 0
            if not include_existing:
                cursor = await candidates_repo.last_id(session, room_id=room_id, log=log)

        subscription = Subscription(f"{room_id}/{log.value}")
        subscription.attach(
            asyncio.create_task(self._poll_candidates(subscription, room_id, log, cursor, on_added))
        )
        return subscription

    async def watch_room(self, room_id: str, on_change: RoomCallback) -> Subscription:
        current = await self.get_room(room_id)
        if current is None:
            raise RoomNotFound(room_id)

        subscription = Subscription(room_id)
        subscription.attach(asyncio.create_task(self._poll_room(subscription, current, on_change)))
        return subscription

    async def delete_room(self, room_id: str) -> None:
        async with self._transaction() as session:
            await rooms_repo.delete_with_candidates(session, room_id)

    async def _poll_candidates(
        self,
        subscription: Subscription,
        room_id: str,
        log: CandidateLog,
        cursor: int,
        on_added: CandidateCallback,
    ) -> None:
        while subscription.active:
            try:
                async with self._transaction() as session:
                    if await rooms_repo.get_by_id(session, room_id) is None:
                        logger.info("Room %s is gone; stopping %s", room_id, subscription.name)
                        return
                    rows = await candidates_repo.list_after(
                        session, room_id=room_id, log=log, after_id=cursor
                    )
                    records = [_to_record(row) for row in rows]
            except StoreUnavailable as exc:
                logger.warning("Candidate poll failed for %s: %s", subscription.name, exc)
                records = []

            for record in records:
                cursor = int(record.id)
                await dispatch(subscription, on_added, record)

            await asyncio.sleep(self._poll_interval)

    async def _poll_room(
        self,
        subscription: Subscription,
        last_seen: RoomSnapshot,
        on_change: RoomCallback,
    ) -> None:
        while subscription.active:
            await asyncio.sleep(self._poll_interval)
            try:
                snapshot = await self.get_room(last_seen.id)
            except StoreUnavailable as exc:
                logger.warning("Room poll failed for %s: %s", subscription.name, exc)
                continue

            if snapshot is None:
                await dispatch(subscription, on_change, None)
                return
            if snapshot != last_seen:
                last_seen = snapshot
                await dispatch(subscription, on_change, snapshot)
