"""In-memory signaling store."""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Dict, List
from uuid import uuid4

from ..core.errors import AlreadyAnswered, RoomNotFound
from ..schemas.signaling import (
    CandidateLog,
    CandidateRecord,
    IceCandidate,
    RoomSnapshot,
    SessionDescription,
)
from .store import CandidateCallback, RoomCallback, Subscription, dispatch

_END = object()


@dataclass(slots=True)
class _Feed:
    """Per-subscription delivery queue."""

    subscription: Subscription
    queue: asyncio.Queue


@dataclass
class _RoomEntry:
    snapshot: RoomSnapshot
    logs: Dict[CandidateLog, List[CandidateRecord]] = field(
        default_factory=lambda: {log: [] for log in CandidateLog}
    )
    candidate_feeds: Dict[CandidateLog, List[_Feed]] = field(
        default_factory=lambda: {log: [] for log in CandidateLog}
    )
    room_feeds: List[_Feed] = field(default_factory=list)


class InMemorySignalingStore:
    """Keep rooms and candidate logs in process and fan out changes to watchers."""

    def __init__(self, id_factory: Callable[[], str] | None = None) -> None:
        self._rooms: Dict[str, _RoomEntry] = {}
        self._lock = asyncio.Lock()
        self._id_factory = id_factory or (lambda: str(uuid4()))

    async def create_room(self, offer: SessionDescription, *, creator: str) -> str:
        async with self._lock:
            room_id = self._id_factory()
            if room_id in self._rooms:
                raise ValueError(f"Room id {room_id!r} is already in use")
            self._rooms[room_id] = _RoomEntry(
                snapshot=RoomSnapshot(
                    id=room_id,
                    offer=offer,
                    creator=creator,
                    created_at=datetime.now(timezone.utc),
                )
            )
            return room_id

    async def get_room(self, room_id: str) -> RoomSnapshot | None:
        async with self._lock:
            entry = self._rooms.get(room_id)
            return entry.snapshot if entry else None

    async def list_rooms(self) -> list[RoomSnapshot]:
        async with self._lock:
            rooms = [entry.snapshot for entry in self._rooms.values()]
        return sorted(rooms, key=lambda room: room.created_at, reverse=True)

    async def set_answer(self, room_id: str, answer: SessionDescription) -> None:
        async with self._lock:
            entry = self._require(room_id)
            if entry.snapshot.answer is not None:
                raise AlreadyAnswered(room_id)
            entry.snapshot = entry.snapshot.model_copy(update={"answer": answer})
            self._publish(entry.room_feeds, entry.snapshot)

    async def append_candidate(
        self, room_id: str, log: CandidateLog, candidate: IceCandidate
    ) -> CandidateRecord:
        async with self._lock:
            entry = self._require(room_id)
            record = CandidateRecord(
                id=uuid4().hex,
                room_id=room_id,
                log=log,
                payload=candidate.to_payload(),
            )
            entry.logs[log].append(record)
            self._publish(entry.candidate_feeds[log], record)
            return record

    async def list_candidates(self, room_id: str, log: CandidateLog) -> list[CandidateRecord]:
        async with self._lock:
            entry = self._rooms.get(room_id)
            return list(entry.logs[log]) if entry else []

    async def watch_candidates(
        self,
        room_id: str,
        log: CandidateLog,
        on_added: CandidateCallback,
        *,
        include_existing: bool = False,
    ) -> Subscription:
        async with self._lock:
            entry = self._require(room_id)
            feed = self._open_feed(f"{room_id}/{log.value}", on_added)
            if include_existing:
                for record in entry.logs[log]:
                    feed.queue.put_nowait(record)
            entry.candidate_feeds[log].append(feed)
            return feed.subscription

    async def watch_room(self, room_id: str, on_change: RoomCallback) -> Subscription:
        async with self._lock:
            entry = self._require(room_id)
            feed = self._open_feed(room_id, on_change)
            entry.room_feeds.append(feed)
            return feed.subscription

    async def delete_room(self, room_id: str) -> None:
        """Drop the room together with both candidate logs. Missing rooms are ignored."""

        async with self._lock:
            entry = self._rooms.pop(room_id, None)
            if entry is None:
                return
            self._publish(entry.room_feeds, None)
            self._publish(entry.room_feeds, _END)
            for feeds in entry.candidate_feeds.values():
                self._publish(feeds, _END)

    def _require(self, room_id: str) -> _RoomEntry:
        entry = self._rooms.get(room_id)
        if entry is None:
            raise RoomNotFound(room_id)
        return entry

    def _open_feed(self, name: str, callback: Callable) -> _Feed:
        subscription = Subscription(name)
        queue: asyncio.Queue = asyncio.Queue()
        subscription.attach(asyncio.create_task(self._deliver(subscription, queue, callback)))
        return _Feed(subscription=subscription, queue=queue)

    @staticmethod
    def _publish(feeds: List[_Feed], item: object) -> None:
        feeds[:] = [feed for feed in feeds if feed.subscription.active]
        for feed in feeds:
            feed.queue.put_nowait(item)

    @staticmethod
    async def _deliver(subscription: Subscription, queue: asyncio.Queue, callback: Callable) -> None:
        while subscription.active:
            item = await queue.get()
            if item is _END:
                return
            await dispatch(subscription, callback, item)
