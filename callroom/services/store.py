"""SignalingStore contract shared by the memory and SQL backends.

A store is the rendezvous point for two browsers: it keeps one record per
room (offer, answer, creator, creation time) and two append-only candidate
logs under it. Live changes are delivered through :class:`Subscription`
objects returned by the ``watch_*`` methods.
"""
from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from typing import Any, Awaitable, Callable, Protocol, TypeVar, Union

from ..schemas.signaling import (
    CandidateLog,
    CandidateRecord,
    IceCandidate,
    RoomSnapshot,
    SessionDescription,
)

T = TypeVar("T")

CandidateCallback = Callable[[CandidateRecord], Union[Awaitable[None], None]]
RoomCallback = Callable[[Union[RoomSnapshot, None]], Union[Awaitable[None], None]]

logger = logging.getLogger(__name__)


class Subscription:
    """Handle for a running watch.

    Delivery happens on a dedicated task. Once :meth:`cancel` returns no
    further callbacks run, unless cancel was invoked from inside a callback,
    in which case that callback is the last one.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._task: asyncio.Task[None] | None = None
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    @property
    def finished(self) -> bool:
        """True once the feed has ended, e.g. because its room was deleted."""

        return self._task is not None and self._task.done()

    def attach(self, task: asyncio.Task[None]) -> None:
        self._task = task

    async def cancel(self) -> None:
        if not self._active:
            return
        self._active = False
        task = self._task
        if task is None or self.finished or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task


async def dispatch(subscription: Subscription, callback: Callable[[T], Any], item: T) -> None:
    """Run one callback, logging failures so a bad listener cannot stop the feed."""

    if not subscription.active:
        return
    try:
        result = callback(item)
        if inspect.isawaitable(result):
            await result
    except asyncio.CancelledError:
        raise
    except Exception:
        logger.exception("Watch callback failed for %s", subscription.name)


class SignalingStore(Protocol):
    """Create/read/update/append/watch/delete over rooms and their candidate logs."""

    async def create_room(self, offer: SessionDescription, *, creator: str) -> str:
        ...

    async def get_room(self, room_id: str) -> RoomSnapshot | None:
        ...

    async def list_rooms(self) -> list[RoomSnapshot]:
        ...

    async def set_answer(self, room_id: str, answer: SessionDescription) -> None:
        ...

    async def append_candidate(
        self, room_id: str, log: CandidateLog, candidate: IceCandidate
    ) -> CandidateRecord:
        ...

    async def list_candidates(self, room_id: str, log: CandidateLog) -> list[CandidateRecord]:
        ...

    async def watch_candidates(
        self,
        room_id: str,
        log: CandidateLog,
        on_added: CandidateCallback,
        *,
        include_existing: bool = False,
    ) -> Subscription:
        ...

    async def watch_room(self, room_id: str, on_change: RoomCallback) -> Subscription:
        ...

    async def delete_room(self, room_id: str) -> None:
        ...
