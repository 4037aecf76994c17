"""Shared fakes for signaling tests: capture devices, tracks and peer connections."""
from __future__ import annotations

import asyncio
import itertools
from typing import Any, Callable
from uuid import uuid4

import pytest
from pyee.asyncio import AsyncIOEventEmitter

from callroom.core.errors import StoreUnavailable
from callroom.schemas.signaling import CandidateLog, IceCandidate, SessionDescription
from callroom.services.memory_store import InMemorySignalingStore

_host_octets = itertools.count(1)


class FakeTrack:
    def __init__(self, kind: str, track_id: str | None = None) -> None:
        self.kind = kind
        self.id = track_id or uuid4().hex
        self.readyState = "live"
        self.stop_calls = 0

    def stop(self) -> None:
        self.stop_calls += 1
        self.readyState = "ended"


class FakeCapture:
    def __init__(self, error: Exception | None = None, kinds: tuple[str, ...] = ("audio", "video")) -> None:
        self.error = error
        self.kinds = kinds
        self.opened: list[list[FakeTrack]] = []

    def open(self) -> list[FakeTrack]:
        if self.error is not None:
            raise self.error
        tracks = [FakeTrack(kind) for kind in self.kinds]
        self.opened.append(tracks)
        return tracks


def make_candidate(octet: int | None = None) -> IceCandidate:
    octet = octet if octet is not None else next(_host_octets)
    return IceCandidate(
        candidate=f"candidate:{octet} 1 udp 2122260223 10.0.0.{octet} {50000 + octet} typ host",
        sdpMid="0",
        sdpMLineIndex=0,
    )


class FakePeerConnection(AsyncIOEventEmitter):
    """Records every call and insists that candidates follow the remote description."""

    def __init__(self, candidates: list[IceCandidate], fail_on: set[str] | None = None) -> None:
        super().__init__()
        self.candidates = candidates
        self.fail_on = fail_on or set()
        self.calls: list[str] = []
        self.tracks: list[Any] = []
        self.applied: list[IceCandidate] = []
        self.local_description: SessionDescription | None = None
        self.remote_description: SessionDescription | None = None
        self.connection_state = "new"
        self.closed = False

    def _record(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_on:
            raise RuntimeError(f"{name} failed")

    def add_track(self, track: Any) -> None:
        self._record("add_track")
        self.tracks.append(track)

    async def create_offer(self) -> SessionDescription:
        self._record("create_offer")
        return SessionDescription(type="offer", sdp=f"v=0 offer {id(self)}")

    async def create_answer(self) -> SessionDescription:
        self._record("create_answer")
        if self.remote_description is None:
            raise RuntimeError("answer requested before the offer was applied")
        return SessionDescription(type="answer", sdp=f"v=0 answer {id(self)}")

    async def set_local_description(self, description: SessionDescription) -> None:
        self._record("set_local_description")
        self.local_description = description
        for candidate in self.candidates:
            self.emit("icecandidate", candidate)
        self.emit("icecandidate", None)

    async def set_remote_description(self, description: SessionDescription) -> None:
        self._record("set_remote_description")
        self.remote_description = description

    async def add_ice_candidate(self, candidate: IceCandidate) -> None:
        self._record("add_ice_candidate")
        if self.remote_description is None:
            raise RuntimeError("candidate applied before the remote description")
        self.applied.append(candidate)

    async def close(self) -> None:
        self._record("close")
        self.closed = True
        self.connection_state = "closed"

    def change_state(self, state: str) -> None:
        self.connection_state = state
        self.emit("connectionstatechange", state)

    def deliver_track(self, track: Any) -> None:
        self.emit("track", track)


class FakePeerFactory:
    def __init__(self, candidates_per_peer: int = 2, fail_on: set[str] | None = None) -> None:
        self.candidates_per_peer = candidates_per_peer
        self.fail_on = fail_on
        self.created: list[FakePeerConnection] = []

    def __call__(self) -> FakePeerConnection:
        peer = FakePeerConnection(
            [make_candidate() for _ in range(self.candidates_per_peer)], fail_on=self.fail_on
        )
        self.created.append(peer)
        return peer


class FlakyStore(InMemorySignalingStore):
    """In-memory store whose appends or deletes can be switched to fail."""

    def __init__(self, id_factory: Callable[[], str] | None = None) -> None:
        super().__init__(id_factory=id_factory)
        self.fail_appends = False
        self.fail_deletes = False
        self.delete_attempts = 0

    async def append_candidate(self, room_id: str, log: CandidateLog, candidate: IceCandidate):
        if self.fail_appends:
            raise StoreUnavailable("store offline")
        return await super().append_candidate(room_id, log, candidate)

    async def delete_room(self, room_id: str) -> None:
        self.delete_attempts += 1
        if self.fail_deletes:
            raise StoreUnavailable("store offline")
        await super().delete_room(room_id)


async def eventually(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds or the timeout expires."""

    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.01)


@pytest.fixture
def peer_factory() -> FakePeerFactory:
    return FakePeerFactory()


@pytest.fixture
def fixed_room_ids() -> Callable[[], str]:
    ids = iter(["r1", "r2", "r3", "r4"])
    return lambda: next(ids)


class GatedStore(InMemorySignalingStore):
    """In-memory store that parks the first call of each named method until ``release()``."""

    def __init__(self, id_factory: Callable[[], str] | None = None, hold: tuple[str, ...] = ()) -> None:
        super().__init__(id_factory=id_factory)
        self.hold = set(hold)
        self.entered = asyncio.Event()
        self._gate = asyncio.Event()

    def release(self) -> None:
        self._gate.set()

    async def _pass(self, name: str) -> None:
        if name in self.hold:
            self.hold.discard(name)
            self.entered.set()
            await self._gate.wait()

    async def get_room(self, room_id: str):
        await self._pass("get_room")
        return await super().get_room(room_id)

    async def create_room(self, offer: SessionDescription, *, creator: str) -> str:
        await self._pass("create_room")
        return await super().create_room(offer, creator=creator)

    async def set_answer(self, room_id: str, answer: SessionDescription) -> None:
        await self._pass("set_answer")
        await super().set_answer(room_id, answer)
