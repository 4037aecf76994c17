"""One peer connection and its signaling exchange.

The imperative parts of the caller and callee flows (create the peer, build
and commit descriptions, write the room) run inside :meth:`initiate` and
:meth:`join`. Everything that arrives asynchronously afterwards goes through
a FIFO queue drained by a single pump task, with the transition rules in
:mod:`callroom.services.protocol` deciding what to do. Because one consumer
handles events in arrival order and applying the answer flushes the early
candidates before the next queued event is looked at, no candidate ever
reaches the peer connection before its remote description.

Observers subscribe with ``session.on(...)`` to ``statechange``,
``roomassigned``, ``peerstate`` and ``failure``.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Awaitable, TypeVar

from pydantic import ValidationError
from pyee.asyncio import AsyncIOEventEmitter

from ..core.errors import (
    AlreadyAnswered,
    CallError,
    CallInProgress,
    MediaNotReady,
    NoOffer,
    RoomNotFound,
    SessionClosed,
    SignalingFailure,
)
from ..schemas.signaling import CandidateRecord, RoomSnapshot
from .media import MediaEndpoint, RemoteSink, TrackSet
from .peer import PeerConnection, PeerConnectionFactory
from .protocol import (
    AnswerObserved,
    ApplyAnswer,
    ApplyCandidate,
    AttachRemoteTrack,
    Effect,
    Event,
    FailSession,
    LocalCandidateGathered,
    PeerStateChanged,
    ProtocolState,
    PublishCandidate,
    RemoteCandidateReceived,
    RemoteDescriptionApplied,
    RemoteTrackArrived,
    ReportPeerState,
    SessionRole,
    SessionState,
    SignalingChannelOpened,
    can_transition,
    step,
)
from .store import SignalingStore, Subscription

T = TypeVar("T")

logger = logging.getLogger(__name__)


class ConnectionSession(AsyncIOEventEmitter):
    """Caller or callee side of a single call."""

    def __init__(
        self,
        *,
        store: SignalingStore,
        media: MediaEndpoint,
        peer_factory: PeerConnectionFactory,
        creator: str = "Anonymous",
        cleanup_attempts: int = 3,
        cleanup_backoff: float = 0.2,
    ) -> None:
        super().__init__()
        self._store = store
        self._media = media
        self._peer_factory = peer_factory
        self._creator = creator
        self._cleanup_attempts = max(1, cleanup_attempts)
        self._cleanup_backoff = cleanup_backoff

        self._state = SessionState.IDLE
        self._role: SessionRole | None = None
        self._protocol: ProtocolState | None = None
        self._peer: PeerConnection | None = None
        self._local: TrackSet | None = None
        self._remote: RemoteSink | None = None
        self._room_id: str | None = None
        self._candidate_watch: Subscription | None = None
        self._room_watch: Subscription | None = None

        self._inbox: asyncio.Queue[Event] = asyncio.Queue()
        self._pump_task: asyncio.Task[None] | None = None
        self._closing = False
        self._torn_down = asyncio.Event()
        self._waiters: list[tuple[frozenset[SessionState], asyncio.Future[SessionState]]] = []

        self.peer_state = "new"
        self.error: CallError | None = None

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def role(self) -> SessionRole | None:
        return self._role

    @property
    def room_id(self) -> str | None:
        return self._room_id

    @property
    def peer(self) -> PeerConnection | None:
        return self._peer

    @property
    def remote_sink(self) -> RemoteSink | None:
        return self._remote

    # Caller and callee flows

    async def initiate(self) -> str:
        """Create a room holding our offer; the answer is picked up in the background."""

        self._validate_start()
        self._begin(SessionRole.CALLER)
        try:
            peer = self._open_peer()
            self._set_state(SessionState.OFFERING)

            offer = await self._signal("create offer", peer.create_offer())
            await self._signal("set local description", peer.set_local_description(offer))

            room_id = await self._store.create_room(peer.local_description or offer, creator=self._creator)
            if self._closing:
                await self._discard_room(room_id)
                raise SessionClosed("Session closed while the room was being created")
            self._room_id = room_id
            self.emit("roomassigned", room_id)
            self._set_state(SessionState.AWAITING_ANSWER)
            self._post(SignalingChannelOpened(room_id))

            self._candidate_watch = await self._subscribe(
                self._store.watch_candidates(
                    room_id, self._role.remote_log, self._on_remote_candidate, include_existing=True
                )
            )
            self._room_watch = await self._subscribe(self._store.watch_room(room_id, self._on_room_change))

            # The answer may have landed before the room watch started.
            current = await self._store.get_room(room_id)
            self._checkpoint()
            if current is not None and current.answer is not None:
                self._post(AnswerObserved(current.answer))
        except CallError as exc:
            await self._fail(exc)
            raise
        return room_id

    async def join(self, room_id: str) -> None:
        """Answer the offer stored in ``room_id``."""

        self._validate_start()
        room = await self._store.get_room(room_id)
        self._checkpoint()
        if room is None:
            raise RoomNotFound(room_id)
        if room.offer is None:
            raise NoOffer(room_id)

        self._begin(SessionRole.CALLEE)
        try:
            peer = self._open_peer()
            self._set_state(SessionState.ANSWERING)

            await self._signal("apply offer", peer.set_remote_description(room.offer))
            self._post(RemoteDescriptionApplied())
            answer = await self._signal("create answer", peer.create_answer())
            await self._signal("set local description", peer.set_local_description(answer))

            try:
                await self._store.set_answer(room_id, peer.local_description or answer)
            except AlreadyAnswered as exc:
                raise SignalingFailure("Room was answered by another participant", {"room_id": room_id}) from exc
            if self._closing:
                await self._discard_room(room_id)
                raise SessionClosed("Session closed while the answer was being stored")
            self._room_id = room_id
            self.emit("roomassigned", room_id)
            self._set_state(SessionState.CONNECTED)
            self._post(SignalingChannelOpened(room_id))

            self._candidate_watch = await self._subscribe(
                self._store.watch_candidates(
                    room_id, self._role.remote_log, self._on_remote_candidate, include_existing=True
                )
            )
        except CallError as exc:
            await self._fail(exc)
            raise

    async def close(self) -> None:
        """Tear the call down. Repeated calls, or calls after a failure, do nothing."""

        if self._state.terminal:
            return
        if self._closing:
            await self._torn_down.wait()
            return
        await self._teardown()
        self._set_state(SessionState.CLOSED)

    async def wait_for_state(self, *states: SessionState) -> SessionState:
        """Wait until one of ``states`` or a terminal state is reached."""

        wanted = frozenset(states)
        if self._state in wanted or self._state.terminal:
            return self._state
        future: asyncio.Future[SessionState] = asyncio.get_running_loop().create_future()
        self._waiters.append((wanted, future))
        return await future

    async def drain(self) -> None:
        """Wait until every queued event has been handled."""

        await self._inbox.join()

    # Setup helpers

    def _validate_start(self) -> None:
        if self._state.terminal:
            raise SessionClosed("Session already finished", {"state": self._state.value})
        if self._state is not SessionState.IDLE:
            raise CallInProgress("Session already started", {"state": self._state.value})
        if not self._media.ready:
            raise MediaNotReady("Open the camera before starting or joining a call")

    def _begin(self, role: SessionRole) -> None:
        self._role = role
        self._protocol = ProtocolState(role=role)
        self._local = self._media.local
        self._remote = self._media.remote

    def _open_peer(self) -> PeerConnection:
        try:
            peer = self._peer_factory()
        except Exception as exc:
            raise SignalingFailure("Failed to create peer connection", {"error": str(exc)}) from exc
        self._peer = peer
        try:
            peer.on("icecandidate", self._on_local_candidate)
            peer.on("track", self._on_remote_track)
            peer.on("connectionstatechange", self._on_peer_state)
            for track in self._local.tracks:
                peer.add_track(track)
        except Exception as exc:
            raise SignalingFailure("Failed to set up peer connection", {"error": str(exc)}) from exc
        return peer

    async def _signal(self, action: str, awaitable: Awaitable[T]) -> T:
        try:
            result = await awaitable
        except CallError:
            raise
        except Exception as exc:
            if self._closing:
                raise SessionClosed(f"Session closed during {action}") from exc
            raise SignalingFailure(f"Failed to {action}", {"error": str(exc)}) from exc
        self._checkpoint()
        return result

    async def _subscribe(self, pending: Awaitable[Subscription]) -> Subscription:
        subscription = await pending
        if self._closing:
            await subscription.cancel()
            raise SessionClosed("Session closed while subscribing")
        return subscription

    def _checkpoint(self) -> None:
        if self._closing:
            raise SessionClosed("Session closed")

    # Inbound callbacks, all turned into queued events

    def _on_local_candidate(self, candidate: Any) -> None:
        self._post(LocalCandidateGathered(candidate))

    def _on_remote_track(self, track: Any) -> None:
        self._post(RemoteTrackArrived(track.id, track))

    def _on_peer_state(self, state: str) -> None:
        self._post(PeerStateChanged(state))

    def _on_remote_candidate(self, record: CandidateRecord) -> None:
        try:
            candidate = record.to_candidate()
        except ValidationError as exc:
            logger.warning("Ignoring malformed candidate %s in room %s: %s", record.id, record.room_id, exc)
            return
        self._post(RemoteCandidateReceived(record.id, candidate))

    def _on_room_change(self, room: RoomSnapshot | None) -> None:
        if room is None:
            logger.info("Room %s was removed by the other participant", self._room_id)
            return
        if room.answer is not None:
            self._post(AnswerObserved(room.answer))

    # Event pump

    def _post(self, event: Event) -> None:
        if self._closing:
            return
        self._inbox.put_nowait(event)
        if self._pump_task is None:
            self._pump_task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        while not self._closing:
            event = await self._inbox.get()
            try:
                await self._handle(event)
            except CallError as exc:
                await self._fail(exc)
            except Exception as exc:
                logger.exception("Unexpected error while handling %s", type(event).__name__)
                await self._fail(SignalingFailure("Unexpected signaling error", {"error": str(exc)}))
            finally:
                self._inbox.task_done()

    async def _handle(self, event: Event) -> None:
        self._protocol, effects = step(self._protocol, event)
        for effect in effects:
            if self._closing:
                return
            await self._run(effect)

    async def _run(self, effect: Effect) -> None:
        if isinstance(effect, PublishCandidate):
            await self._store.append_candidate(effect.room_id, effect.log, effect.candidate)
            logger.debug("Published local candidate to %s", effect.log.value)
        elif isinstance(effect, ApplyCandidate):
            await self._signal("add ICE candidate", self._peer.add_ice_candidate(effect.candidate))
            logger.debug("Applied remote candidate %s", effect.candidate.candidate)
        elif isinstance(effect, ApplyAnswer):
            await self._signal("apply answer", self._peer.set_remote_description(effect.answer))
            # Flush early candidates before anything queued behind the answer.
            await self._handle(RemoteDescriptionApplied())
            if not self._closing:
                self._set_state(SessionState.CONNECTED)
        elif isinstance(effect, AttachRemoteTrack):
            if self._remote is not None and self._remote.add(effect.track):
                logger.info("Remote %s track attached", getattr(effect.track, "kind", "media"))
        elif isinstance(effect, ReportPeerState):
            self.peer_state = effect.state
            self.emit("peerstate", effect.state)
        elif isinstance(effect, FailSession):
            raise SignalingFailure(effect.reason)

    # Teardown

    async def _fail(self, error: CallError) -> None:
        if self._closing or self._state.terminal:
            return
        logger.error("Session failed in state %s: %s", self._state.value, error)
        self.error = error
        await self._teardown()
        self._set_state(SessionState.FAILED)
        self.emit("failure", error)

    async def _teardown(self) -> None:
        self._closing = True
        for subscription in (self._candidate_watch, self._room_watch):
            if subscription is not None:
                await subscription.cancel()
        await self._stop_pump()

        if self._peer is not None:
            try:
                await self._peer.close()
            except Exception as exc:
                logger.warning("Error while closing peer connection: %s", exc)

        self._media.release(self._local)
        self._media.release(self._remote)

        if self._room_id is not None:
            await self._discard_room(self._room_id)
        self._torn_down.set()

    async def _stop_pump(self) -> None:
        task = self._pump_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        while not self._inbox.empty():
            self._inbox.get_nowait()
            self._inbox.task_done()

    async def _discard_room(self, room_id: str) -> None:
        for attempt in range(1, self._cleanup_attempts + 1):
            try:
                await self._store.delete_room(room_id)
            except CallError as exc:
                logger.warning(
                    "Room cleanup attempt %d/%d for %s failed: %s",
                    attempt,
                    self._cleanup_attempts,
                    room_id,
                    exc,
                )
                if attempt < self._cleanup_attempts:
                    await asyncio.sleep(self._cleanup_backoff)
            else:
                logger.info("Room %s deleted", room_id)
                return
        logger.warning("Abandoning cleanup of room %s", room_id)

    def _set_state(self, target: SessionState) -> None:
        if self._state is target:
            return
        if not can_transition(self._state, target):
            raise RuntimeError(f"Invalid session transition {self._state.value} -> {target.value}")
        previous, self._state = self._state, target
        logger.info("Session %s: %s -> %s", self._role.value if self._role else "-", previous.value, target.value)
        self.emit("statechange", target)

        waiting = []
        for wanted, future in self._waiters:
            if future.done():
                continue
            if target in wanted or target.terminal:
                future.set_result(target)
            else:
                waiting.append((wanted, future))
        self._waiters = waiting
