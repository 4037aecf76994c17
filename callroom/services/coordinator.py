"""Create-room, join-room and hang-up flows on top of ConnectionSession."""
from __future__ import annotations

import logging

from pyee.asyncio import AsyncIOEventEmitter

from ..core.errors import CallError, CallInProgress, MediaNotReady
from ..schemas.signaling import RoomSnapshot
from .media import MediaEndpoint
from .peer import PeerConnectionFactory
from .protocol import SessionState
from .session import ConnectionSession
from .store import SignalingStore

logger = logging.getLogger(__name__)


class RoomCoordinator(AsyncIOEventEmitter):
    """Own the current call and publish its progress to the presentation layer.

    Listeners receive ``room`` (room id or ``None``), ``state``
    (:class:`SessionState`), ``peer_state`` (connection state string),
    ``media`` (whether local media is open) and ``failure`` (:class:`CallError`).
    """

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
        self._cleanup_attempts = cleanup_attempts
        self._cleanup_backoff = cleanup_backoff
        self._session: ConnectionSession | None = None

    @property
    def session(self) -> ConnectionSession | None:
        return self._session

    @property
    def room_id(self) -> str | None:
        if self._session is None or self._session.state.terminal:
            return None
        return self._session.room_id

    @property
    def state(self) -> SessionState:
        return self._session.state if self._session else SessionState.IDLE

    @property
    def peer_state(self) -> str | None:
        return self._session.peer_state if self._session else None

    @property
    def media_ready(self) -> bool:
        return self._media.ready

    @property
    def last_error(self) -> CallError | None:
        return self._session.error if self._session else None

    async def open_camera(self) -> None:
        """Acquire camera and microphone for the next call."""

        self._ensure_no_call()
        await self._media.acquire()
        self.emit("media", True)

    async def create_and_wait_for_peer(self, *, creator: str | None = None) -> str:
        """Start a call as the caller and return the room id to share with the peer."""

        self._ensure_no_call()
        if not self._media.ready:
            raise MediaNotReady("Open the camera before creating a room")

        session = self._new_session(creator)
        self._session = session
        room_id = await session.initiate()
        logger.info("Room %s created; waiting for a peer", room_id)
        return room_id

    async def join_by_room_id(self, room_id: str, *, creator: str | None = None) -> None:
        """Answer the call waiting in ``room_id``."""

        self._ensure_no_call()
        if not self._media.ready:
            raise MediaNotReady("Open the camera before joining a room")

        previous = self._session
        session = self._new_session(creator)
        self._session = session
        try:
            await session.join(room_id)
        except CallError:
            if session.state is SessionState.IDLE:
                # Rejected before anything was set up; forget the session.
                session.remove_all_listeners()
                self._session = previous
            raise
        logger.info("Joined room %s", room_id)

    async def wait_for_peer(self) -> SessionState:
        """Wait until the current call connects or ends."""

        if self._session is None:
            return SessionState.IDLE
        return await self._session.wait_for_state(SessionState.CONNECTED)

    async def hang_up(self) -> None:
        """End the call and release media. Never raises."""

        session = self._session
        try:
            if session is not None:
                await session.close()
            self._media.release_all()
        except Exception:
            logger.exception("Hang-up did not complete cleanly")
        self.emit("room", None)
        self.emit("media", self._media.ready)

    async def list_rooms(self) -> list[RoomSnapshot]:
        return await self._store.list_rooms()

    def _ensure_no_call(self) -> None:
        if self._session is not None and not self._session.state.terminal:
            raise CallInProgress(
                "A call is already in progress",
                {"room_id": self._session.room_id, "state": self._session.state.value},
            )

    def _new_session(self, creator: str | None) -> ConnectionSession:
        session = ConnectionSession(
            store=self._store,
            media=self._media,
            peer_factory=self._peer_factory,
            creator=creator or self._creator,
            cleanup_attempts=self._cleanup_attempts,
            cleanup_backoff=self._cleanup_backoff,
        )
        session.on("roomassigned", lambda room_id: self.emit("room", room_id))
        session.on("statechange", self._on_state_change)
        session.on("peerstate", lambda state: self.emit("peer_state", state))
        session.on("failure", self._on_failure)
        return session

    def _on_state_change(self, state: SessionState) -> None:
        self.emit("state", state)
        if state.terminal:
            self.emit("media", self._media.ready)

    def _on_failure(self, error: CallError) -> None:
        logger.warning("Call failed: %s", error)
        self.emit("room", None)
        self.emit("failure", error)
