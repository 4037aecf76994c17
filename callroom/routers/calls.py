"""Call actions and the live event stream for the UI shell."""
from __future__ import annotations

import asyncio
import contextlib
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, WebSocket, WebSocketDisconnect, status
from fastapi.requests import HTTPConnection

from ..core.errors import (
    AlreadyAnswered,
    CallError,
    CallInProgress,
    DeviceUnavailable,
    MediaNotReady,
    NoOffer,
    PermissionDenied,
    RoomNotFound,
    SessionClosed,
    SignalingFailure,
    StoreUnavailable,
)
from ..schemas import calls as schemas
from ..services.coordinator import RoomCoordinator

router = APIRouter()

_STATUS_BY_ERROR: dict[type[CallError], int] = {
    RoomNotFound: status.HTTP_404_NOT_FOUND,
    NoOffer: status.HTTP_409_CONFLICT,
    MediaNotReady: status.HTTP_409_CONFLICT,
    CallInProgress: status.HTTP_409_CONFLICT,
    AlreadyAnswered: status.HTTP_409_CONFLICT,
    PermissionDenied: status.HTTP_403_FORBIDDEN,
    DeviceUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
    StoreUnavailable: status.HTTP_503_SERVICE_UNAVAILABLE,
    SignalingFailure: status.HTTP_502_BAD_GATEWAY,
    SessionClosed: status.HTTP_410_GONE,
}


def get_coordinator(connection: HTTPConnection) -> RoomCoordinator:
    """Return the coordinator built at application start."""

    return connection.app.state.coordinator


def _to_http(exc: CallError) -> HTTPException:
    code = next(
        (code for error_type, code in _STATUS_BY_ERROR.items() if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    detail = {"error": type(exc).__name__, "message": exc.args[0] if exc.args else "", "details": exc.details}
    return HTTPException(status_code=code, detail=detail)


def _call_state(coordinator: RoomCoordinator) -> schemas.CallStateResponse:
    session = coordinator.session
    error = coordinator.last_error
    return schemas.CallStateResponse(
        room_id=coordinator.room_id,
        state=coordinator.state.value,
        role=session.role.value if session and session.role else None,
        peer_state=coordinator.peer_state,
        media_ready=coordinator.media_ready,
        error=str(error) if error else None,
    )


@router.post("/camera", response_model=schemas.CallStateResponse)
async def open_camera(coordinator: RoomCoordinator = Depends(get_coordinator)) -> schemas.CallStateResponse:
    """Open the local camera and microphone."""

    try:
        await coordinator.open_camera()
    except CallError as exc:
        raise _to_http(exc) from exc
    return _call_state(coordinator)


@router.post("/rooms", response_model=schemas.CreateRoomResponse, status_code=status.HTTP_201_CREATED)
async def create_room(
    payload: schemas.CreateRoomRequest | None = None,
    coordinator: RoomCoordinator = Depends(get_coordinator),
) -> schemas.CreateRoomResponse:
    """Create a room with our offer and wait for someone to join it."""

    try:
        room_id = await coordinator.create_and_wait_for_peer(creator=payload.creator if payload else None)
    except CallError as exc:
        raise _to_http(exc) from exc
    return schemas.CreateRoomResponse(room_id=room_id)


@router.get("/rooms", response_model=schemas.RoomListResponse)
async def list_rooms(coordinator: RoomCoordinator = Depends(get_coordinator)) -> schemas.RoomListResponse:
    """Return the rooms currently waiting in the store."""

    try:
        rooms = await coordinator.list_rooms()
    except CallError as exc:
        raise _to_http(exc) from exc
    return schemas.RoomListResponse(
        items=[
            schemas.RoomSummary(
                id=room.id,
                creator=room.creator,
                created_at=room.created_at,
                has_offer=room.offer is not None,
                has_answer=room.answer is not None,
            )
            for room in rooms
        ]
    )


@router.post("/rooms/{room_id}/join", response_model=schemas.CallStateResponse)
async def join_room(
    room_id: str,
    payload: schemas.JoinRoomRequest | None = None,
    coordinator: RoomCoordinator = Depends(get_coordinator),
) -> schemas.CallStateResponse:
    """Answer the call waiting in ``room_id``."""

    try:
        await coordinator.join_by_room_id(room_id, creator=payload.creator if payload else None)
    except CallError as exc:
        raise _to_http(exc) from exc
    return _call_state(coordinator)


@router.post("/hangup", response_model=schemas.CallStateResponse)
async def hang_up(coordinator: RoomCoordinator = Depends(get_coordinator)) -> schemas.CallStateResponse:
    """End the current call; always succeeds."""

    await coordinator.hang_up()
    return _call_state(coordinator)


@router.get("/state", response_model=schemas.CallStateResponse)
async def call_state(coordinator: RoomCoordinator = Depends(get_coordinator)) -> schemas.CallStateResponse:
    return _call_state(coordinator)


async def _forward(websocket: WebSocket, queue: asyncio.Queue[dict[str, Any]]) -> None:
    while True:
        message = await queue.get()
        await websocket.send_json(message)


@router.websocket("/events")
async def call_events(websocket: WebSocket, coordinator: RoomCoordinator = Depends(get_coordinator)) -> None:
    """Push a state snapshot, then every room/state/media/failure change."""

    await websocket.accept()
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
    queue.put_nowait({"event": "snapshot", **_call_state(coordinator).model_dump(mode="json")})

    handlers = {
        "room": lambda room_id: queue.put_nowait({"event": "room", "room_id": room_id}),
        "state": lambda state: queue.put_nowait({"event": "state", "state": state.value}),
        "peer_state": lambda state: queue.put_nowait({"event": "peer_state", "peer_state": state}),
        "media": lambda ready: queue.put_nowait({"event": "media", "ready": ready}),
        "failure": lambda error: queue.put_nowait(
            {"event": "failure", "error": type(error).__name__, "message": str(error)}
        ),
    }
    for event, handler in handlers.items():
        coordinator.on(event, handler)

    sender = asyncio.create_task(_forward(websocket, queue))
    try:
        while True:
            await websocket.receive_text()
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sender
        for event, handler in handlers.items():
            coordinator.remove_listener(event, handler)
