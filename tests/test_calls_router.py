"""Tests for the call HTTP endpoints and the event websocket."""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

from callroom.main import app
from callroom.routers.calls import get_coordinator
from callroom.services.coordinator import RoomCoordinator
from callroom.services.media import MediaEndpoint
from callroom.services.memory_store import InMemorySignalingStore

from conftest import FakeCapture, FakePeerFactory


def _coordinator(capture: FakeCapture | None = None) -> RoomCoordinator:
    ids = iter(["r1", "r2"])
    return RoomCoordinator(
        store=InMemorySignalingStore(id_factory=lambda: next(ids)),
        media=MediaEndpoint(capture or FakeCapture()),
        peer_factory=FakePeerFactory(),
        cleanup_backoff=0,
    )


@pytest.fixture
def coordinator():
    instance = _coordinator()
    app.dependency_overrides[get_coordinator] = lambda: instance
    yield instance
    app.dependency_overrides.clear()


@pytest.mark.asyncio
async def test_caller_flow_over_http(coordinator: RoomCoordinator) -> None:
    transport = ASGITransport(app=app)

    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        refused = await client.post("/api/calls/rooms")
        camera = await client.post("/api/calls/camera")
        created = await client.post("/api/calls/rooms", json={"creator": "alice"})
        rooms = await client.get("/api/calls/rooms")
        state = await client.get("/api/calls/state")
        busy = await client.post("/api/calls/camera")
        hung_up = await client.post("/api/calls/hangup")

    assert refused.status_code == 409
    assert refused.json()["detail"]["error"] == "MediaNotReady"

    assert camera.status_code == 200
    assert camera.json()["media_ready"] is True

    assert created.status_code == 201
    assert created.json() == {"room_id": "r1"}

    items = rooms.json()["items"]
    assert [(item["id"], item["creator"], item["has_offer"], item["has_answer"]) for item in items] == [
        ("r1", "alice", True, False)
    ]

    body = state.json()
    assert body["room_id"] == "r1"
    assert body["state"] == "awaiting_answer"
    assert body["role"] == "caller"

    assert busy.status_code == 409
    assert busy.json()["detail"]["error"] == "CallInProgress"

    assert hung_up.status_code == 200
    assert hung_up.json()["state"] == "closed"
    assert hung_up.json()["room_id"] is None
    assert hung_up.json()["media_ready"] is False


@pytest.mark.asyncio
async def test_join_unknown_room_is_404(coordinator: RoomCoordinator) -> None:
    transport = ASGITransport(app=app)

    async with AsyncClient(transport=transport, base_url="http://testserver") as client:
        await client.post("/api/calls/camera")
        response = await client.post("/api/calls/rooms/missing/join")

    assert response.status_code == 404
    detail = response.json()["detail"]
    assert detail["error"] == "RoomNotFound"
    assert detail["details"] == {"room_id": "missing"}
    await coordinator.hang_up()


@pytest.mark.asyncio
async def test_camera_permission_denied_is_403() -> None:
    denied = _coordinator(FakeCapture(error=PermissionError("blocked")))
    app.dependency_overrides[get_coordinator] = lambda: denied
    transport = ASGITransport(app=app)

    try:
        async with AsyncClient(transport=transport, base_url="http://testserver") as client:
            response = await client.post("/api/calls/camera")
    finally:
        app.dependency_overrides.clear()

    assert response.status_code == 403
    assert response.json()["detail"]["error"] == "PermissionDenied"


def test_event_stream_pushes_snapshot_then_changes(coordinator: RoomCoordinator) -> None:
    with TestClient(app) as client:
        with client.websocket_connect("/api/calls/events") as websocket:
            snapshot = websocket.receive_json()
            assert snapshot["event"] == "snapshot"
            assert snapshot["state"] == "idle"
            assert snapshot["media_ready"] is False

            assert client.post("/api/calls/camera").status_code == 200
            assert websocket.receive_json() == {"event": "media", "ready": True}

            assert client.post("/api/calls/hangup").status_code == 200
            assert websocket.receive_json() == {"event": "room", "room_id": None}
            assert websocket.receive_json() == {"event": "media", "ready": False}
