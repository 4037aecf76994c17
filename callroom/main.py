"""FastAPI application exposing the call controls and their event stream."""
from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from sqlalchemy.ext.asyncio import AsyncEngine

from .core.config import Settings, settings
from .core.logging import configure_logging
from .db.session import create_engine, create_schema, create_session_factory
from .routers import calls
from .services.coordinator import RoomCoordinator
from .services.media import CameraCapture, MediaEndpoint
from .services.memory_store import InMemorySignalingStore
from .services.peer import AiortcPeerFactory, build_rtc_configuration
from .services.sql_store import SqlSignalingStore
from .services.store import SignalingStore

logger = logging.getLogger(__name__)


async def build_store(config: Settings) -> tuple[SignalingStore, AsyncEngine | None]:
    """Return the configured signaling store and, for SQL, the engine to dispose later."""

    if config.signaling_backend == "sql":
        engine = create_engine(config.database_url)
        await create_schema(engine)
        store = SqlSignalingStore(
            create_session_factory(engine), poll_interval=config.watch_poll_interval_seconds
        )
        return store, engine
    return InMemorySignalingStore(), None


def build_coordinator(config: Settings, store: SignalingStore) -> RoomCoordinator:
    return RoomCoordinator(
        store=store,
        media=MediaEndpoint(CameraCapture.from_settings(config)),
        peer_factory=AiortcPeerFactory(build_rtc_configuration(config)),
        creator=config.default_creator,
        cleanup_attempts=config.room_cleanup_attempts,
        cleanup_backoff=config.room_cleanup_backoff_seconds,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    configure_logging(settings.log_level)
    store, engine = await build_store(settings)
    app.state.coordinator = build_coordinator(settings, store)
    logger.info("Signaling backend: %s", settings.signaling_backend)
    try:
        yield
    finally:
        await app.state.coordinator.hang_up()
        if engine is not None:
            await engine.dispose()


app = FastAPI(title="Call Room API", version="0.1.0", lifespan=lifespan)

if settings.cors_allow_origins:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(calls.router, prefix="/api/calls", tags=["calls"])


@app.get("/api/health", tags=["meta"])
async def health() -> dict[str, str]:
    """Simple liveness check."""

    return {"status": "ok"}


@app.head("/api/health", tags=["meta"])
async def health_head() -> Response:
    """Allow HEAD for uptime monitors that only need the status code."""

    return Response(status_code=200)


def run() -> None:
    import uvicorn

    uvicorn.run("callroom.main:app", host=settings.host, port=settings.port)
