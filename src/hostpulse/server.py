"""HTTP and WebSocket transport for hostpulse."""

import asyncio
import json
import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

import uvicorn
from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from hostpulse.config import Settings, configure_logging, get_settings
from hostpulse.provider import MetricsProvider
from hostpulse.registry import EVENT_ERROR, EVENT_REQUEST, NO_DATA_MESSAGE
from hostpulse.scheduler import BroadcastScheduler, build_scheduler

logger = logging.getLogger(__name__)


class WebSocketObserver:
    """Registry observer that writes ``{"event", "data"}`` frames to a WebSocket."""

    def __init__(self, websocket: WebSocket) -> None:
        self.id = uuid.uuid4().hex[:12]
        self._websocket = websocket
        # Heartbeat and primary publishes may target the same socket at once
        self._send_lock = asyncio.Lock()

    def __repr__(self) -> str:
        return f"WebSocketObserver({self.id})"

    async def send(self, event: str, data: dict[str, Any]) -> None:
        async with self._send_lock:
            await self._websocket.send_json({"event": event, "data": data})


def parse_event(raw: str) -> str:
    """Event name of a client frame; accepts ``{"event": ...}`` or a bare name."""
    try:
        message = json.loads(raw)
    except ValueError:
        return raw.strip()
    if isinstance(message, dict):
        return str(message.get("event", ""))
    if isinstance(message, str):
        return message
    return ""


def create_app(
    settings: Settings | None = None,
    provider: MetricsProvider | None = None,
    scheduler: BroadcastScheduler | None = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Runtime settings (environment if omitted).
        provider: Metrics provider (psutil if omitted).
        scheduler: Pre-built scheduler; overrides ``provider``.

    Returns:
        Application whose lifespan starts and stops the scheduler.
    """
    settings = settings or get_settings()
    if scheduler is None:
        scheduler = build_scheduler(settings, provider)
    registry = scheduler.registry

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await scheduler.start()
        try:
            yield
        finally:
            await scheduler.stop()

    app = FastAPI(title="hostpulse", lifespan=lifespan)
    app.state.scheduler = scheduler
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    @app.get("/healthz")
    async def healthz() -> dict[str, bool]:
        return {"ok": True}

    @app.get("/api/health/latest")
    async def latest_snapshot() -> JSONResponse:
        snapshot = registry.latest.get()
        if snapshot is None:
            return JSONResponse(status_code=503, content={"ok": False, "message": NO_DATA_MESSAGE})
        return JSONResponse(content=snapshot.to_dict())

    @app.websocket("/ws")
    async def health_socket(websocket: WebSocket) -> None:
        await websocket.accept()
        observer = WebSocketObserver(websocket)
        logger.info("Client connected: %s", observer.id)
        await registry.join(observer)
        try:
            while True:
                event = parse_event(await websocket.receive_text())
                if event == EVENT_REQUEST:
                    await registry.request_latest(observer)
                else:
                    await observer.send(EVENT_ERROR, {"message": f"Unknown event: {event!r}"})
        except WebSocketDisconnect:
            pass
        finally:
            registry.leave(observer)
            logger.info("Client disconnected: %s", observer.id)

    return app


def main() -> None:
    """Entry point for the hostpulse server."""
    settings = get_settings()
    configure_logging(settings.log_level)
    logger.info("hostpulse listening on http://%s:%d", settings.host, settings.port)
    uvicorn.run(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
