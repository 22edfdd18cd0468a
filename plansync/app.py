"""
FastAPI application entry point for the plan sync backend.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from plansync.broadcast import ChangeBroadcaster
from plansync.config import Settings, get_settings
from plansync.db import ProjectStore
from plansync.dependencies import build_project_store
from plansync.errors import ProjectStoreError
from plansync.routes import realtime_updates, router
from plansync.schemas import HealthResponse

logger = logging.getLogger(__name__)


async def store_error_handler(request: Request, exc: ProjectStoreError) -> JSONResponse:
    logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": f"Server Error: {exc}"})


def create_app(
    settings: Optional[Settings] = None, store: Optional[ProjectStore] = None
) -> FastAPI:
    settings = settings or get_settings()
    if store is None:
        store = build_project_store(settings)
    broadcaster = ChangeBroadcaster()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # A failed migration propagates and aborts startup.
        await run_in_threadpool(store.initialize)
        logger.info("Store ready (%s)", type(store).__name__)
        yield
        store.close()

    app = FastAPI(title="Plan Sync Backend", version="0.1.0", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.broadcaster = broadcaster

    app.add_exception_handler(ProjectStoreError, store_error_handler)
    app.include_router(router, prefix=settings.api_prefix)

    @app.get("/health", response_model=HealthResponse)
    def health():
        return HealthResponse(ok=True, clients=broadcaster.client_count)

    # Clients may upgrade either on the dedicated path or on the server root.
    app.add_api_websocket_route(settings.websocket_path, realtime_updates)
    if settings.websocket_path != "/":
        app.add_api_websocket_route("/", realtime_updates)

    static_dir = Path(settings.static_dir)
    if static_dir.is_dir():
        app.mount("/", StaticFiles(directory=str(static_dir), html=True), name="static")
    return app


# ASGI entry point: `uvicorn plansync.app:app`, also what plansync-server runs.
app = create_app()
