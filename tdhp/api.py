from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import Response

from . import db
from .api_models import EventOut, HealthResponse, StatusResponse
from .containers import FileStateSource, StateSource
from .docker_ops import DockerStateSource
from .runtime import SnapshotCache
from .settings import Settings, settings as default_settings, validate_base_url, validate_settings
from .sync import Synchronizer


def make_source(s: Settings) -> StateSource:
    if s.source == "file":
        return FileStateSource(s.fixture_path)
    return DockerStateSource(
        timeout_s=s.docker_timeout_s,
        backoff_initial_s=s.backoff_initial_s,
        backoff_max_s=s.backoff_max_s,
    )


def create_app(source: StateSource | None = None, settings: Settings = default_settings) -> FastAPI:
    """Build the HTTP app.

    Startup validates the settings (a missing base URL aborts startup), builds
    the first snapshot and starts the background synchronizer.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        validate_settings(settings)
        db.init_db()
        cache = SnapshotCache()
        src = source if source is not None else make_source(settings)
        syncer = Synchronizer(
            src,
            cache,
            base_url=validate_base_url(settings.base_url),
            prefix=settings.label_prefix,
            exposed_by_default=settings.exposed_by_default,
            source_timeout_s=settings.source_timeout_s,
            resync_interval_s=settings.resync_interval_s,
        )
        app.state.cache = cache
        app.state.source = src
        app.state.syncer = syncer
        db.log_event("INFO", f"Starting provider (source={type(src).__name__}, base_url={settings.base_url})")
        syncer.start()
        try:
            yield
        finally:
            syncer.stop()
            db.log_event("INFO", "Provider stopped")

    app = FastAPI(title="Traefik Docker HTTP Provider", lifespan=lifespan)

    @app.get("/", response_model=HealthResponse)
    def health_check() -> HealthResponse:
        return HealthResponse()

    @app.get("/dynamic_configuration")
    def dynamic_configuration(request: Request) -> Response:
        # One reference read; the snapshot behind it is immutable.
        snap = request.app.state.cache.current()
        if snap is None:
            raise HTTPException(status_code=503, detail="Configuration not built yet")
        return Response(
            content=snap.body,
            media_type="application/json",
            headers={"X-Config-Generation": str(snap.generation), "X-Config-Built-At": snap.built_at},
        )

    @app.get("/status", response_model=StatusResponse)
    def status(request: Request) -> StatusResponse:
        cache: SnapshotCache = request.app.state.cache
        snap = cache.current()
        out = StatusResponse(
            state=cache.state,
            failed_rebuilds=cache.failed_rebuilds,
            source_degraded=bool(request.app.state.source.degraded),
        )
        if snap is not None:
            http = snap.document.http
            out.generation = snap.generation
            out.built_at = snap.built_at
            out.containers = snap.containers
            out.routers = len(http.routers)
            out.services = len(http.services)
            out.middlewares = len(http.middlewares)
            out.warnings = [str(w) for w in snap.warnings]
        return out

    @app.get("/events", response_model=list[EventOut])
    def events(limit: int = Query(50, ge=1, le=1000)) -> list[dict]:
        return db.latest_events(limit)

    return app
