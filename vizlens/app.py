from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Literal

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from vizlens import services
from vizlens.adapter import DEFAULT_TIME_RANGE, MAX_TIME_RANGE
from vizlens.errors import AggregateUnavailable, ThemeValidationError
from vizlens.refresh import HISTORY_DEFAULT, HISTORY_MAX, RefreshScheduler
from vizlens.schemas import (
    ConnectionBag,
    EntityBag,
    Envelope,
    Frame,
    HealthOut,
    HistoryEntry,
    RefreshRequest,
    RefreshResponse,
    ThemeList,
    VizFilters,
)
from vizlens.services import Runtime
from vizlens.themes import DEFAULT_THEME_ID

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    runtime = services.build_runtime()
    services.set_runtime(runtime)
    scheduler = None
    if runtime.settings.scheduler_enabled:
        scheduler = RefreshScheduler(runtime.manager, runtime.settings.refresh_interval,
                                     runtime.settings.stale_threshold)
        scheduler.start()
    try:
        yield
    finally:
        if scheduler is not None:
            await scheduler.stop()
        services.set_runtime(None)
        runtime.close()


app = FastAPI(
    title="vizlens",
    version="0.1.0",
    description=(
        "Entity visualization API for competitive intelligence. "
        "Resolves entities and connections from precomputed aggregates and maps them "
        "through a named theme into a 3D scene description. All endpoints return JSON."
    ),
    lifespan=lifespan,
    openapi_tags=[
        {"name": "Visualization", "description": "Attribute bags and themed frames."},
        {"name": "Themes", "description": "Available visual themes."},
        {"name": "Admin", "description": "Aggregate refresh and health. Requires X-Admin-Token when configured."},
    ],
)


# ---------------------------------------------------------------------------
# Dependencies & Helpers
# ---------------------------------------------------------------------------


def get_runtime() -> Runtime:
    return services.current_runtime()


def require_admin(
    runtime: Runtime = Depends(get_runtime),
    x_admin_token: str | None = Header(None),
) -> None:
    token = runtime.settings.admin_token
    if token and x_admin_token != token:
        raise HTTPException(403, "Admin token required")


def viz_filters(
    industry: str | None = Query(None),
    market_segment: str | None = Query(None),
    entity_types: str | None = Query(None, description="Comma-separated entity types"),
    min_magnitude: float | None = Query(None, ge=0),
    sentiment: Literal["positive", "negative", "both"] = Query("both"),
    connection_types: str | None = Query(None, description="Comma-separated connection types"),
    min_strength: float | None = Query(None, ge=0, le=1),
) -> VizFilters:
    return VizFilters(
        industry=industry, market_segment=market_segment, entity_types=entity_types,
        min_magnitude=min_magnitude, sentiment=sentiment,
        connection_types=connection_types, min_strength=min_strength,
    )


@app.exception_handler(AggregateUnavailable)
async def aggregate_unavailable_handler(request: Request, exc: AggregateUnavailable):
    return JSONResponse(status_code=503, content={
        "error": "aggregate_unavailable",
        "relation": exc.relation,
        "detail": str(exc),
        "retryable": exc.retryable,
    })


@app.exception_handler(ThemeValidationError)
async def theme_validation_handler(request: Request, exc: ThemeValidationError):
    return JSONResponse(status_code=400, content={"error": "invalid_theme", "detail": str(exc)})


# ---------------------------------------------------------------------------
# Routes: Visualization
# ---------------------------------------------------------------------------


@app.get("/api/viz/entities", response_model=Envelope[list[EntityBag]],
         tags=["Visualization"], summary="Entity attribute bags for a theme")
def get_entities(
    theme_id: str = Query(DEFAULT_THEME_ID),
    time_range: int = Query(DEFAULT_TIME_RANGE, ge=1, le=MAX_TIME_RANGE),
    filters: VizFilters = Depends(viz_filters),
    x_user_id: str | None = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    return runtime.adapter.entities(theme_id, time_range, filters, x_user_id)


@app.get("/api/viz/connections", response_model=Envelope[list[ConnectionBag]],
         tags=["Visualization"], summary="Connection attribute bags between visible entities")
def get_connections(
    theme_id: str = Query(DEFAULT_THEME_ID),
    time_range: int = Query(DEFAULT_TIME_RANGE, ge=1, le=MAX_TIME_RANGE),
    filters: VizFilters = Depends(viz_filters),
    x_user_id: str | None = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    return runtime.adapter.connections(theme_id, time_range, filters, x_user_id)


@app.get("/api/viz/frame", response_model=Envelope[Frame],
         tags=["Visualization"], summary="Themed visual frame (nodes, edges, background)")
def get_frame(
    theme_id: str = Query(DEFAULT_THEME_ID),
    time_range: int = Query(DEFAULT_TIME_RANGE, ge=1, le=MAX_TIME_RANGE),
    filters: VizFilters = Depends(viz_filters),
    x_user_id: str | None = Header(None),
    runtime: Runtime = Depends(get_runtime),
):
    return runtime.adapter.frame(theme_id, time_range, filters, x_user_id)


# ---------------------------------------------------------------------------
# Routes: Themes
# ---------------------------------------------------------------------------


@app.get("/api/viz/themes", response_model=ThemeList,
         tags=["Themes"], summary="List available themes")
async def list_themes(runtime: Runtime = Depends(get_runtime)):
    return {"themes": runtime.adapter.themes()}


# ---------------------------------------------------------------------------
# Routes: Admin (health is public for probes)
# ---------------------------------------------------------------------------


@app.get("/api/viz/health", response_model=HealthOut,
         tags=["Admin"], summary="Aggregate freshness health check")
def health(runtime: Runtime = Depends(get_runtime)):
    return runtime.manager.health(runtime.settings.health_threshold)


@app.post("/api/viz/refresh", response_model=RefreshResponse, dependencies=[Depends(require_admin)],
          tags=["Admin"], summary="Refresh stale aggregates (or all of them with force)")
async def refresh(body: RefreshRequest | None = None, runtime: Runtime = Depends(get_runtime)):
    force = body.force if body is not None else False
    return await asyncio.to_thread(services.refresh_views, runtime, force)


@app.get("/api/viz/refresh/history", response_model=list[HistoryEntry],
         dependencies=[Depends(require_admin)],
         tags=["Admin"], summary="Most recent refresh summaries")
def refresh_history(
    limit: int = Query(HISTORY_DEFAULT, ge=1, le=HISTORY_MAX),
    runtime: Runtime = Depends(get_runtime),
):
    return runtime.manager.get_history(limit)


@app.post("/api/viz/initialize", response_model=RefreshResponse, dependencies=[Depends(require_admin)],
          tags=["Admin"], summary="First-time population of every aggregate relation")
async def initialize(runtime: Runtime = Depends(get_runtime)):
    return await asyncio.to_thread(services.initialize_views, runtime)


# ---------------------------------------------------------------------------
# Startup
# ---------------------------------------------------------------------------


def main():
    import uvicorn
    uvicorn.run("vizlens.app:app", host="127.0.0.1", port=8001)


if __name__ == "__main__":
    main()
