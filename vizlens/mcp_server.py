from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from mcp.server.fastmcp import FastMCP

from vizlens import services
from vizlens.adapter import DEFAULT_TIME_RANGE
from vizlens.aggregates import RELATION_NAMES
from vizlens.errors import AggregateUnavailable, VizError
from vizlens.refresh import HISTORY_DEFAULT
from vizlens.schemas import VizFilters
from vizlens.themes import DEFAULT_THEME_ID

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def vizlens_lifespan(server: FastMCP) -> AsyncIterator[None]:
    runtime = services.build_runtime()
    services.set_runtime(runtime)
    try:
        yield
    finally:
        services.set_runtime(None)
        runtime.close()


mcp = FastMCP(
    "vizlens",
    instructions=(
        "vizlens renders competitive-intelligence entities as themed 3D scenes. "
        "Start with list_themes() to pick a lens, then get_frame(theme_id) for nodes and edges. "
        "Use get_health() to check aggregate freshness before trusting the numbers."
    ),
    lifespan=vizlens_lifespan,
    json_response=True,
)


def _unavailable(exc: AggregateUnavailable) -> dict:
    return {"error": "aggregate_unavailable", "relation": exc.relation, "detail": str(exc)}


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


@mcp.resource("vizlens://overview")
def vizlens_overview() -> str:
    """Overview of vizlens: pipeline, aggregate relations and themes."""
    runtime = services.current_runtime()
    return json.dumps({
        "system": "vizlens: themed 3D visualization of competitive-intelligence entities",
        "pipeline": [
            "entities are filtered from live entity storage",
            "metric, index and signal values come from precomputed aggregate relations",
            "a theme maps those values to position, size, color, glow and drift",
        ],
        "aggregate_relations": list(RELATION_NAMES),
        "themes": runtime.registry.summaries(),
        "staleness": "every response carries seconds since its aggregates were computed",
    }, indent=2)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


@mcp.tool()
def list_themes() -> list[dict]:
    """List available visual themes (id, name, description, category)."""
    return services.current_runtime().adapter.themes()


@mcp.tool()
def get_frame(
    theme_id: str = DEFAULT_THEME_ID,
    time_range: int = DEFAULT_TIME_RANGE,
    industry: str | None = None,
    market_segment: str | None = None,
    entity_types: str | None = None,
    min_magnitude: float | None = None,
    sentiment: str = "both",
    connection_types: str | None = None,
    min_strength: float | None = None,
    user_id: str | None = None,
) -> dict:
    """Build a themed frame. List filters (entity_types, connection_types) are comma-separated."""
    try:
        filters = VizFilters(
            industry=industry, market_segment=market_segment, entity_types=entity_types,
            min_magnitude=min_magnitude, sentiment=sentiment,
            connection_types=connection_types, min_strength=min_strength,
        )
        envelope = services.current_runtime().adapter.frame(theme_id, time_range, filters, user_id)
    except AggregateUnavailable as exc:
        return _unavailable(exc)
    except ValueError as exc:
        return {"error": str(exc)}
    return envelope.model_dump(mode="json")


@mcp.tool()
def get_health(threshold: int | None = None) -> dict:
    """Aggregate freshness: healthy, degraded (stale relations) or unhealthy (unreadable)."""
    runtime = services.current_runtime()
    result = runtime.manager.health(threshold or runtime.settings.health_threshold)
    result["checked_at"] = result["checked_at"].isoformat()
    return result


@mcp.tool()
def refresh_views(force: bool = False) -> dict:
    """Refresh stale aggregate relations. force=True refreshes all of them regardless of age."""
    try:
        result = services.refresh_views(services.current_runtime(), force)
    except VizError as exc:
        return {"error": str(exc)}
    return json.loads(json.dumps(result, default=str))


@mcp.tool()
def refresh_history(limit: int = HISTORY_DEFAULT) -> list[dict]:
    """Most recent refresh runs with duration and success rate (newest first, max 100)."""
    history = services.current_runtime().manager.get_history(limit)
    for entry in history:
        entry["timestamp"] = entry["timestamp"].isoformat()
    return history


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """Run the vizlens MCP server over stdio."""
    mcp.run()


if __name__ == "__main__":
    main()
