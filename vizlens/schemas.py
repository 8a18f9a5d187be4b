"""Pydantic request/response schemas for the vizlens API."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, Field, field_validator

SCHEMA_VERSION = "1.0"

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Attribute bags (adapter output, engine input)
# ---------------------------------------------------------------------------


class EntityBag(BaseModel):
    id: str
    name: str
    type: str = "company"
    profile: dict[str, Any] = {}
    metric: dict[str, float] = {}
    index: dict[str, float] = {}
    signal: dict[str, float] = {}
    # fields filled by demo mode rather than read from the aggregate store
    synthetic: list[str] = []


class ConnectionBag(BaseModel):
    source: str
    target: str
    type: str
    strength: float = 0.5
    sentiment: float = 0.0
    interaction_count: int = 0
    last_updated: datetime | None = None
    attributes: dict[str, float] = {}


# ---------------------------------------------------------------------------
# Visual model (engine output)
# ---------------------------------------------------------------------------


class Vec3(BaseModel):
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0


class VisualNode(BaseModel):
    id: str
    name: str
    position: Vec3      # each component in [-0.5, 0.5]
    size: float         # 0..1
    color: int          # packed 0xRRGGBB
    glow: float         # 0..1
    drift: Vec3
    label: bool = False
    meta: EntityBag


class VisualEdge(BaseModel):
    source: str
    target: str
    thickness: float    # 0..1
    color: int
    dashed: bool
    particles: bool
    pulses_on_active: bool
    meta: ConnectionBag


class VisualBackground(BaseModel):
    clusters_by: Literal["industry", "market"] | None = None
    halos: bool = False
    axes: bool = True


class Frame(BaseModel):
    nodes: list[VisualNode] = []
    edges: list[VisualEdge] = []
    background: VisualBackground = VisualBackground()


# ---------------------------------------------------------------------------
# Request filters and response envelope
# ---------------------------------------------------------------------------


class VizFilters(BaseModel):
    industry: str | None = None
    market_segment: str | None = None
    entity_types: list[str] | None = None
    min_magnitude: float | None = Field(None, ge=0)
    sentiment: Literal["positive", "negative", "both"] = "both"
    connection_types: list[str] | None = None
    min_strength: float | None = Field(None, ge=0, le=1)

    @field_validator("entity_types", "connection_types", mode="before")
    @classmethod
    def split_csv(cls, v: Any) -> Any:
        if isinstance(v, str):
            v = [part.strip() for part in v.split(",")]
        if isinstance(v, list):
            v = [part for part in v if part] or None
        return v


class Envelope(BaseModel, Generic[T]):
    schema_version: str = SCHEMA_VERSION
    theme_id: str
    time_range: int
    data: T
    computed_at: datetime
    # seconds since the stalest relation read was computed; None if never computed
    staleness: float | None


class ThemeSummary(BaseModel):
    id: str
    name: str
    description: str
    category: str


class ThemeList(BaseModel):
    themes: list[ThemeSummary]


# ---------------------------------------------------------------------------
# Administrative surface
# ---------------------------------------------------------------------------


class RefreshRequest(BaseModel):
    force: bool = False


class RefreshResultOut(BaseModel):
    relation: str
    status: Literal["success", "failed", "skipped"]
    duration_ms: float
    row_count: int | None = None
    staleness: float | None = None
    error: str | None = None


class RefreshSummaryOut(BaseModel):
    total: int
    successful: int
    failed: int
    skipped: int
    total_duration_ms: float
    results: list[RefreshResultOut]
    timestamp: datetime


class RefreshResponse(BaseModel):
    refreshed: bool
    message: str
    summary: RefreshSummaryOut | None = None


class HistoryEntry(BaseModel):
    timestamp: datetime
    duration_ms: float
    successful: int
    failed: int
    total: int
    success_rate: float


class RelationHealth(BaseModel):
    relation: str
    staleness: float | None
    stale: bool
    error: str | None = None


class HealthOut(BaseModel):
    status: Literal["healthy", "degraded", "unhealthy"]
    threshold: int
    relations: list[RelationHealth]
    checked_at: datetime
