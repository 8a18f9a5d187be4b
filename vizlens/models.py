from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    DateTime, Float, ForeignKey, Index, Integer, String, Text, UniqueConstraint, func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    pass


def _uuid() -> str:
    return str(uuid.uuid4())


# ---------------------------------------------------------------------------
# Base tables (owned by the CRUD layer, read-only for the pipeline)
# ---------------------------------------------------------------------------


class Entity(Base):
    __tablename__ = "entities"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    type: Mapped[str] = mapped_column(String(30), default="company")  # company | product | person | market | segment
    industry: Mapped[str] = mapped_column(String(200), default="")
    market_segment: Mapped[str] = mapped_column(String(200), default="")
    geography: Mapped[str] = mapped_column(String(200), default="")
    owner_user_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())

    metric_points: Mapped[list[MetricPoint]] = relationship(
        "MetricPoint", back_populates="entity", cascade="all, delete-orphan")
    index_values: Mapped[list[IndexValue]] = relationship(
        "IndexValue", back_populates="entity", cascade="all, delete-orphan")


class MetricPoint(Base):
    __tablename__ = "metric_points"
    __table_args__ = (Index("ix_metric_points_entity_key", "entity_id", "metric_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[str] = mapped_column(String(36), ForeignKey("entities.id"), nullable=False)
    metric_key: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    entity: Mapped[Entity] = relationship("Entity", back_populates="metric_points")


class IndexValue(Base):
    __tablename__ = "index_values"
    __table_args__ = (Index("ix_index_values_entity_key", "entity_id", "index_key"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[str] = mapped_column(String(36), ForeignKey("entities.id"), nullable=False)
    index_key: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    normalized: Mapped[float | None] = mapped_column(Float, nullable=True)  # 0..1
    as_of: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    entity: Mapped[Entity] = relationship("Entity", back_populates="index_values")


class Signal(Base):
    __tablename__ = "signals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    type: Mapped[str] = mapped_column(String(50), nullable=False)           # PRODUCT_LAUNCH, FUNDING_ROUND, ...
    category: Mapped[str] = mapped_column(String(30), default="MARKET")     # MARKET | COMPETITIVE | DEAL | ...
    sentiment_label: Mapped[str] = mapped_column(String(20), default="NEUTRAL")  # POSITIVE | NEGATIVE | NEUTRAL
    sentiment_score: Mapped[float | None] = mapped_column(Float, nullable=True)  # -1..1
    magnitude: Mapped[float] = mapped_column(Float, default=0.0)
    timestamp: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    impacts: Mapped[list[SignalImpact]] = relationship(
        "SignalImpact", back_populates="signal", cascade="all, delete-orphan")


class SignalImpact(Base):
    __tablename__ = "signal_impacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    signal_id: Mapped[str] = mapped_column(String(36), ForeignKey("signals.id"), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(36), ForeignKey("entities.id"), nullable=False)
    weight: Mapped[float] = mapped_column(Float, default=1.0)

    signal: Mapped[Signal] = relationship("Signal", back_populates="impacts")


class Connection(Base):
    __tablename__ = "connections"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_entity_id: Mapped[str] = mapped_column(String(36), ForeignKey("entities.id"), nullable=False)
    target_entity_id: Mapped[str] = mapped_column(String(36), ForeignKey("entities.id"), nullable=False)
    type: Mapped[str] = mapped_column(String(50), nullable=False)  # partnership | competitor | ownership | ...
    strength: Mapped[float | None] = mapped_column(Float, nullable=True)         # 0..1
    sentiment_score: Mapped[float | None] = mapped_column(Float, nullable=True)  # -1..1
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())


# ---------------------------------------------------------------------------
# Aggregate relations (written only by the refresh manager)
# ---------------------------------------------------------------------------


class AggLatestMetric(Base):
    __tablename__ = "agg_latest_metric"
    __table_args__ = (UniqueConstraint("entity_id", "metric_key", name="uq_agg_latest_metric"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    metric_key: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    pct_change: Mapped[float] = mapped_column(Float, default=0.0)
    as_of: Mapped[datetime] = mapped_column(DateTime, nullable=False)  # timestamp of the latest point
    computed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class AggLatestIndex(Base):
    __tablename__ = "agg_latest_index"
    __table_args__ = (UniqueConstraint("entity_id", "index_key", name="uq_agg_latest_index"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    index_key: Mapped[str] = mapped_column(String(100), nullable=False)
    value: Mapped[float] = mapped_column(Float, nullable=False)
    normalized: Mapped[float | None] = mapped_column(Float, nullable=True)
    as_of: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    computed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class AggSignalRollup(Base):
    __tablename__ = "agg_signal_rollup"
    __table_args__ = (UniqueConstraint("entity_id", name="uq_agg_signal_rollup"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    # sentiment totals (magnitude x impact weight)
    positive: Mapped[float] = mapped_column(Float, default=0.0)
    negative: Mapped[float] = mapped_column(Float, default=0.0)
    neutral: Mapped[float] = mapped_column(Float, default=0.0)
    # category totals
    market: Mapped[float] = mapped_column(Float, default=0.0)
    competitive: Mapped[float] = mapped_column(Float, default=0.0)
    deal: Mapped[float] = mapped_column(Float, default=0.0)
    product: Mapped[float] = mapped_column(Float, default=0.0)
    talent: Mapped[float] = mapped_column(Float, default=0.0)
    risk: Mapped[float] = mapped_column(Float, default=0.0)
    engagement: Mapped[float] = mapped_column(Float, default=0.0)
    # activity groups
    major_events: Mapped[float] = mapped_column(Float, default=0.0)
    customer_activity: Mapped[float] = mapped_column(Float, default=0.0)
    product_activity: Mapped[float] = mapped_column(Float, default=0.0)
    competitive_activity: Mapped[float] = mapped_column(Float, default=0.0)
    # summary
    signal_count: Mapped[int] = mapped_column(Integer, default=0)
    avg_magnitude: Mapped[float] = mapped_column(Float, default=0.0)
    avg_sentiment_score: Mapped[float] = mapped_column(Float, default=0.0)
    latest_signal_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    computed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class AggConnectionRollup(Base):
    __tablename__ = "agg_connection_rollup"
    __table_args__ = (
        UniqueConstraint("source_entity_id", "target_entity_id", "connection_type",
                         name="uq_agg_connection_rollup"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source_entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    target_entity_id: Mapped[str] = mapped_column(String(36), nullable=False)
    connection_type: Mapped[str] = mapped_column(String(50), nullable=False)
    avg_strength: Mapped[float] = mapped_column(Float, default=0.5)
    avg_sentiment: Mapped[float] = mapped_column(Float, default=0.0)
    deal_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    integration_depth: Mapped[float | None] = mapped_column(Float, nullable=True)
    # every other finite numeric metadata key, max per key
    attributes_json: Mapped[str] = mapped_column(Text, default="{}")
    interaction_count: Mapped[int] = mapped_column(Integer, default=0)
    last_updated: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    computed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)


class AggregateState(Base):
    """Last successful refresh per relation, so an empty relation is still dated."""
    __tablename__ = "aggregate_state"

    relation: Mapped[str] = mapped_column(String(100), primary_key=True)
    refreshed_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    row_count: Mapped[int] = mapped_column(Integer, default=0)


class RefreshLog(Base):
    __tablename__ = "refresh_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_type: Mapped[str] = mapped_column(String(50), nullable=False)
    message: Mapped[str] = mapped_column(Text, default="")
    metadata_json: Mapped[str] = mapped_column(Text, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
