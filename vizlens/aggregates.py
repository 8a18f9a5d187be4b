"""Aggregate store: precomputed per-entity/per-connection relations.

Each relation is a plain table recomputed in full from the base tables by
:meth:`AggregateStore.refresh`.  Rows carry ``computed_at`` (refresh time), so
staleness is ``now - max(computed_at)`` per relation.

Two refresh modes:

- ``blocking``   replace every row in one transaction (and take an exclusive
  table lock on PostgreSQL).  Required for the first population.
- ``concurrent`` diff the freshly computed rows against the current ones by
  unique key: delete vanished keys, update existing keys, insert new keys.
  Readers keep seeing a complete relation throughout.  Needs a populated
  relation and the unique key constraint every aggregate table declares.

The store is an explicit handle: build one per engine and pass it to the
adapter and refresh manager.  Nothing else writes aggregate rows.
"""
from __future__ import annotations

import json
import logging
import math
import threading
from collections.abc import Callable, Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import (
    Table, bindparam, case, delete, func, insert, select, text, update,
)
from sqlalchemy.engine import Connection as DBConnection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from vizlens.errors import AggregateUnavailable, RefreshCancelled, RelationNotPopulated
from vizlens.models import (
    AggConnectionRollup, AggLatestIndex, AggLatestMetric, AggregateState, AggSignalRollup,
    Connection, Entity, IndexValue, MetricPoint, RefreshLog, Signal, SignalImpact,
)
from vizlens.schemas import VizFilters
from vizlens.utils import json_parse, seconds_between, utcnow

log = logging.getLogger(__name__)

SIGNAL_WINDOW_DAYS = 90
CONNECTION_WINDOW_DAYS = 180
REFRESH_EVENT = "AGGREGATE_REFRESH"
ENTITY_SOURCE = "entities"

SENTIMENT_BUCKETS = {"positive": "POSITIVE", "negative": "NEGATIVE", "neutral": "NEUTRAL"}
CATEGORY_BUCKETS = {
    "market": "MARKET", "competitive": "COMPETITIVE", "deal": "DEAL", "product": "PRODUCT",
    "talent": "TALENT", "risk": "RISK", "engagement": "ENGAGEMENT",
}
ACTIVITY_BUCKETS = {
    "major_events": ("ACQUISITION", "FUNDING_ROUND", "PARTNERSHIP"),
    "customer_activity": ("CUSTOMER_WIN", "CUSTOMER_LOSS"),
    "product_activity": ("PRODUCT_LAUNCH", "MAJOR_UPDATE"),
    "competitive_activity": ("COMPETITOR_LAUNCH", "PRICING_CHANGE", "MARKET_ENTRY"),
}
SIGNAL_FIELDS = (
    *SENTIMENT_BUCKETS, *CATEGORY_BUCKETS, *ACTIVITY_BUCKETS,
    "signal_count", "avg_magnitude", "avg_sentiment_score",
)

# Metadata keys with their own rollup columns; the rest go to attributes_json
CONNECTION_METADATA_FIELDS = ("deal_value", "integration_depth")


# ---------------------------------------------------------------------------
# Relation definitions
# ---------------------------------------------------------------------------


def _compute_latest_metric(conn: DBConnection, now: datetime) -> list[dict[str, Any]]:
    partition = (MetricPoint.entity_id, MetricPoint.metric_key)
    ranked = select(
        MetricPoint.entity_id,
        MetricPoint.metric_key,
        MetricPoint.value,
        MetricPoint.timestamp,
        func.row_number().over(partition_by=partition, order_by=MetricPoint.timestamp.desc()).label("rn"),
        func.lag(MetricPoint.value).over(partition_by=partition, order_by=MetricPoint.timestamp).label("prev_value"),
    ).subquery()
    rows = []
    for r in conn.execute(select(ranked).where(ranked.c.rn == 1)).mappings():
        prev = r["prev_value"]
        pct = (r["value"] - prev) / prev * 100 if prev is not None and prev > 0 else 0.0
        rows.append({
            "entity_id": r["entity_id"], "metric_key": r["metric_key"], "value": r["value"],
            "pct_change": pct, "as_of": r["timestamp"], "computed_at": now,
        })
    return rows


def _compute_latest_index(conn: DBConnection, now: datetime) -> list[dict[str, Any]]:
    ranked = select(
        IndexValue.entity_id,
        IndexValue.index_key,
        IndexValue.value,
        IndexValue.normalized,
        IndexValue.as_of,
        func.row_number().over(
            partition_by=(IndexValue.entity_id, IndexValue.index_key),
            order_by=IndexValue.as_of.desc(),
        ).label("rn"),
    ).subquery()
    return [
        {
            "entity_id": r["entity_id"], "index_key": r["index_key"], "value": r["value"],
            "normalized": r["normalized"], "as_of": r["as_of"], "computed_at": now,
        }
        for r in conn.execute(select(ranked).where(ranked.c.rn == 1)).mappings()
    ]


def _compute_signal_rollup(conn: DBConnection, now: datetime) -> list[dict[str, Any]]:
    weighted = Signal.magnitude * SignalImpact.weight

    def bucket(condition):
        return func.sum(case((condition, weighted), else_=0.0))

    columns = [SignalImpact.entity_id.label("entity_id")]
    columns += [bucket(Signal.sentiment_label == label).label(name)
                for name, label in SENTIMENT_BUCKETS.items()]
    columns += [bucket(Signal.category == cat).label(name)
                for name, cat in CATEGORY_BUCKETS.items()]
    columns += [bucket(Signal.type.in_(types)).label(name)
                for name, types in ACTIVITY_BUCKETS.items()]
    columns += [
        func.count().label("signal_count"),
        func.avg(Signal.magnitude).label("avg_magnitude"),
        func.avg(func.coalesce(Signal.sentiment_score, 0.0)).label("avg_sentiment_score"),
        func.max(Signal.timestamp).label("latest_signal_at"),
    ]
    stmt = (
        select(*columns)
        .join(Signal, SignalImpact.signal_id == Signal.id)
        .where(Signal.timestamp >= now - timedelta(days=SIGNAL_WINDOW_DAYS))
        .group_by(SignalImpact.entity_id)
    )
    rows = []
    for r in conn.execute(stmt).mappings():
        row = {k: (r[k] or 0) for k in SIGNAL_FIELDS}
        row.update(entity_id=r["entity_id"], latest_signal_at=r["latest_signal_at"], computed_at=now)
        rows.append(row)
    return rows


def _numeric(value: Any) -> float | None:
    """Finite float from a JSON number or numeric string, else None."""
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        return None
    try:
        value = float(value)
    except ValueError:
        return None
    return value if math.isfinite(value) else None


def _compute_connection_rollup(conn: DBConnection, now: datetime) -> list[dict[str, Any]]:
    stmt = (
        select(
            Connection.source_entity_id, Connection.target_entity_id, Connection.type,
            Connection.strength, Connection.sentiment_score, Connection.metadata_json,
            Connection.updated_at,
        )
        .where(Connection.updated_at >= now - timedelta(days=CONNECTION_WINDOW_DAYS))
        .order_by(Connection.source_entity_id, Connection.target_entity_id, Connection.type)
    )
    groups: dict[tuple[str, str, str], dict[str, Any]] = {}
    for r in conn.execute(stmt).mappings():
        key = (r["source_entity_id"], r["target_entity_id"], r["type"])
        g = groups.setdefault(key, {
            "strengths": [], "sentiments": [], "last_updated": None, "attributes": {},
            **{f: None for f in CONNECTION_METADATA_FIELDS},
        })
        g["strengths"].append(r["strength"] if r["strength"] is not None else 0.5)
        g["sentiments"].append(r["sentiment_score"] if r["sentiment_score"] is not None else 0.0)
        if g["last_updated"] is None or r["updated_at"] > g["last_updated"]:
            g["last_updated"] = r["updated_at"]
        meta = json_parse(r["metadata_json"], {})
        if not isinstance(meta, dict):
            continue
        for name, raw in meta.items():
            v = _numeric(raw)
            if v is None:
                continue
            target = g if name in CONNECTION_METADATA_FIELDS else g["attributes"]
            current = target.get(name)
            target[name] = v if current is None else max(current, v)

    return [
        {
            "source_entity_id": source, "target_entity_id": target, "connection_type": ctype,
            "avg_strength": sum(g["strengths"]) / len(g["strengths"]),
            "avg_sentiment": sum(g["sentiments"]) / len(g["sentiments"]),
            "deal_value": g["deal_value"], "integration_depth": g["integration_depth"],
            "attributes_json": json.dumps(g["attributes"], sort_keys=True),
            "interaction_count": len(g["strengths"]), "last_updated": g["last_updated"],
            "computed_at": now,
        }
        for (source, target, ctype), g in groups.items()
    ]


@dataclass(frozen=True)
class Relation:
    name: str
    table: Table
    key_columns: tuple[str, ...]
    compute: Callable[[DBConnection, datetime], list[dict[str, Any]]]


LATEST_METRIC = Relation("agg_latest_metric", AggLatestMetric.__table__,
                         ("entity_id", "metric_key"), _compute_latest_metric)
LATEST_INDEX = Relation("agg_latest_index", AggLatestIndex.__table__,
                        ("entity_id", "index_key"), _compute_latest_index)
SIGNAL_ROLLUP = Relation("agg_signal_rollup", AggSignalRollup.__table__,
                         ("entity_id",), _compute_signal_rollup)
CONNECTION_ROLLUP = Relation("agg_connection_rollup", AggConnectionRollup.__table__,
                             ("source_entity_id", "target_entity_id", "connection_type"),
                             _compute_connection_rollup)

RELATIONS: tuple[Relation, ...] = (LATEST_METRIC, LATEST_INDEX, SIGNAL_ROLLUP, CONNECTION_ROLLUP)
RELATION_NAMES: tuple[str, ...] = tuple(r.name for r in RELATIONS)


def _check_cancel(cancel: threading.Event | None, name: str) -> None:
    if cancel is not None and cancel.is_set():
        raise RefreshCancelled(f"Refresh of {name!r} cancelled before commit")


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


class AggregateStore:
    def __init__(
        self,
        engine: Engine,
        relations: Iterable[Relation] = RELATIONS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.engine = engine
        self.relations = {r.name: r for r in relations}
        self.clock = clock
        self._sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    def relation(self, name: str) -> Relation:
        try:
            return self.relations[name]
        except KeyError:
            raise ValueError(f"Unknown aggregate relation {name!r}") from None

    @contextmanager
    def _reading(self, name: str) -> Iterator[DBConnection]:
        """Open a read connection; query failures surface as AggregateUnavailable."""
        try:
            with self.engine.connect() as conn:
                yield conn
        except SQLAlchemyError as exc:
            log.warning("Aggregate read failed on %s: %s", name, exc)
            raise AggregateUnavailable(name, f"Aggregate relation {name!r} is unavailable: {exc}") from exc

    # -- refresh ------------------------------------------------------------

    def refresh(self, name: str, mode: str = "concurrent",
                cancel: threading.Event | None = None) -> int:
        """Recompute relation *name*; returns its row count after the refresh."""
        if mode not in ("concurrent", "blocking"):
            raise ValueError(f"Unknown refresh mode {mode!r}")
        relation = self.relation(name)
        table = relation.table
        now = self.clock()
        with self.engine.begin() as conn:
            if mode == "blocking":
                if conn.dialect.name == "postgresql":
                    conn.execute(text(f"LOCK TABLE {table.name} IN ACCESS EXCLUSIVE MODE"))
            else:
                populated = conn.execute(select(func.count()).select_from(table)).scalar_one()
                if not populated:
                    raise RelationNotPopulated(name)

            rows = relation.compute(conn, now)
            _check_cancel(cancel, name)

            if mode == "blocking":
                conn.execute(delete(table))
                if rows:
                    conn.execute(insert(table), rows)
            else:
                self._apply_diff(conn, relation, rows)
            _check_cancel(cancel, name)

            state = AggregateState.__table__
            conn.execute(delete(state).where(state.c.relation == name))
            conn.execute(insert(state).values(relation=name, refreshed_at=now, row_count=len(rows)))
        return len(rows)

    def _apply_diff(self, conn: DBConnection, relation: Relation, rows: list[dict[str, Any]]) -> None:
        table = relation.table
        key_cols = [table.c[k] for k in relation.key_columns]
        existing = {
            tuple(r[1:]): r[0]
            for r in conn.execute(select(table.c.id, *key_cols))
        }
        fresh = {tuple(row[k] for k in relation.key_columns): row for row in rows}

        stale_ids = [row_id for key, row_id in existing.items() if key not in fresh]
        if stale_ids:
            conn.execute(delete(table).where(table.c.id.in_(stale_ids)))

        to_update = [(existing[key], row) for key, row in fresh.items() if key in existing]
        if to_update:
            value_cols = [c for c in to_update[0][1] if c not in relation.key_columns]
            stmt = (
                update(table)
                .where(table.c.id == bindparam("row_id"))
                .values({c: bindparam(f"v_{c}") for c in value_cols})
            )
            conn.execute(stmt, [
                {"row_id": row_id, **{f"v_{c}": row[c] for c in value_cols}}
                for row_id, row in to_update
            ])

        to_insert = [row for key, row in fresh.items() if key not in existing]
        if to_insert:
            conn.execute(insert(table), to_insert)

    # -- relation metadata --------------------------------------------------

    def row_count(self, name: str) -> int:
        table = self.relation(name).table
        with self._reading(name) as conn:
            return conn.execute(select(func.count()).select_from(table)).scalar_one()

    def newest_computed_at(self, name: str) -> datetime | None:
        table = self.relation(name).table
        with self._reading(name) as conn:
            return conn.execute(select(func.max(table.c.computed_at))).scalar_one_or_none()

    def last_refreshed_at(self, name: str) -> datetime | None:
        state = AggregateState.__table__
        with self._reading(name) as conn:
            return conn.execute(
                select(state.c.refreshed_at).where(state.c.relation == name)
            ).scalar_one_or_none()

    def staleness(self, name: str, now: datetime | None = None) -> float | None:
        """Seconds since *name* was last computed; None if it was never refreshed.

        A relation that refreshed to zero rows is dated by its last recorded refresh.
        """
        newest = self.newest_computed_at(name)
        if newest is None:
            newest = self.last_refreshed_at(name)
        if newest is None:
            return None
        return max(0.0, seconds_between(newest, now or self.clock()))

    # -- base entity reads --------------------------------------------------

    def visible_entities(self, filters: VizFilters, user_id: str | None = None) -> list[dict[str, Any]]:
        stmt = select(Entity)
        if filters.industry:
            stmt = stmt.where(Entity.industry == filters.industry)
        if filters.market_segment:
            stmt = stmt.where(Entity.market_segment == filters.market_segment)
        if filters.entity_types:
            stmt = stmt.where(Entity.type.in_(filters.entity_types))
        stmt = stmt.order_by(Entity.created_at.desc(), Entity.id)
        try:
            with self._sessions() as session:
                entities = session.execute(stmt).scalars().all()
        except SQLAlchemyError as exc:
            log.warning("Entity read failed: %s", exc)
            raise AggregateUnavailable(ENTITY_SOURCE, f"Entity storage is unavailable: {exc}") from exc
        return [
            {
                "id": e.id, "name": e.name, "type": e.type, "industry": e.industry,
                "market_segment": e.market_segment, "geography": e.geography,
                "is_user_company": user_id is not None and e.owner_user_id == user_id,
            }
            for e in entities
        ]

    # -- aggregate reads ----------------------------------------------------

    def latest_metrics(self, entity_ids: list[str], keys: Iterable[str]) -> dict[str, dict[str, float]]:
        keys = sorted(set(keys))
        if not entity_ids or not keys:
            return {}
        t = AggLatestMetric.__table__
        stmt = (
            select(t.c.entity_id, t.c.metric_key, t.c.value)
            .where(t.c.entity_id.in_(entity_ids), t.c.metric_key.in_(keys))
            .order_by(t.c.computed_at.desc(), t.c.as_of.desc())
        )
        with self._reading(LATEST_METRIC.name) as conn:
            return _group_latest(conn.execute(stmt))

    def latest_indices(self, entity_ids: list[str], keys: Iterable[str]) -> dict[str, dict[str, float]]:
        keys = sorted(set(keys))
        if not entity_ids or not keys:
            return {}
        t = AggLatestIndex.__table__
        stmt = (
            select(t.c.entity_id, t.c.index_key, func.coalesce(t.c.normalized, t.c.value))
            .where(t.c.entity_id.in_(entity_ids), t.c.index_key.in_(keys))
            .order_by(t.c.computed_at.desc(), t.c.as_of.desc())
        )
        with self._reading(LATEST_INDEX.name) as conn:
            return _group_latest(conn.execute(stmt))

    def signal_rollups(self, entity_ids: list[str], since: datetime) -> dict[str, dict[str, float]]:
        if not entity_ids:
            return {}
        t = AggSignalRollup.__table__
        stmt = (
            select(t)
            .where(t.c.entity_id.in_(entity_ids), t.c.latest_signal_at >= since)
            .order_by(t.c.computed_at.desc())
        )
        result: dict[str, dict[str, float]] = {}
        with self._reading(SIGNAL_ROLLUP.name) as conn:
            for r in conn.execute(stmt).mappings():
                if r["entity_id"] not in result:
                    result[r["entity_id"]] = {f: float(r[f] or 0) for f in SIGNAL_FIELDS}
        return result

    def connection_rollups(
        self,
        entity_ids: list[str],
        connection_types: list[str] | None = None,
        min_strength: float | None = None,
        limit: int = 500,
    ) -> list[dict[str, Any]]:
        if not entity_ids:
            return []
        t = AggConnectionRollup.__table__
        stmt = select(t).where(t.c.source_entity_id.in_(entity_ids), t.c.target_entity_id.in_(entity_ids))
        if connection_types:
            stmt = stmt.where(t.c.connection_type.in_(connection_types))
        if min_strength:
            stmt = stmt.where(t.c.avg_strength >= min_strength)
        stmt = stmt.order_by(
            t.c.avg_strength.desc(), t.c.last_updated.desc(),
            t.c.source_entity_id, t.c.target_entity_id, t.c.connection_type,
        ).limit(limit)
        with self._reading(CONNECTION_ROLLUP.name) as conn:
            return [dict(r) for r in conn.execute(stmt).mappings()]

    # -- audit log ----------------------------------------------------------

    def write_refresh_log(self, message: str, payload: str, created_at: datetime | None = None) -> None:
        with self.engine.begin() as conn:
            conn.execute(insert(RefreshLog.__table__).values(
                event_type=REFRESH_EVENT, message=message, metadata_json=payload,
                created_at=created_at or self.clock(),
            ))

    def refresh_history(self, limit: int = 10) -> list[dict[str, Any]]:
        t = RefreshLog.__table__
        stmt = (
            select(t.c.created_at, t.c.metadata_json)
            .where(t.c.event_type == REFRESH_EVENT)
            .order_by(t.c.created_at.desc(), t.c.id.desc())
            .limit(limit)
        )
        with self.engine.connect() as conn:
            return [
                {"created_at": r["created_at"], "metadata": json_parse(r["metadata_json"], {})}
                for r in conn.execute(stmt).mappings()
            ]


def _group_latest(rows) -> dict[str, dict[str, float]]:
    """Group (entity_id, key, value) rows; the first row per key wins (rows come newest first)."""
    result: dict[str, dict[str, float]] = {}
    for entity_id, key, value in rows:
        if value is None:
            continue
        result.setdefault(entity_id, {}).setdefault(key, float(value))
    return result
