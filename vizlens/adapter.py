"""Data resolution adapter: aggregate store -> attribute bags -> frames.

Reads only the metric/index keys a theme actually references, so query cost
grows with the number of channels rather than the number of known metrics.
"""
from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from vizlens.aggregates import (
    CONNECTION_ROLLUP, LATEST_INDEX, LATEST_METRIC, SIGNAL_FIELDS, SIGNAL_ROLLUP, AggregateStore,
)
from vizlens.engine import apply_theme, resolve_compound, string_hash
from vizlens.schemas import ConnectionBag, EntityBag, Envelope, Frame, VizFilters
from vizlens.themes import Domain, ThemeConfig, ThemeRegistry, referenced_keys
from vizlens.utils import json_parse, utcnow

log = logging.getLogger(__name__)

DEFAULT_TIME_RANGE = 30
MAX_TIME_RANGE = 365
DEFAULT_CONNECTION_LIMIT = 500

ENTITY_RELATIONS = (LATEST_METRIC.name, LATEST_INDEX.name, SIGNAL_ROLLUP.name)

PROFILE_FIELDS = ("industry", "market_segment", "geography", "type", "is_user_company")

# Rollup columns exposed to themes as connection.<name>
CONNECTION_ATTRIBUTES = {"deal_value": "dealValue", "integration_depth": "integrationDepth"}
OVERLAP_FACTOR = 0.8
DEPTH_DIVISOR = 10


def _max_staleness(values: list[float | None]) -> float | None:
    """Largest staleness; None as soon as any relation was never computed."""
    if any(v is None for v in values):
        return None
    return max(values, default=0.0)


class VizAdapter:
    def __init__(
        self,
        store: AggregateStore,
        registry: ThemeRegistry,
        connection_limit: int = DEFAULT_CONNECTION_LIMIT,
        demo_mode: bool = False,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.registry = registry
        self.connection_limit = connection_limit
        self.demo_mode = demo_mode
        self.clock = clock

    # -- public API ---------------------------------------------------------

    def themes(self) -> list[dict[str, str]]:
        return self.registry.summaries()

    def entities(self, theme_id: str | None, time_range: int = DEFAULT_TIME_RANGE,
                 filters: VizFilters | None = None,
                 user_id: str | None = None) -> Envelope[list[EntityBag]]:
        theme, filters, now = self._prepare(theme_id, time_range, filters)
        visible = self.store.visible_entities(filters, user_id)
        bags, staleness = self._entity_bags(theme, visible, time_range, filters, now)
        return self._envelope(theme, time_range, bags, staleness, now)

    def connections(self, theme_id: str | None, time_range: int = DEFAULT_TIME_RANGE,
                    filters: VizFilters | None = None,
                    user_id: str | None = None) -> Envelope[list[ConnectionBag]]:
        theme, filters, now = self._prepare(theme_id, time_range, filters)
        visible = self.store.visible_entities(filters, user_id)
        bags, staleness = self._connection_bags([e["id"] for e in visible], filters, now)
        return self._envelope(theme, time_range, bags, staleness, now)

    def frame(self, theme_id: str | None, time_range: int = DEFAULT_TIME_RANGE,
              filters: VizFilters | None = None,
              user_id: str | None = None) -> Envelope[Frame]:
        theme, filters, now = self._prepare(theme_id, time_range, filters)
        visible = self.store.visible_entities(filters, user_id)
        entities, entity_staleness = self._entity_bags(theme, visible, time_range, filters, now)
        connections, connection_staleness = self._connection_bags(
            [e["id"] for e in visible], filters, now)
        frame = apply_theme(theme, entities, connections)
        return self._envelope(theme, time_range, frame,
                              _max_staleness([entity_staleness, connection_staleness]), now)

    # -- internals ----------------------------------------------------------

    def _prepare(self, theme_id: str | None, time_range: int,
                 filters: VizFilters | None) -> tuple[ThemeConfig, VizFilters, datetime]:
        if not 1 <= time_range <= MAX_TIME_RANGE:
            raise ValueError(f"time_range must be between 1 and {MAX_TIME_RANGE} days, got {time_range}")
        return self.registry.resolve(theme_id), filters or VizFilters(), self.clock()

    def _envelope(self, theme: ThemeConfig, time_range: int, data: Any,
                  staleness: float | None, now: datetime) -> Envelope:
        return Envelope(theme_id=theme.id, time_range=time_range, data=data,
                        computed_at=now, staleness=staleness)

    def _staleness(self, names: tuple[str, ...], now: datetime) -> float | None:
        return _max_staleness([self.store.staleness(name, now) for name in names])

    def _entity_bags(self, theme: ThemeConfig, visible: list[dict[str, Any]], time_range: int,
                     filters: VizFilters, now: datetime) -> tuple[list[EntityBag], float | None]:
        if not visible:
            return [], 0.0
        ids = [e["id"] for e in visible]
        metrics = self.store.latest_metrics(ids, referenced_keys(theme, Domain.METRIC))
        indices = self.store.latest_indices(ids, referenced_keys(theme, Domain.INDEX))
        rollups = self.store.signal_rollups(ids, now - timedelta(days=time_range))

        bags = []
        for entity in visible:
            bag = EntityBag(
                id=entity["id"],
                name=entity["name"],
                type=entity["type"],
                profile={f: entity.get(f) for f in PROFILE_FIELDS},
                metric=metrics.get(entity["id"], {}),
                index=indices.get(entity["id"], {}),
                signal=self._signal_values(rollups.get(entity["id"]), filters),
            )
            if self.demo_mode:
                _fill_synthetic(bag, theme)
            bags.append(bag)
        return bags, self._staleness(ENTITY_RELATIONS, now)

    def _signal_values(self, rollup: dict[str, float] | None, filters: VizFilters) -> dict[str, float]:
        values = dict.fromkeys(SIGNAL_FIELDS, 0.0)
        if rollup is None:
            return values
        if filters.min_magnitude is not None and rollup.get("avg_magnitude", 0.0) < filters.min_magnitude:
            return values
        values.update(rollup)
        if filters.sentiment == "positive":
            values["negative"] = 0.0
        elif filters.sentiment == "negative":
            values["positive"] = 0.0
        return values

    def _connection_bags(self, ids: list[str], filters: VizFilters,
                         now: datetime) -> tuple[list[ConnectionBag], float | None]:
        if not ids:
            return [], 0.0
        rows = self.store.connection_rollups(
            ids, filters.connection_types, filters.min_strength, self.connection_limit)
        bags = [
            ConnectionBag(
                source=r["source_entity_id"],
                target=r["target_entity_id"],
                type=r["connection_type"],
                strength=r["avg_strength"] if r["avg_strength"] is not None else 0.5,
                sentiment=r["avg_sentiment"] or 0.0,
                interaction_count=r["interaction_count"] or 0,
                last_updated=r["last_updated"],
                attributes=_connection_attributes(r),
            )
            for r in rows
        ]
        return bags, self._staleness((CONNECTION_ROLLUP.name,), now)


def _connection_attributes(row: dict[str, Any]) -> dict[str, float]:
    """Numeric connection attributes themes can reference as ``connection.<name>``.

    Metadata keys keep their names.  ``overlapScore`` and ``depth`` are derived
    from strength and interaction count unless the metadata already sets them.
    """
    raw = json_parse(row.get("attributes_json"), {})
    attributes = {k: float(v) for k, v in raw.items()} if isinstance(raw, dict) else {}
    for column, name in CONNECTION_ATTRIBUTES.items():
        if row.get(column) is not None:
            attributes[name] = float(row[column])
    strength = row["avg_strength"] if row["avg_strength"] is not None else 0.5
    attributes.setdefault("overlapScore", strength * OVERLAP_FACTOR)
    attributes.setdefault("depth", (row["interaction_count"] or 0) / DEPTH_DIVISOR)
    return attributes


# ---------------------------------------------------------------------------
# Demo mode
# ---------------------------------------------------------------------------


def _synthetic_value(entity_id: str, ref: str) -> float:
    return string_hash(f"{entity_id}:{ref}") / 0xFFFFFFFF


def _fill_synthetic(bag: EntityBag, theme: ThemeConfig) -> None:
    """Fill absent position/size channels with stable pseudo-random values.

    Only for demos against sparse data.  Every filled reference is listed in
    ``bag.synthetic`` so clients can flag it.
    """
    enc = theme.encodings
    for key in (enc.position.x, enc.position.y, enc.position.z, enc.size):
        if resolve_compound(bag, key) is not None:
            continue
        for ref in key.refs:
            if ref.domain is Domain.INDEX:
                bag.index[ref.field] = _synthetic_value(bag.id, str(ref))
            elif ref.domain is Domain.METRIC:
                bag.metric[ref.field] = _synthetic_value(bag.id, str(ref))
            else:
                continue
            bag.synthetic.append(str(ref))
            break
