"""Theme application engine: attribute bags + theme -> visual frame.

Pure and synchronous.  No I/O, no clock, no random source: identical inputs
always produce identical frames, so the engine can run in a worker thread or
be cached by input hash.

Absent values (a compound key where no reference resolved to a finite number)
are ``None`` and are mapped to per-channel defaults here; they never raise.
"""
from __future__ import annotations

import math
from typing import Callable, Iterable

from vizlens.schemas import (
    ConnectionBag, EntityBag, Frame, Vec3, VisualBackground, VisualEdge, VisualNode,
)
from vizlens.themes import CompoundKey, Domain, ThemeConfig

# Assumed maximum for logarithmic thickness: log10(1+v) / log10(1+K)
LOG_THICKNESS_MAX = 1e3
DRIFT_SCALE = 0.015
GLOW_MULTIPLIERS = {"low": 0.35, "med": 0.6, "high": 1.0}
DEFAULT_TOP_N = 10
COMPETITOR_TYPE = "competitor"

SCALE_LOW, SCALE_HIGH = 0x60A5FA, 0xF97316          # blue -> orange
SENTIMENT_NEG, SENTIMENT_POS = 0x3B82F6, 0xF59E0B   # blue -> amber


# ---------------------------------------------------------------------------
# Small numeric / colour helpers
# ---------------------------------------------------------------------------


def clamp01(v: float) -> float:
    return max(0.0, min(1.0, v))


def is_finite_number(v: object) -> bool:
    return isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)


def string_hash(s: str) -> int:
    """32-bit rolling hash (h*31 + c), stable across processes unlike ``hash()``."""
    h = 0
    for ch in s:
        h = (h * 31 + ord(ch)) & 0xFFFFFFFF
    return h


def hash_color(s: str) -> int:
    return string_hash(s) & 0xFFFFFF


def lerp_color(a: int, b: int, t: float) -> int:
    t = clamp01(t)
    ar, ag, ab = (a >> 16) & 0xFF, (a >> 8) & 0xFF, a & 0xFF
    br, bg, bb = (b >> 16) & 0xFF, (b >> 8) & 0xFF, b & 0xFF
    r = round(ar + (br - ar) * t)
    g = round(ag + (bg - ag) * t)
    bl = round(ab + (bb - ab) * t)
    return (r << 16) | (g << 8) | bl


def tint_color(color: int, factor: float) -> int:
    r = min(255, int(((color >> 16) & 0xFF) * factor))
    g = min(255, int(((color >> 8) & 0xFF) * factor))
    b = min(255, int((color & 0xFF) * factor))
    return (r << 16) | (g << 8) | b


# ---------------------------------------------------------------------------
# Pluggable strategies
# ---------------------------------------------------------------------------


class Palette:
    """Colour strategies. Override methods to restyle a deployment."""

    def category(self, value: str | None) -> int:
        return hash_color(value or "unknown")

    def type_color(self, connection_type: str) -> int:
        return hash_color(connection_type)

    def sentiment_color(self, sentiment: float | None) -> int:
        s = sentiment if is_finite_number(sentiment) else 0.0
        return lerp_color(SENTIMENT_NEG, SENTIMENT_POS, (s + 1) / 2)

    def scale_color(self, value: float | None) -> int:
        return lerp_color(SCALE_LOW, SCALE_HIGH, value if is_finite_number(value) else 0.0)

    def hybrid_color(self, connection_type: str, sentiment: float | None) -> int:
        s = sentiment if is_finite_number(sentiment) else 0.0
        return tint_color(self.type_color(connection_type), 0.6 + 0.4 * clamp01((s + 1) / 2))


class Normalizers:
    def position(self, v: float | None) -> float:
        return clamp01(v) if v is not None else 0.5

    def fit_size(self, values: Iterable[float]) -> Callable[[float | None], float]:
        """Build a size normalizer for one frame.

        Values already inside [0, 1] pass through.  Otherwise raw magnitudes are
        unbounded (revenue, market cap), so sizes are scaled in log space
        against the frame maximum.  The scale starts at zero, so only a real
        zero shares the size of an absent value.
        """
        present = [max(0.0, v) for v in values]
        if all(v <= 1.0 for v in present):
            return lambda v: clamp01(v) if v is not None else 0.0
        hi = math.log1p(max(present))

        def scaled(v: float | None) -> float:
            if v is None:
                return 0.0
            return clamp01(math.log1p(max(0.0, v)) / hi)

        return scaled

    def thickness(self, v: float | None, scale: str = "linear") -> float:
        val = max(0.0, v) if v is not None else 0.0
        if scale == "log":
            return clamp01(math.log10(1 + val) / math.log10(1 + LOG_THICKNESS_MAX))
        return clamp01(val)


class KeyResolvers:
    def entity(self, bag: EntityBag, key: CompoundKey) -> float | None:
        return resolve_compound(bag, key)

    def connection(self, bag: ConnectionBag, key: CompoundKey) -> float | None:
        return resolve_connection_value(bag, key)


DEFAULT_PALETTE = Palette()
DEFAULT_NORMALIZERS = Normalizers()
DEFAULT_RESOLVERS = KeyResolvers()


# ---------------------------------------------------------------------------
# Compound key resolution
# ---------------------------------------------------------------------------


def resolve_compound(bag: EntityBag, key: CompoundKey) -> float | None:
    """First finite number among *key*'s metric/index/signal references, else None."""
    for ref in key.refs:
        if ref.domain is Domain.METRIC:
            v = bag.metric.get(ref.field)
        elif ref.domain is Domain.INDEX:
            v = bag.index.get(ref.field)
        elif ref.domain is Domain.SIGNAL:
            v = bag.signal.get(ref.field)
        else:
            # profile values are categorical; connection refs do not apply to entities
            continue
        if is_finite_number(v):
            return float(v)
    return None


def resolve_connection_value(bag: ConnectionBag, key: CompoundKey) -> float | None:
    for ref in key.refs:
        if ref.domain is not Domain.CONNECTION:
            continue
        if ref.field in ("strength", "sentiment", "interaction_count"):
            v = getattr(bag, ref.field)
        else:
            v = bag.attributes.get(ref.field)
        if is_finite_number(v):
            return float(v)
    return None


def _profile_value(bag: EntityBag, key: CompoundKey) -> str | None:
    for field in key.fields(Domain.PROFILE):
        v = bag.profile.get(field)
        if v not in (None, ""):
            return str(v)
    return None


# ---------------------------------------------------------------------------
# Per-channel mapping
# ---------------------------------------------------------------------------


def _glow(raw: float | None, polarity: str, intensity: str) -> float:
    if raw is None:
        return 0.0
    # "pos" keeps only positive readings; "neg" and "both" treat the key as a magnitude
    value = max(raw, 0.0) if polarity == "pos" else abs(raw)
    return clamp01(clamp01(value) * GLOW_MULTIPLIERS.get(intensity, GLOW_MULTIPLIERS["low"]))


def _drift(entity_id: str, raw: float | None) -> Vec3:
    if raw is None:
        return Vec3()
    magnitude = max(-1.0, min(1.0, raw)) * DRIFT_SCALE
    h = string_hash(entity_id)
    theta = (h & 0xFFFF) / 0xFFFF * 2 * math.pi
    phi = ((h >> 16) & 0xFFFF) / 0xFFFF * math.pi
    return Vec3(
        x=magnitude * math.sin(phi) * math.cos(theta),
        y=magnitude * math.sin(phi) * math.sin(theta),
        z=magnitude * math.cos(phi),
    )


def _label_ids(theme: ThemeConfig, nodes: list[VisualNode], edges: list[VisualEdge]) -> set[str]:
    labels = theme.encodings.labels
    if labels.strategy == "topN":
        n = labels.n if labels.n is not None else DEFAULT_TOP_N
        ranked = sorted(nodes, key=lambda node: (-node.size, node.id))
        return {node.id for node in ranked[:n]}
    if labels.strategy == "focus":
        own = {node.id for node in nodes if node.meta.profile.get("is_user_company")}
        focus = set(own)
        for edge in edges:
            if edge.source in own or edge.target in own:
                focus.update((edge.source, edge.target))
        return focus
    return set()


def apply_theme(
    theme: ThemeConfig,
    entities: list[EntityBag],
    connections: list[ConnectionBag],
    palette: Palette = DEFAULT_PALETTE,
    normalizers: Normalizers = DEFAULT_NORMALIZERS,
    resolvers: KeyResolvers = DEFAULT_RESOLVERS,
) -> Frame:
    """Apply *theme* to entity and connection bags, producing a visual frame."""
    enc = theme.encodings

    raw_sizes = [resolvers.entity(e, enc.size) for e in entities]
    size_of = normalizers.fit_size(v for v in raw_sizes if v is not None)

    nodes: list[VisualNode] = []
    for entity, raw_size in zip(entities, raw_sizes):
        position = Vec3(
            x=normalizers.position(resolvers.entity(entity, enc.position.x)) - 0.5,
            y=normalizers.position(resolvers.entity(entity, enc.position.y)) - 0.5,
            z=normalizers.position(resolvers.entity(entity, enc.position.z)) - 0.5,
        )
        if enc.color.mode == "palette":
            color = palette.category(_profile_value(entity, enc.color.key))
        else:
            scaled = resolvers.entity(entity, enc.color.key)
            color = palette.scale_color(clamp01(scaled) if scaled is not None else None)

        nodes.append(VisualNode(
            id=entity.id,
            name=entity.name,
            position=position,
            size=size_of(raw_size),
            color=color,
            glow=_glow(resolvers.entity(entity, enc.glow.key), enc.glow.polarity, enc.glow.intensity),
            drift=_drift(entity.id, resolvers.entity(entity, enc.drift.key)),
            meta=entity,
        ))

    conn = theme.connections
    include = set(conn.include)
    edges: list[VisualEdge] = []
    for c in connections:
        if c.type not in include:
            continue
        if conn.color.by == "type":
            edge_color = palette.type_color(c.type)
        elif conn.color.by == "sentiment":
            edge_color = palette.sentiment_color(c.sentiment)
        else:
            edge_color = palette.hybrid_color(c.type, c.sentiment)
        edges.append(VisualEdge(
            source=c.source,
            target=c.target,
            thickness=normalizers.thickness(resolvers.connection(c, conn.thickness.key),
                                            conn.thickness.scale),
            color=edge_color,
            dashed=conn.pattern.rivalry_dashed and c.type == COMPETITOR_TYPE,
            particles=conn.animation.particles,
            pulses_on_active=conn.animation.pulses_on_active,
            meta=c,
        ))

    labelled = _label_ids(theme, nodes, edges)
    for node in nodes:
        node.label = node.id in labelled

    bg = theme.background
    return Frame(
        nodes=nodes,
        edges=edges,
        background=VisualBackground(clusters_by=bg.clusters_by, halos=bg.halos, axes=bg.axes),
    )
