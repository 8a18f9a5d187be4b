"""Theme configuration: declarative mapping of entity data onto visual channels.

A theme names, per channel, a *compound key expression* such as
``"metric.marketCap|metric.revenue"``: an ordered list of ``domain.field``
references separated by ``|``.  The first reference that resolves to a finite
number wins.  Expressions are parsed into :class:`CompoundKey` values when a
theme document is validated, so the rendering path never re-parses strings.

Domains
-------
- ``profile.*``    static entity attributes (categorical, palette colour only)
- ``metric.*``     latest time-series metric values
- ``index.*``      latest composite index values (already 0..1)
- ``signal.*``     rolling signal rollup (sentiment, category, activity sums)
- ``connection.*`` connection attributes (strength, sentiment, free-form)
"""
from __future__ import annotations

import enum
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any, Literal

from pydantic import (
    BaseModel, PlainSerializer, PlainValidator, ValidationError, WithJsonSchema, model_validator,
)

from vizlens.errors import ThemeValidationError

log = logging.getLogger(__name__)

FALLBACK_DELIMITER = "|"
DEFAULT_THEME_ID = "market-landscape"


# ---------------------------------------------------------------------------
# Compound key expressions
# ---------------------------------------------------------------------------


class Domain(str, enum.Enum):
    METRIC = "metric"
    INDEX = "index"
    SIGNAL = "signal"
    PROFILE = "profile"
    CONNECTION = "connection"


NUMERIC_ENTITY_DOMAINS = frozenset({Domain.METRIC, Domain.INDEX, Domain.SIGNAL})


@dataclass(frozen=True)
class KeyRef:
    domain: Domain
    field: str

    def __str__(self) -> str:
        return f"{self.domain.value}.{self.field}"


@dataclass(frozen=True)
class CompoundKey:
    refs: tuple[KeyRef, ...]

    @property
    def expr(self) -> str:
        return FALLBACK_DELIMITER.join(str(r) for r in self.refs)

    def fields(self, domain: Domain) -> list[str]:
        return [r.field for r in self.refs if r.domain is domain]

    def domains(self) -> set[Domain]:
        return {r.domain for r in self.refs}

    def __str__(self) -> str:
        return self.expr


def parse_key_ref(text: str) -> KeyRef:
    domain, sep, field = text.strip().partition(".")
    if not sep or not field:
        raise ThemeValidationError(f"Key reference {text!r} must look like 'domain.field'")
    try:
        return KeyRef(Domain(domain), field)
    except ValueError:
        known = ", ".join(d.value for d in Domain)
        raise ThemeValidationError(f"Unknown domain {domain!r} in {text!r} (expected one of {known})") from None


def parse_compound(expr: str) -> CompoundKey:
    """Parse ``"metric.a|index.b"`` into a :class:`CompoundKey`."""
    if not isinstance(expr, str) or not expr.strip():
        raise ThemeValidationError("Compound key expression must be a non-empty string")
    return CompoundKey(tuple(parse_key_ref(part) for part in expr.split(FALLBACK_DELIMITER)))


def _coerce_key(value: Any) -> CompoundKey:
    if isinstance(value, CompoundKey):
        return value
    if isinstance(value, str):
        try:
            return parse_compound(value)
        except ThemeValidationError as exc:
            raise ValueError(str(exc)) from exc
    raise ValueError(f"Expected a compound key string, got {type(value).__name__}")


KeyExpr = Annotated[
    CompoundKey,
    PlainValidator(_coerce_key),
    PlainSerializer(lambda k: k.expr, return_type=str),
    WithJsonSchema({"type": "string", "examples": ["metric.marketCap|metric.revenue"]}),
]


# ---------------------------------------------------------------------------
# Theme document schema
# ---------------------------------------------------------------------------


class PositionEncoding(BaseModel):
    x: KeyExpr
    y: KeyExpr
    z: KeyExpr


class ColorEncoding(BaseModel):
    mode: Literal["palette", "scale"]
    key: KeyExpr


class GlowEncoding(BaseModel):
    key: KeyExpr
    polarity: Literal["pos", "neg", "both"] = "pos"
    intensity: Literal["low", "med", "high"] = "med"


class DriftEncoding(BaseModel):
    key: KeyExpr
    window_days: int = 30


class LabelEncoding(BaseModel):
    strategy: Literal["topN", "focus", "none"] = "none"
    n: int | None = None


class Encodings(BaseModel):
    position: PositionEncoding
    size: KeyExpr
    color: ColorEncoding
    glow: GlowEncoding
    drift: DriftEncoding
    labels: LabelEncoding = LabelEncoding()

    def numeric_keys(self) -> list[CompoundKey]:
        """Every compound key resolved against an entity's numeric domains."""
        keys = [self.position.x, self.position.y, self.position.z, self.size,
                self.glow.key, self.drift.key]
        if self.color.mode == "scale":
            keys.append(self.color.key)
        return keys


class ThicknessEncoding(BaseModel):
    key: KeyExpr
    scale: Literal["linear", "log"] = "linear"


class ConnectionColor(BaseModel):
    by: Literal["type", "sentiment", "hybrid"] = "type"


class PatternEncoding(BaseModel):
    rivalry_dashed: bool = False


class AnimationEncoding(BaseModel):
    particles: bool = False
    pulses_on_active: bool = False


class ConnectionEncodings(BaseModel):
    include: list[str]
    thickness: ThicknessEncoding
    color: ConnectionColor = ConnectionColor()
    pattern: PatternEncoding = PatternEncoding()
    animation: AnimationEncoding = AnimationEncoding()


class BackgroundConfig(BaseModel):
    clusters_by: Literal["industry", "market"] | None = None
    halos: bool = False
    axes: bool = True


class ThemeConfig(BaseModel):
    id: str
    name: str
    description: str = ""
    category: str = ""
    encodings: Encodings
    connections: ConnectionEncodings
    background: BackgroundConfig = BackgroundConfig()

    @model_validator(mode="after")
    def _check_domains(self) -> ThemeConfig:
        for key in self.encodings.numeric_keys():
            bad = key.domains() - NUMERIC_ENTITY_DOMAINS
            if bad:
                raise ValueError(
                    f"{key.expr!r}: numeric channels accept metric/index/signal references only"
                )
        if self.encodings.color.mode == "palette" and \
                self.encodings.color.key.domains() != {Domain.PROFILE}:
            raise ValueError("palette colour mode needs a profile.* key")
        if self.connections.thickness.key.domains() != {Domain.CONNECTION}:
            raise ValueError("connection thickness needs connection.* keys")
        return self


def referenced_keys(theme: ThemeConfig, domain: Domain) -> set[str]:
    """Fields of *domain* that the theme's entity channels actually read."""
    fields: set[str] = set()
    for key in theme.encodings.numeric_keys():
        fields.update(key.fields(domain))
    return fields


# ---------------------------------------------------------------------------
# Built-in themes
# ---------------------------------------------------------------------------

BUILTIN_THEMES: list[dict[str, Any]] = [
    {
        "id": "market-landscape",
        "name": "Market Landscape",
        "description": "Where every player sits on momentum, tech velocity and mindshare.",
        "category": "overview",
        "encodings": {
            "position": {"x": "index.momentum", "y": "index.techVelocity", "z": "index.mindshare"},
            "size": "metric.marketCap|metric.revenue|metric.traffic",
            "color": {"mode": "palette", "key": "profile.industry"},
            "glow": {"key": "signal.positive", "polarity": "pos", "intensity": "low"},
            "drift": {"key": "metric.marketCapGrowth|metric.trafficGrowth", "window_days": 60},
            "labels": {"strategy": "topN", "n": 20},
        },
        "connections": {
            "include": ["industryAdjacency", "supplyChain", "weakCompetitor"],
            "thickness": {"key": "connection.strength", "scale": "linear"},
            "color": {"by": "type"},
        },
        "background": {"clusters_by": "industry", "halos": True, "axes": True},
    },
    {
        "id": "competitive-dynamics",
        "name": "Competitive Dynamics",
        "description": "Threat, velocity and rivalry between direct competitors and partners.",
        "category": "competition",
        "encodings": {
            "position": {"x": "index.competitiveThreat", "y": "index.techVelocity", "z": "index.mindshare"},
            "size": "index.influence",
            "color": {"mode": "scale", "key": "index.threatTier"},
            "glow": {"key": "signal.competitive", "polarity": "both", "intensity": "med"},
            "drift": {"key": "index.rivalPull", "window_days": 30},
            "labels": {"strategy": "focus"},
        },
        "connections": {
            "include": ["competitor", "partnership"],
            "thickness": {"key": "connection.overlapScore|connection.depth|connection.strength",
                          "scale": "linear"},
            "color": {"by": "type"},
            "pattern": {"rivalry_dashed": True},
            "animation": {"particles": False, "pulses_on_active": True},
        },
        "background": {"clusters_by": "market", "halos": True, "axes": True},
    },
    {
        "id": "growth-momentum",
        "name": "Growth & Momentum",
        "description": "Growth, hiring velocity and deal momentum with sentiment-coloured alliances.",
        "category": "growth",
        "encodings": {
            "position": {"x": "index.growth", "y": "metric.hiringVelocity", "z": "index.dealMomentum"},
            "size": "index.shortTermGrowth",
            "color": {"mode": "scale", "key": "index.sentimentBlend"},
            "glow": {"key": "signal.positive", "polarity": "pos", "intensity": "high"},
            "drift": {"key": "index.growthSlope", "window_days": 30},
            "labels": {"strategy": "topN", "n": 16},
        },
        "connections": {
            "include": ["strategicAlliance", "mna", "customerWin"],
            "thickness": {"key": "connection.dealValue|connection.allianceDepth", "scale": "log"},
            "color": {"by": "sentiment"},
            "animation": {"particles": True, "pulses_on_active": True},
        },
        "background": {"clusters_by": "market", "halos": False, "axes": True},
    },
    {
        "id": "risk-stability",
        "name": "Risk & Stability",
        "description": "Compliance and operational risk with disputes and regulatory ties.",
        "category": "risk",
        "encodings": {
            "position": {"x": "index.complianceRisk", "y": "index.operationalStability",
                         "z": "index.sentimentStability"},
            "size": "index.stability",
            "color": {"mode": "scale", "key": "index.riskHeat"},
            "glow": {"key": "signal.negative", "polarity": "neg", "intensity": "med"},
            "drift": {"key": "index.stabilityDelta", "window_days": 30},
            "labels": {"strategy": "topN", "n": 12},
        },
        "connections": {
            "include": ["legalDispute", "regulatory", "supplyChain"],
            "thickness": {"key": "connection.severity|connection.criticality|connection.strength",
                          "scale": "linear"},
            "color": {"by": "type"},
            "animation": {"particles": False, "pulses_on_active": True},
        },
        "background": {"clusters_by": "industry", "halos": True, "axes": True},
    },
    {
        "id": "innovation-velocity",
        "name": "Innovation Velocity",
        "description": "R&D intensity, release cadence and community momentum.",
        "category": "innovation",
        "encodings": {
            "position": {"x": "metric.rdIntensity|index.rdIndex", "y": "metric.releaseCadence",
                         "z": "metric.communityMomentum|metric.ossMomentum"},
            "size": "index.innovationComposite",
            "color": {"mode": "scale", "key": "index.innovationTier"},
            "glow": {"key": "signal.product", "polarity": "pos", "intensity": "med"},
            "drift": {"key": "metric.releaseCadenceDelta", "window_days": 60},
            "labels": {"strategy": "topN", "n": 18},
        },
        "connections": {
            "include": ["jointRD", "coPatent", "techAffinity"],
            "thickness": {"key": "connection.collabDepth|connection.sharedModules", "scale": "linear"},
            "color": {"by": "type"},
            "animation": {"particles": True, "pulses_on_active": True},
        },
        "background": {"clusters_by": "industry", "halos": False, "axes": True},
    },
    {
        "id": "investor-ma",
        "name": "Investor / M&A",
        "description": "Acquisition readiness and strategic fit across portfolios and owners.",
        "category": "investment",
        "encodings": {
            "position": {"x": "index.acquisitionReadiness", "y": "index.growthQuality",
                         "z": "index.strategicFitToUser"},
            "size": "metric.valuationProxy|metric.marketCap|metric.revenue",
            "color": {"mode": "scale", "key": "index.fitBand"},
            "glow": {"key": "signal.deal", "polarity": "both", "intensity": "high"},
            "drift": {"key": "index.readinessTrajectory", "window_days": 90},
            "labels": {"strategy": "topN", "n": 14},
        },
        "connections": {
            "include": ["investorPortfolio", "ownership", "mna"],
            "thickness": {"key": "connection.checkSize|connection.equityPct|connection.integrationDepth",
                          "scale": "log"},
            "color": {"by": "hybrid"},
            "animation": {"particles": True, "pulses_on_active": True},
        },
        "background": {"clusters_by": "market", "halos": True, "axes": True},
    },
]


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


def validate_theme(doc: dict[str, Any]) -> ThemeConfig:
    try:
        return ThemeConfig.model_validate(doc)
    except ValidationError as exc:
        ident = doc.get("id", "?") if isinstance(doc, dict) else "?"
        raise ThemeValidationError(f"Invalid theme {ident!r}: {exc}") from exc


def load_themes(path: str | Path | None = None) -> list[ThemeConfig]:
    """Built-in themes, overridden/extended by a JSON list at *path* (matched by id)."""
    themes = {doc["id"]: validate_theme(doc) for doc in BUILTIN_THEMES}
    if path:
        try:
            docs = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise ThemeValidationError(f"Cannot read theme file {path}: {exc}") from exc
        if not isinstance(docs, list):
            raise ThemeValidationError(f"Theme file {path} must contain a JSON list")
        for doc in docs:
            theme = validate_theme(doc)
            themes[theme.id] = theme
        log.info("Loaded %d theme(s) from %s", len(docs), path)
    return list(themes.values())


class ThemeRegistry:
    def __init__(self, themes: list[ThemeConfig] | None = None, default_id: str = DEFAULT_THEME_ID):
        themes = themes if themes is not None else load_themes()
        if not themes:
            raise ThemeValidationError("At least one theme is required")
        self._themes = {t.id: t for t in themes}
        self.default = self._themes.get(default_id) or themes[0]

    def get(self, theme_id: str | None) -> ThemeConfig | None:
        return self._themes.get(theme_id or "")

    def resolve(self, theme_id: str | None) -> ThemeConfig:
        """Return the requested theme, or the default theme for unknown ids."""
        theme = self.get(theme_id)
        if theme is None:
            log.warning("Unknown theme %r, falling back to %r", theme_id, self.default.id)
            return self.default
        return theme

    def summaries(self) -> list[dict[str, str]]:
        return [
            {"id": t.id, "name": t.name, "description": t.description, "category": t.category}
            for t in self._themes.values()
        ]

    def __iter__(self):
        return iter(self._themes.values())

    def __len__(self) -> int:
        return len(self._themes)
