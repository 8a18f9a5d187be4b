"""Shared fixtures: in-memory database, fixed clock and a small seeded market."""
from __future__ import annotations

import json
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from vizlens.aggregates import AggregateStore
from vizlens.models import Base, Connection, Entity, IndexValue, MetricPoint, Signal, SignalImpact

NOW = datetime(2026, 6, 1, 12, 0, 0)


class Clock:
    """Settable clock so tests can age the aggregates."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture()
def engine():
    """SQLite in-memory engine; StaticPool so every connection sees the same database."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def TestSession(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture()
def clock():
    return Clock()


@pytest.fixture()
def store(engine, clock):
    return AggregateStore(engine, clock=clock)


@pytest.fixture()
def market(TestSession):
    """Four entities with metrics, indices, signals and connections around NOW.

    acme     Software/Enterprise, owned by user-1, full data
    globex   Software/Enterprise, full data
    initech  Hardware, only a signal outside the 90-day window
    solo     Software product with no data at all (isolated node)
    """
    session = TestSession()
    ids = {}
    for key, name, etype, industry, owner, age in [
        ("acme", "Acme", "company", "Software", "user-1", 4),
        ("globex", "Globex", "company", "Software", None, 3),
        ("initech", "Initech", "company", "Hardware", None, 2),
        ("solo", "Solo", "product", "Software", None, 1),
    ]:
        entity = Entity(name=name, type=etype, industry=industry,
                        market_segment="Enterprise" if industry == "Software" else "OEM",
                        geography="EU", owner_user_id=owner,
                        created_at=NOW - timedelta(days=age))
        session.add(entity)
        session.flush()
        ids[key] = entity.id

    session.add_all([
        MetricPoint(entity_id=ids["acme"], metric_key="marketCap", value=100.0,
                    timestamp=NOW - timedelta(days=10)),
        MetricPoint(entity_id=ids["acme"], metric_key="marketCap", value=150.0,
                    timestamp=NOW - timedelta(days=1)),
        MetricPoint(entity_id=ids["acme"], metric_key="employees", value=42.0,
                    timestamp=NOW - timedelta(days=1)),
        MetricPoint(entity_id=ids["globex"], metric_key="marketCap", value=1000.0,
                    timestamp=NOW - timedelta(days=2)),
        MetricPoint(entity_id=ids["globex"], metric_key="revenue", value=5.0,
                    timestamp=NOW - timedelta(days=2)),
        IndexValue(entity_id=ids["acme"], index_key="momentum", value=20.0, normalized=0.2,
                   as_of=NOW - timedelta(days=20)),
        IndexValue(entity_id=ids["acme"], index_key="momentum", value=80.0, normalized=0.8,
                   as_of=NOW - timedelta(days=1)),
        IndexValue(entity_id=ids["globex"], index_key="momentum", value=70.0, normalized=None,
                   as_of=NOW - timedelta(days=1)),
    ])

    launch = Signal(type="PRODUCT_LAUNCH", category="PRODUCT", sentiment_label="POSITIVE",
                    sentiment_score=0.6, magnitude=0.8, timestamp=NOW - timedelta(days=5))
    pricing = Signal(type="PRICING_CHANGE", category="COMPETITIVE", sentiment_label="NEGATIVE",
                     sentiment_score=-0.4, magnitude=0.4, timestamp=NOW - timedelta(days=40))
    ancient = Signal(type="FUNDING_ROUND", category="DEAL", sentiment_label="POSITIVE",
                     sentiment_score=0.9, magnitude=1.0, timestamp=NOW - timedelta(days=200))
    session.add_all([launch, pricing, ancient])
    session.flush()
    session.add_all([
        SignalImpact(signal_id=launch.id, entity_id=ids["acme"], weight=1.0),
        SignalImpact(signal_id=launch.id, entity_id=ids["globex"], weight=0.5),
        SignalImpact(signal_id=pricing.id, entity_id=ids["acme"], weight=1.0),
        SignalImpact(signal_id=ancient.id, entity_id=ids["initech"], weight=1.0),
    ])

    session.add_all([
        Connection(source_entity_id=ids["acme"], target_entity_id=ids["globex"], type="competitor",
                   strength=0.9, sentiment_score=-0.2, updated_at=NOW - timedelta(days=1)),
        Connection(source_entity_id=ids["acme"], target_entity_id=ids["globex"], type="competitor",
                   strength=None, sentiment_score=None, metadata_json=json.dumps({"deal_value": 10}),
                   updated_at=NOW - timedelta(days=3)),
        Connection(source_entity_id=ids["globex"], target_entity_id=ids["initech"], type="partnership",
                   strength=0.4, sentiment_score=0.5,
                   metadata_json=json.dumps({"deal_value": 250, "integration_depth": "0.7"}),
                   updated_at=NOW - timedelta(days=2)),
        Connection(source_entity_id=ids["initech"], target_entity_id=ids["acme"], type="supplyChain",
                   strength=0.6, updated_at=NOW - timedelta(days=300)),
    ])
    session.commit()
    session.close()
    return ids


@pytest.fixture()
def populated(store, market):
    """Seeded market with every aggregate relation computed at NOW."""
    for name in store.relations:
        store.refresh(name, mode="blocking")
    return market
