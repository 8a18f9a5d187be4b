"""Integration tests for the FastAPI endpoints.

Uses TestClient with the runtime dependency pointed at an in-memory database.
"""
from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from vizlens import services
from vizlens.config import Settings
from vizlens.models import AggLatestMetric


@pytest.fixture()
def runtime(engine, clock):
    settings = Settings(db_url="sqlite://", scheduler_enabled=False)
    rt = services.build_runtime(settings, engine=engine)
    rt.store.clock = clock
    rt.adapter.clock = clock
    rt.manager.clock = clock
    yield rt
    rt.close()


@pytest.fixture()
def client(runtime, monkeypatch):
    """FastAPI TestClient whose handlers all use the in-memory runtime."""
    monkeypatch.setenv("VIZLENS_DB_URL", "sqlite://")
    monkeypatch.setenv("VIZLENS_SCHEDULER", "0")
    from vizlens.app import app, get_runtime

    app.dependency_overrides[get_runtime] = lambda: runtime
    with TestClient(app, raise_server_exceptions=True) as c:
        yield c
    app.dependency_overrides.clear()


class TestVisualizationEndpoints:
    def test_list_themes(self, client):
        resp = client.get("/api/viz/themes")
        assert resp.status_code == 200
        themes = resp.json()["themes"]
        assert len(themes) == 6
        assert themes[0]["id"] == "market-landscape"

    def test_entities(self, client, populated):
        resp = client.get("/api/viz/entities", headers={"X-User-Id": "user-1"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["schema_version"] == "1.0"
        assert data["theme_id"] == "market-landscape"
        assert data["time_range"] == 30
        assert data["staleness"] == 0.0
        bags = {b["id"]: b for b in data["data"]}
        assert len(bags) == 4
        assert bags[populated["acme"]]["profile"]["is_user_company"] is True
        assert bags[populated["solo"]]["signal"]["positive"] == 0.0

    def test_entity_type_filter_accepts_csv(self, client, populated):
        resp = client.get("/api/viz/entities", params={"entity_types": "product,person"})
        assert [b["id"] for b in resp.json()["data"]] == [populated["solo"]]

    def test_connections_filtered_by_type(self, client, populated):
        resp = client.get("/api/viz/connections",
                          params={"theme_id": "competitive-dynamics", "connection_types": "competitor"})
        assert resp.status_code == 200
        bags = resp.json()["data"]
        assert [b["type"] for b in bags] == ["competitor"]

    def test_frame(self, client, populated):
        resp = client.get("/api/viz/frame", params={"theme_id": "competitive-dynamics"})
        assert resp.status_code == 200
        frame = resp.json()["data"]
        assert len(frame["nodes"]) == 4
        assert [e["dashed"] for e in frame["edges"]] == [True, False]
        node = frame["nodes"][0]
        assert set(node) >= {"id", "position", "size", "color", "glow", "drift", "label", "meta"}
        assert frame["background"]["clusters_by"] == "market"

    def test_unknown_theme_falls_back(self, client, populated):
        resp = client.get("/api/viz/frame", params={"theme_id": "nope"})
        assert resp.status_code == 200
        assert resp.json()["theme_id"] == "market-landscape"

    def test_empty_result_is_not_an_error(self, client, populated):
        resp = client.get("/api/viz/frame", params={"industry": "Nope"})
        assert resp.status_code == 200
        assert resp.json()["data"]["nodes"] == []
        assert resp.json()["staleness"] == 0.0

    @pytest.mark.parametrize("params", [
        {"time_range": 0},
        {"time_range": 400},
        {"min_strength": 2},
        {"min_magnitude": -1},
        {"sentiment": "sideways"},
    ])
    def test_invalid_params(self, client, params):
        resp = client.get("/api/viz/entities", params=params)
        assert resp.status_code == 422

    def test_unavailable_aggregate_is_503(self, client, engine, populated):
        AggLatestMetric.__table__.drop(engine)
        resp = client.get("/api/viz/entities")
        assert resp.status_code == 503
        body = resp.json()
        assert body["error"] == "aggregate_unavailable"
        assert body["relation"] == "agg_latest_metric"


class TestAdminEndpoints:
    def test_health_healthy_then_degraded(self, client, clock, populated):
        resp = client.get("/api/viz/health")
        assert resp.status_code == 200
        assert resp.json()["status"] == "healthy"
        assert len(resp.json()["relations"]) == 4

        clock.advance(7200)
        resp = client.get("/api/viz/health")
        assert resp.json()["status"] == "degraded"

    def test_refresh_noop_when_fresh(self, client, populated):
        resp = client.post("/api/viz/refresh", json={"force": False})
        assert resp.status_code == 200
        assert resp.json()["refreshed"] is False
        assert resp.json()["summary"] is None

    def test_forced_refresh_and_history(self, client, populated):
        resp = client.post("/api/viz/refresh", json={"force": True})
        assert resp.status_code == 200
        body = resp.json()
        assert body["refreshed"] is True
        assert body["summary"]["successful"] == 4
        assert body["summary"]["failed"] == 0
        assert [r["relation"] for r in body["summary"]["results"]] == [
            "agg_latest_metric", "agg_latest_index", "agg_signal_rollup", "agg_connection_rollup"]

        history = client.get("/api/viz/refresh/history", params={"limit": 5}).json()
        assert len(history) == 1
        assert history[0]["success_rate"] == 1.0

    def test_stale_aggregates_refresh_without_force(self, client, clock, populated):
        clock.advance(3600)
        resp = client.post("/api/viz/refresh")
        assert resp.json()["refreshed"] is True

    @pytest.mark.parametrize("limit", [0, 101])
    def test_history_limit_bounds(self, client, limit):
        resp = client.get("/api/viz/refresh/history", params={"limit": limit})
        assert resp.status_code == 422

    def test_initialize(self, client, market):
        assert client.get("/api/viz/health").json()["status"] == "degraded"
        resp = client.post("/api/viz/initialize")
        assert resp.status_code == 200
        assert resp.json()["summary"]["successful"] == 4
        assert client.get("/api/viz/entities").json()["staleness"] == 0.0

    def test_admin_token_enforced(self, client, runtime, populated):
        runtime.settings.admin_token = "s3cret"
        assert client.post("/api/viz/refresh", json={"force": True}).status_code == 403
        assert client.get("/api/viz/refresh/history").status_code == 403
        resp = client.post("/api/viz/refresh", json={"force": True}, headers={"X-Admin-Token": "s3cret"})
        assert resp.status_code == 200
        # health stays public for probes
        assert client.get("/api/viz/health").status_code == 200
