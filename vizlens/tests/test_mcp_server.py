"""Tests for the MCP tool surface, calling the tool functions directly."""
from __future__ import annotations

import json

import pytest

from vizlens import services
from vizlens.config import Settings
from vizlens.models import AggLatestMetric


@pytest.fixture()
def runtime(engine, clock):
    rt = services.build_runtime(Settings(db_url="sqlite://", scheduler_enabled=False), engine=engine)
    rt.store.clock = clock
    rt.adapter.clock = clock
    rt.manager.clock = clock
    services.set_runtime(rt)
    yield rt
    services.set_runtime(None)
    rt.close()


class TestTools:
    def test_import_mcp_server(self):
        from vizlens.mcp_server import mcp
        assert mcp is not None

    def test_list_themes(self, runtime):
        from vizlens.mcp_server import list_themes
        assert [t["id"] for t in list_themes()][:2] == ["market-landscape", "competitive-dynamics"]

    def test_get_frame_is_json_ready(self, runtime, populated):
        from vizlens.mcp_server import get_frame
        result = get_frame(theme_id="competitive-dynamics", connection_types="competitor",
                           user_id="user-1")
        json.dumps(result)
        assert result["theme_id"] == "competitive-dynamics"
        assert len(result["data"]["nodes"]) == 4
        assert len(result["data"]["edges"]) == 1

    def test_get_frame_reports_unavailable(self, runtime, engine, populated):
        from vizlens.mcp_server import get_frame
        AggLatestMetric.__table__.drop(engine)
        result = get_frame()
        assert result["error"] == "aggregate_unavailable"
        assert result["relation"] == "agg_latest_metric"

    def test_get_frame_rejects_bad_filters(self, runtime, populated):
        from vizlens.mcp_server import get_frame
        assert "error" in get_frame(sentiment="sideways")
        assert "error" in get_frame(time_range=0)

    def test_refresh_and_history(self, runtime, market):
        from vizlens.mcp_server import get_health, refresh_history, refresh_views
        assert get_health()["status"] == "degraded"
        result = refresh_views(force=True)
        json.dumps(result)
        assert result["refreshed"] is True
        assert result["summary"]["successful"] == 4
        assert get_health()["status"] == "healthy"
        history = refresh_history(limit=5)
        assert len(history) == 1
        assert isinstance(history[0]["timestamp"], str)

    def test_tools_require_started_runtime(self):
        from vizlens.mcp_server import list_themes
        services.set_runtime(None)
        with pytest.raises(RuntimeError):
            list_themes()
