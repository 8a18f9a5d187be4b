"""Shared wiring and operations for the vizlens API, MCP server and CLI."""
from __future__ import annotations

import logging
import threading
from dataclasses import asdict, dataclass
from typing import Any

from sqlalchemy.engine import Engine

from vizlens.adapter import VizAdapter
from vizlens.aggregates import AggregateStore
from vizlens.config import Settings, configure_logging
from vizlens.db import init_db
from vizlens.refresh import RefreshManager, RefreshSummary
from vizlens.themes import ThemeRegistry, load_themes

log = logging.getLogger(__name__)


@dataclass
class Runtime:
    """Everything a request handler needs, built once per process."""
    settings: Settings
    engine: Engine
    store: AggregateStore
    registry: ThemeRegistry
    adapter: VizAdapter
    manager: RefreshManager

    def close(self) -> None:
        self.manager.close()


def build_runtime(settings: Settings | None = None, engine: Engine | None = None) -> Runtime:
    settings = settings or Settings.from_env()
    configure_logging(settings.log_level)
    if engine is None:
        engine = init_db(settings.db_url)
    registry = ThemeRegistry(load_themes(settings.themes_path or None))
    store = AggregateStore(engine)
    adapter = VizAdapter(store, registry, connection_limit=settings.connection_limit,
                         demo_mode=settings.demo_mode)
    manager = RefreshManager(store, timeout=settings.refresh_timeout)
    if settings.demo_mode:
        log.warning("Demo mode is on: absent position/size values will be synthesized")
    return Runtime(settings, engine, store, registry, adapter, manager)


# ---------------------------------------------------------------------------
# Process-wide runtime (set by the HTTP and MCP lifespans)
# ---------------------------------------------------------------------------

_lock = threading.Lock()
_runtime: Runtime | None = None


def set_runtime(runtime: Runtime | None) -> None:
    global _runtime
    with _lock:
        _runtime = runtime


def current_runtime() -> Runtime:
    with _lock:
        if _runtime is None:
            raise RuntimeError("vizlens runtime has not been started")
        return _runtime


# ---------------------------------------------------------------------------
# Refresh operations
# ---------------------------------------------------------------------------


def summary_dict(summary: RefreshSummary) -> dict[str, Any]:
    return asdict(summary)


def refresh_views(runtime: Runtime, force: bool = False) -> dict[str, Any]:
    """Forced: refresh everything now.  Otherwise only if something is stale."""
    manager = runtime.manager
    if force:
        summary = manager.refresh_all()
    else:
        summary = manager.smart_refresh(runtime.settings.stale_threshold)
    if summary is None:
        return {"refreshed": False, "message": "All aggregate relations are fresh", "summary": None}
    return {
        "refreshed": True,
        "message": f"Refreshed {summary.successful}/{summary.total} aggregate relations",
        "summary": summary_dict(summary),
    }


def initialize_views(runtime: Runtime) -> dict[str, Any]:
    summary = runtime.manager.initialize()
    return {
        "refreshed": True,
        "message": f"Initialized {summary.successful}/{summary.total} aggregate relations",
        "summary": summary_dict(summary),
    }
