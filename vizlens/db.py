from __future__ import annotations

import threading
from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url

from vizlens.config import DATA_DIR
from vizlens.models import Base

_lock = threading.Lock()
_engine: Engine | None = None


def make_engine(url: str | None = None) -> Engine:
    """Create an engine for *url*, defaulting to a SQLite file in the data dir."""
    if not url:
        url = f"sqlite:///{DATA_DIR / 'vizlens.db'}"
    parsed = make_url(url)
    kwargs: dict = {}
    if parsed.get_backend_name() == "sqlite":
        kwargs["connect_args"] = {"check_same_thread": False}
        if parsed.database and parsed.database != ":memory:":
            Path(parsed.database).parent.mkdir(parents=True, exist_ok=True)
    else:
        kwargs["pool_pre_ping"] = True
    return create_engine(url, **kwargs)


def init_db(url: str | None = None) -> Engine:
    """(Re)create the process engine and make sure every table exists."""
    global _engine
    with _lock:
        if _engine is not None:
            _engine.dispose()
        _engine = make_engine(url)
        Base.metadata.create_all(_engine)
        return _engine
