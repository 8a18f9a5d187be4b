"""Runtime settings read from the environment."""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

DATA_DIR = Path(__file__).parent / "data"

DEFAULT_LOG_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"


def _env_int(key: str, default: int) -> int:
    raw = os.environ.get(key, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring non-integer %s=%r", key, raw)
        return default


def _env_float(key: str, default: float) -> float:
    raw = os.environ.get(key, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logging.getLogger(__name__).warning("Ignoring non-numeric %s=%r", key, raw)
        return default


def _env_bool(key: str, default: bool = False) -> bool:
    raw = os.environ.get(key, "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "on")


@dataclass
class Settings:
    db_url: str = ""
    refresh_interval: int = 1800     # seconds between scheduled smart refreshes
    stale_threshold: int = 1800      # smart refresh threshold
    health_threshold: int = 3600     # health probe reports degraded above this
    refresh_timeout: float = 120.0   # seconds per relation refresh
    connection_limit: int = 500
    demo_mode: bool = False
    admin_token: str = ""
    themes_path: str = ""
    log_level: str = "INFO"
    scheduler_enabled: bool = True

    @classmethod
    def from_env(cls) -> Settings:
        db_url = os.environ.get("VIZLENS_DB_URL", "").strip()
        if not db_url:
            data_dir = Path(os.environ.get("VIZLENS_DATA_DIR", "") or DATA_DIR)
            db_url = f"sqlite:///{data_dir / 'vizlens.db'}"
        return cls(
            db_url=db_url,
            refresh_interval=_env_int("VIZLENS_REFRESH_INTERVAL", 1800),
            stale_threshold=_env_int("VIZLENS_STALE_THRESHOLD", 1800),
            health_threshold=_env_int("VIZLENS_HEALTH_THRESHOLD", 3600),
            refresh_timeout=_env_float("VIZLENS_REFRESH_TIMEOUT", 120.0),
            connection_limit=_env_int("VIZLENS_CONNECTION_LIMIT", 500),
            demo_mode=_env_bool("VIZLENS_DEMO_MODE"),
            admin_token=os.environ.get("VIZLENS_ADMIN_TOKEN", "").strip(),
            themes_path=os.environ.get("VIZLENS_THEMES_PATH", "").strip(),
            log_level=os.environ.get("VIZLENS_LOG_LEVEL", "INFO").strip().upper() or "INFO",
            scheduler_enabled=_env_bool("VIZLENS_SCHEDULER", True),
        )


def configure_logging(level: str = "INFO") -> None:
    """Install a basic root handler; a no-op if one is already configured."""
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO),
                        format=DEFAULT_LOG_FORMAT)
