"""Refresh manager: keeps the aggregate relations fresh.

Relations are refreshed one at a time.  A failure in one relation never stops
the others, and every run is summarized into the refresh audit log.  Each
relation has its own lock so two triggers never refresh the same relation at
once; the loser is recorded as ``skipped``.
"""
from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import threading
import time
from collections.abc import Callable, Iterable
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any

from vizlens.aggregates import AggregateStore
from vizlens.errors import RefreshTimeout, RelationNotPopulated, VizError
from vizlens.utils import utcnow

log = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 120.0
DEFAULT_HEALTH_THRESHOLD = 3600
HISTORY_DEFAULT = 20
HISTORY_MAX = 100


@dataclass
class RefreshResult:
    relation: str
    status: str  # success | failed | skipped
    duration_ms: float
    row_count: int | None = None
    staleness: float | None = None
    error: str | None = None


@dataclass
class RefreshSummary:
    total: int
    successful: int
    failed: int
    skipped: int
    total_duration_ms: float
    results: list[RefreshResult]
    timestamp: datetime

    @classmethod
    def from_results(cls, results: list[RefreshResult], total_duration_ms: float,
                     timestamp: datetime) -> RefreshSummary:
        return cls(
            total=len(results),
            successful=sum(1 for r in results if r.status == "success"),
            failed=sum(1 for r in results if r.status == "failed"),
            skipped=sum(1 for r in results if r.status == "skipped"),
            total_duration_ms=total_duration_ms,
            results=results,
            timestamp=timestamp,
        )

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["timestamp"] = self.timestamp.isoformat()
        return data


@dataclass
class StalenessReport:
    # seconds per relation; None means empty or unreadable (treated as infinitely stale)
    relations: dict[str, float | None] = field(default_factory=dict)
    stale: list[str] = field(default_factory=list)

    @property
    def needs_refresh(self) -> bool:
        return bool(self.stale)


class RefreshManager:
    def __init__(
        self,
        store: AggregateStore,
        relations: Iterable[str] | None = None,
        timeout: float | None = DEFAULT_TIMEOUT,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.relations = list(relations) if relations is not None else list(store.relations)
        self.timeout = timeout
        self.clock = clock
        self._locks = {name: threading.Lock() for name in self.relations}
        self._executor = ThreadPoolExecutor(max_workers=4, thread_name_prefix="vizlens_refresh")

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)

    # -- single relation ----------------------------------------------------

    def _run_locked(self, name: str, mode: str, lock: threading.Lock,
                    cancel: threading.Event) -> int:
        try:
            try:
                return self.store.refresh(name, mode, cancel)
            except RelationNotPopulated:
                if mode != "concurrent":
                    raise
                log.info("Relation %s is empty; falling back to a blocking refresh", name)
                return self.store.refresh(name, "blocking", cancel)
        finally:
            # released by the worker, so a timed-out refresh keeps the relation locked until it ends
            lock.release()

    def refresh_relation(self, name: str, mode: str = "concurrent") -> RefreshResult:
        lock = self._locks[name]
        if not lock.acquire(blocking=False):
            log.info("Relation %s is already refreshing; skipped", name)
            return RefreshResult(name, "skipped", 0.0, error="already refreshing")

        started = time.perf_counter()
        cancel = threading.Event()
        try:
            future = self._executor.submit(self._run_locked, name, mode, lock, cancel)
        except Exception:
            lock.release()
            raise
        try:
            try:
                rows = future.result(timeout=self.timeout)
            except FutureTimeout:
                cancel.set()
                raise RefreshTimeout(name, self.timeout) from None
        except Exception as exc:
            duration = (time.perf_counter() - started) * 1000
            log.warning("Refresh of %s failed after %.0fms: %s", name, duration, exc)
            return RefreshResult(name, "failed", duration, error=str(exc))

        duration = (time.perf_counter() - started) * 1000
        log.info("Refreshed %s (%d rows) in %.0fms", name, rows, duration)
        return RefreshResult(name, "success", duration, row_count=rows,
                             staleness=self._read_staleness(name))

    def _read_staleness(self, name: str) -> float | None:
        try:
            return self.store.staleness(name, self.clock())
        except VizError as exc:
            log.warning("Could not read staleness of %s: %s", name, exc)
            return None

    # -- whole pipeline -----------------------------------------------------

    def refresh_all(self, mode: str = "concurrent") -> RefreshSummary:
        timestamp = self.clock()
        started = time.perf_counter()
        results = [self.refresh_relation(name, mode) for name in self.relations]
        summary = RefreshSummary.from_results(
            results, (time.perf_counter() - started) * 1000, timestamp)
        log.info("Refresh run finished: %d/%d successful, %d failed, %d skipped",
                 summary.successful, summary.total, summary.failed, summary.skipped)
        self._audit(summary)
        return summary

    def initialize(self) -> RefreshSummary:
        """First-time population: blocking refresh of every relation."""
        return self.refresh_all(mode="blocking")

    def _audit(self, summary: RefreshSummary) -> None:
        message = f"Refreshed {summary.successful}/{summary.total} aggregate relations"
        try:
            self.store.write_refresh_log(message, json.dumps(summary.to_dict(), default=str),
                                         summary.timestamp)
        except Exception:
            log.exception("Failed to write refresh audit log")

    def check_staleness(self, threshold: float) -> StalenessReport:
        now = self.clock()
        relations: dict[str, float | None] = {}
        stale: list[str] = []
        for name in self.relations:
            try:
                staleness = self.store.staleness(name, now)
            except VizError as exc:
                log.warning("Staleness check failed for %s: %s", name, exc)
                staleness = None
            relations[name] = staleness
            if staleness is None or staleness > threshold:
                stale.append(name)
        return StalenessReport(relations, stale)

    def smart_refresh(self, threshold: float) -> RefreshSummary | None:
        """Refresh everything if any relation is staler than *threshold* seconds."""
        report = self.check_staleness(threshold)
        if not report.needs_refresh:
            log.debug("All aggregate relations fresher than %ss", threshold)
            return None
        return self.refresh_all()

    # -- reporting ----------------------------------------------------------

    def get_history(self, limit: int = HISTORY_DEFAULT) -> list[dict[str, Any]]:
        limit = max(1, min(HISTORY_MAX, limit))
        history = []
        for entry in self.store.refresh_history(limit):
            meta = entry["metadata"]
            total = int(meta.get("total", 0))
            successful = int(meta.get("successful", 0))
            history.append({
                "timestamp": entry["created_at"],
                "duration_ms": float(meta.get("total_duration_ms", 0.0)),
                "successful": successful,
                "failed": int(meta.get("failed", 0)),
                "total": total,
                "success_rate": successful / total if total else 0.0,
            })
        return history

    def health(self, threshold: float = DEFAULT_HEALTH_THRESHOLD) -> dict[str, Any]:
        now = self.clock()
        relations = []
        status = "healthy"
        for name in self.relations:
            try:
                staleness = self.store.staleness(name, now)
            except VizError as exc:
                relations.append({"relation": name, "staleness": None, "stale": True, "error": str(exc)})
                status = "unhealthy"
                continue
            stale = staleness is None or staleness > threshold
            relations.append({"relation": name, "staleness": staleness, "stale": stale, "error": None})
            if stale and status == "healthy":
                status = "degraded"
        return {"status": status, "threshold": int(threshold), "relations": relations, "checked_at": now}


# ---------------------------------------------------------------------------
# Background scheduling
# ---------------------------------------------------------------------------


class RefreshScheduler:
    """Runs :meth:`RefreshManager.smart_refresh` every *interval* seconds."""

    def __init__(self, manager: RefreshManager, interval: float, threshold: float):
        self.manager = manager
        self.interval = interval
        self.threshold = threshold
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="vizlens-refresh-scheduler")
        log.info("Refresh scheduler started (every %ss, threshold %ss)", self.interval, self.threshold)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        log.info("Refresh scheduler stopped")

    async def tick(self) -> RefreshSummary | None:
        return await asyncio.to_thread(self.manager.smart_refresh, self.threshold)

    async def _loop(self) -> None:
        # first check runs at startup, then once per interval
        while True:
            try:
                await self.tick()
            except Exception:
                log.exception("Scheduled refresh failed")
            await asyncio.sleep(self.interval)
