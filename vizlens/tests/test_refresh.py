"""Tests for the refresh manager: isolation, staleness, timeouts and scheduling."""
from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from vizlens.errors import AggregateUnavailable
from vizlens.refresh import RefreshManager, RefreshScheduler
from vizlens.tests.conftest import NOW


class FakeStore:
    """Aggregate store double with scripted refresh outcomes and staleness."""

    def __init__(self, outcomes=None, staleness=None):
        self.outcomes = outcomes or {}
        self.staleness_by_relation = staleness or {}
        self.refreshed: list[tuple[str, str]] = []
        self.logged: list[tuple[str, str]] = []
        self.history: list[dict] = []

    def refresh(self, name, mode="concurrent", cancel=None):
        self.refreshed.append((name, mode))
        outcome = self.outcomes.get(name, 10)
        if isinstance(outcome, Exception):
            raise outcome
        if callable(outcome):
            return outcome(cancel)
        return outcome

    def staleness(self, name, now=None):
        value = self.staleness_by_relation.get(name, 0.0)
        if isinstance(value, Exception):
            raise value
        return value

    def write_refresh_log(self, message, payload, created_at=None):
        self.logged.append((message, payload))

    def refresh_history(self, limit=10):
        return self.history[:limit]


@pytest.fixture()
def manager_factory():
    managers = []

    def make(store, relations=("a", "b"), **kwargs):
        kwargs.setdefault("clock", lambda: NOW)
        manager = RefreshManager(store, relations=relations, **kwargs)
        managers.append(manager)
        return manager

    yield make
    for manager in managers:
        manager.close()


class TestRefreshAll:
    def test_failure_is_isolated(self, manager_factory):
        store = FakeStore(outcomes={"a": 500, "b": RuntimeError("relation b is broken")})
        summary = manager_factory(store).refresh_all()

        assert summary.total == 2
        assert summary.successful == 1
        assert summary.failed == 1
        a, b = summary.results
        assert a.relation == "a" and a.status == "success" and a.row_count == 500
        assert a.duration_ms >= 0 and a.staleness == 0.0
        assert b.status == "failed" and "broken" in b.error
        assert summary.timestamp == NOW

    def test_relations_refreshed_in_order(self, manager_factory):
        store = FakeStore()
        manager_factory(store, relations=("x", "y", "z")).refresh_all()
        assert [name for name, _ in store.refreshed] == ["x", "y", "z"]

    def test_summary_written_to_audit_log(self, manager_factory):
        store = FakeStore()
        manager_factory(store).refresh_all()
        assert len(store.logged) == 1
        message, payload = store.logged[0]
        assert message == "Refreshed 2/2 aggregate relations"
        assert '"successful": 2' in payload

    def test_audit_failure_is_not_a_refresh_failure(self, manager_factory):
        store = FakeStore()
        with patch.object(store, "write_refresh_log", side_effect=RuntimeError("log table gone")):
            summary = manager_factory(store).refresh_all()
        assert summary.successful == 2
        assert summary.failed == 0

    def test_initialize_uses_blocking_mode(self, manager_factory):
        store = FakeStore()
        manager_factory(store).initialize()
        assert store.refreshed == [("a", "blocking"), ("b", "blocking")]

    def test_timeout_marks_relation_failed_and_cancels(self, manager_factory):
        release = threading.Event()
        seen_cancel = []

        def slow(cancel):
            release.wait(5)
            seen_cancel.append(cancel.is_set())
            return 1

        store = FakeStore(outcomes={"a": slow})
        manager = manager_factory(store, timeout=0.05)
        try:
            summary = manager.refresh_all()
            assert summary.failed == 1
            assert summary.successful == 1
            assert "exceeded" in summary.results[0].error

            # still running in the background: a second trigger must not start another refresh
            again = manager.refresh_relation("a")
            assert again.status == "skipped"
            assert again.error == "already refreshing"
        finally:
            release.set()
        for _ in range(100):
            if seen_cancel:
                break
            threading.Event().wait(0.01)
        assert seen_cancel == [True]

    def test_concurrent_trigger_is_skipped(self, manager_factory):
        started = threading.Event()
        release = threading.Event()

        def held(cancel):
            started.set()
            release.wait(5)
            return 3

        store = FakeStore(outcomes={"a": held})
        manager = manager_factory(store, relations=("a",))
        results = []
        worker = threading.Thread(target=lambda: results.append(manager.refresh_relation("a")))
        worker.start()
        assert started.wait(5)
        try:
            skipped = manager.refresh_relation("a")
        finally:
            release.set()
        worker.join(5)

        assert skipped.status == "skipped"
        assert results[0].status == "success"
        summary = manager.refresh_all()
        assert summary.skipped == 0


class TestStaleness:
    def test_flags_exactly_relations_over_threshold(self, manager_factory):
        store = FakeStore(staleness={"a": 10.0, "b": 4000.0, "c": 3600.0, "d": None})
        report = manager_factory(store, relations=("a", "b", "c", "d")).check_staleness(3600)
        assert report.stale == ["b", "d"]
        assert report.needs_refresh
        assert report.relations == {"a": 10.0, "b": 4000.0, "c": 3600.0, "d": None}

    def test_unreadable_relation_counts_as_stale(self, manager_factory):
        store = FakeStore(staleness={"a": 1.0, "b": AggregateUnavailable("b")})
        report = manager_factory(store).check_staleness(60)
        assert report.stale == ["b"]
        assert report.relations["b"] is None

    def test_smart_refresh_noop_when_fresh(self, manager_factory):
        store = FakeStore(staleness={"a": 1.0, "b": 2.0})
        manager = manager_factory(store)
        with patch.object(manager, "refresh_all") as refresh_all:
            assert manager.smart_refresh(60) is None
        refresh_all.assert_not_called()
        assert store.refreshed == []

    def test_smart_refresh_delegates_when_stale(self, manager_factory):
        store = FakeStore(staleness={"a": 1.0, "b": 120.0})
        manager = manager_factory(store)
        with patch.object(manager, "refresh_all", return_value="summary") as refresh_all:
            assert manager.smart_refresh(60) == "summary"
        refresh_all.assert_called_once_with()


class TestHealthAndHistory:
    def test_healthy(self, manager_factory):
        report = manager_factory(FakeStore(staleness={"a": 5.0, "b": 6.0})).health(3600)
        assert report["status"] == "healthy"
        assert [r["stale"] for r in report["relations"]] == [False, False]

    def test_degraded_when_stale(self, manager_factory):
        report = manager_factory(FakeStore(staleness={"a": 5.0, "b": 7200.0})).health(3600)
        assert report["status"] == "degraded"
        assert report["relations"][1] == {"relation": "b", "staleness": 7200.0, "stale": True,
                                          "error": None}

    def test_unhealthy_when_unreadable(self, manager_factory):
        store = FakeStore(staleness={"a": 7200.0, "b": AggregateUnavailable("b")})
        report = manager_factory(store).health(3600)
        assert report["status"] == "unhealthy"
        assert report["relations"][1]["error"]

    def test_history_success_rate(self, manager_factory):
        store = FakeStore()
        store.history = [
            {"created_at": NOW, "metadata": {"total": 4, "successful": 3, "failed": 1,
                                             "total_duration_ms": 12.5}},
            {"created_at": NOW - timedelta(hours=1), "metadata": {}},
        ]
        history = manager_factory(store).get_history(5)
        assert history[0] == {"timestamp": NOW, "duration_ms": 12.5, "successful": 3,
                              "failed": 1, "total": 4, "success_rate": 0.75}
        assert history[1]["success_rate"] == 0.0

    def test_history_limit_is_bounded(self, manager_factory):
        store = FakeStore()
        store.refresh_history = MagicMock(return_value=[])
        manager = manager_factory(store)
        manager.get_history(1000)
        manager.get_history(0)
        assert [c.args[0] for c in store.refresh_history.call_args_list] == [100, 1]


class TestAgainstDatabase:
    def test_refresh_all_falls_back_to_blocking_on_empty_relations(self, store, market):
        manager = RefreshManager(store, clock=store.clock)
        try:
            summary = manager.refresh_all()
        finally:
            manager.close()
        assert summary.successful == 4
        assert [r.row_count for r in summary.results] == [4, 2, 2, 2]
        assert manager.check_staleness(60).stale == []

    def test_history_round_trip(self, store, clock, market):
        manager = RefreshManager(store, clock=clock)
        try:
            manager.initialize()
            clock.advance(30)
            manager.refresh_all()
            history = manager.get_history(10)
        finally:
            manager.close()
        assert len(history) == 2
        assert history[0]["timestamp"] == NOW + timedelta(seconds=30)
        assert history[0]["success_rate"] == 1.0


class TestScheduler:
    @pytest.mark.asyncio
    async def test_runs_smart_refresh_periodically(self):
        manager = MagicMock()
        manager.smart_refresh.return_value = None
        scheduler = RefreshScheduler(manager, interval=0.01, threshold=1800)
        scheduler.start()
        assert scheduler.running
        await asyncio.sleep(0.1)
        await scheduler.stop()
        assert not scheduler.running
        assert manager.smart_refresh.call_count >= 1
        manager.smart_refresh.assert_called_with(1800)

    @pytest.mark.asyncio
    async def test_first_check_runs_before_first_interval(self):
        manager = MagicMock()
        manager.smart_refresh.return_value = None
        scheduler = RefreshScheduler(manager, interval=3600, threshold=1800)
        scheduler.start()
        for _ in range(50):
            if manager.smart_refresh.called:
                break
            await asyncio.sleep(0.01)
        await scheduler.stop()
        manager.smart_refresh.assert_called_once_with(1800)

    @pytest.mark.asyncio
    async def test_survives_failed_tick(self):
        manager = MagicMock()
        manager.smart_refresh.side_effect = RuntimeError("database down")
        scheduler = RefreshScheduler(manager, interval=0.01, threshold=60)
        scheduler.start()
        await asyncio.sleep(0.2)
        await scheduler.stop()
        assert manager.smart_refresh.call_count >= 2
