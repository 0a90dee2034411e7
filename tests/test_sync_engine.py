"""
End-to-end sync engine tests against an in-memory store and a fake GA4.

Guards against:
1. Duplicate provider calls when two syncs for one client overlap
2. One bad period failing the whole run
3. Retrying after GA4 rejected the credentials
4. Dashboard figures that do not come from stored records
"""
import asyncio
import calendar
from datetime import datetime

import pytest

from conftest import MONTHLY_SESSIONS, NOW, FakeGA4Connector, _run, daily_sessions
from pulse_sync.exceptions import ProviderAuthError
from pulse_sync.models.records import (
    BOUNCE_RATE,
    DAILY,
    MONTHLY,
    TOTAL_SESSIONS,
    TRAFFIC_CHANNELS,
    MetricRecord,
    Period,
)
from pulse_sync.services.job_queue import Job
from pulse_sync.services.period_planner import PeriodPlanner
from pulse_sync.services.sync_engine import JOB_COMPACT, JOB_RECOMPUTE_AGGREGATES, SyncEngine
from pulse_sync.utils.cache import QueryCache
from pulse_sync.utils.locks import lock_key

PLAN = PeriodPlanner().plan(NOW)
PLAN_KEYS = [p.key for p in PLAN]


def _expected_total_sessions():
    total = 0.0
    for period in PLAN:
        if period.resolution == DAILY:
            days = calendar.monthrange(period.year, period.month)[1]
            total += sum(daily_sessions(day) for day in range(1, days + 1))
        else:
            total += MONTHLY_SESSIONS
    return total


# ---------------------------------------------------------------------------
# Full runs
# ---------------------------------------------------------------------------

class TestSynchronize:

    def test_first_sync_fetches_all_fifteen_periods(self, engine, connector, store):
        result = _run(engine.synchronize("acme", now=NOW))

        assert result.errors == []
        assert result.success
        assert result.periods_processed == 15
        assert result.daily_periods == 2
        assert result.monthly_periods == 13
        assert result.periods_fetched == 15
        assert result.completed_at is not None
        for key in PLAN_KEYS:
            assert connector.main_calls(key) == 1
        assert store.count_records("acme", Period(2025, 6), resolution=DAILY) == 30 * 6
        assert store.count_records("acme", Period(2025, 1), resolution=MONTHLY) == 8

    def test_dashboard_aggregate_comes_from_stored_records(self, engine):
        _run(engine.synchronize("acme", now=NOW))

        aggregate = engine.get_dashboard_aggregate("acme", PLAN_KEYS)

        assert aggregate["periods_with_data"] == sorted(PLAN_KEYS)
        assert aggregate["metrics"][TOTAL_SESSIONS]["Client"] == pytest.approx(_expected_total_sessions())
        assert aggregate["metrics"][BOUNCE_RATE]["Client"] == pytest.approx(0.45)
        channels = aggregate["metrics"][TRAFFIC_CHANNELS]["Client"]
        assert channels[0]["category"] == "Organic Search"
        assert sum(item["percentage"] for item in channels) == pytest.approx(100.0, abs=0.5)
        assert len(aggregate["series"][TOTAL_SESSIONS]["Client"]) == 15

    def test_aggregate_is_empty_without_stored_data(self, engine):
        aggregate = engine.get_dashboard_aggregate("acme", ["2025-01"])

        assert aggregate["metrics"] == {}
        assert aggregate["record_count"] == 0

    def test_second_sync_only_refreshes_mutable_window(self, engine, connector):
        _run(engine.synchronize("acme", now=NOW))
        result = _run(engine.synchronize("acme", now=NOW))

        assert result.success
        assert result.periods_processed == 15
        assert result.periods_fetched == 2
        assert connector.main_calls("2025-06") == 2
        assert connector.main_calls("2025-05") == 2
        assert connector.main_calls("2025-01") == 1

    def test_force_refetches_everything(self, engine, connector):
        _run(engine.synchronize("acme", now=NOW))
        result = _run(engine.synchronize("acme", force=True, now=NOW))

        assert result.periods_fetched == 15
        assert all(connector.main_calls(key) == 2 for key in PLAN_KEYS)

    def test_refresh_current_period(self, engine, connector):
        result = _run(engine.refresh_current_period("acme", now=NOW))

        assert result.periods_processed == 1
        assert result.daily_periods == 1
        assert [key for key, _ in connector.calls if key != "2025-06"] == []

    def test_invalid_client_id_is_rejected_before_any_work(self, engine, connector):
        with pytest.raises(ValueError):
            _run(engine.synchronize("acme; drop table", now=NOW))
        assert connector.calls == []

    def test_unknown_client_is_fatal(self, engine, connector):
        result = _run(engine.synchronize("globex", now=NOW))

        assert not result.success
        assert "No GA4 property" in result.fatal_error
        assert result.not_started == PLAN_KEYS
        assert connector.calls == []


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------

class TestFailureHandling:

    def test_transient_failures_then_success(self, settings, store):
        connector = FakeGA4Connector(failures={"2025-03": 3})
        engine = SyncEngine(settings, store, connector)

        result = _run(engine.synchronize("acme", now=NOW))

        assert result.errors == []
        assert result.periods_processed == 15
        assert connector.main_calls("2025-03") == 4
        assert connector.retry_count == 3
        assert result.retries == 3
        assert store.count_records("acme", Period(2025, 3), resolution=MONTHLY) == 8

    def test_exhausted_retries_fail_only_that_period(self, settings, store):
        connector = FakeGA4Connector(failures={"2025-03": 10})
        engine = SyncEngine(settings, store, connector)

        result = _run(engine.synchronize("acme", now=NOW))

        assert result.fatal_error is None
        assert [e["period"] for e in result.errors] == ["2025-03"]
        assert result.periods_processed == 14
        assert connector.main_calls("2025-03") == 5
        assert not engine.locks.is_locked(lock_key("acme", "2025-03"))

    def test_auth_failure_stops_new_periods_without_retry(self, settings, store):
        connector = FakeGA4Connector(error=ProviderAuthError("invalid_grant"))
        engine = SyncEngine(settings, store, connector)

        result = _run(engine.synchronize("acme", now=NOW))

        assert "invalid_grant" in result.fatal_error
        assert result.periods_processed == 0
        assert connector.retry_count == 0
        # Only the first fan-out batch was in flight
        assert len(result.not_started) >= 15 - settings.period_fan_out
        # Each planned period is accounted for exactly once
        buckets = [e["period"] for e in result.errors] + result.skipped_periods + result.not_started
        assert sorted(buckets) == sorted(PLAN_KEYS)
        assert result.periods_processed + len(buckets) == 15
        assert engine.locks.active_keys() == []

    def test_deadline_stops_new_periods(self, engine, connector):
        result = _run(engine.synchronize("acme", timeout=0, now=NOW))

        assert result.not_started and sorted(result.not_started) == sorted(PLAN_KEYS)
        assert result.periods_processed == 0
        assert connector.calls == []

    def test_locked_period_is_skipped(self, engine, connector):
        engine.locks.acquire(lock_key("acme", "2025-03"))

        result = _run(engine.synchronize("acme", now=NOW))

        assert result.skipped_periods == ["2025-03"]
        assert result.periods_processed == 14
        assert connector.main_calls("2025-03") == 0


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

def test_overlapping_syncs_fetch_each_period_once(engine, connector):
    async def both():
        return await asyncio.gather(
            engine.synchronize("acme", now=NOW),
            engine.synchronize("acme", now=NOW),
        )

    first, second = _run(both())

    assert first.errors == [] and second.errors == []
    for key in PLAN_KEYS:
        assert connector.main_calls(key) == 1
    assert first.periods_fetched + second.periods_fetched == 15
    assert engine.locks.active_keys() == []


def test_different_clients_sync_independently(engine, connector, store):
    store.register_client("globex", "987654321")

    async def both():
        return await asyncio.gather(
            engine.synchronize("acme", now=NOW),
            engine.synchronize("globex", now=NOW),
        )

    results = _run(both())

    assert all(r.periods_fetched == 15 for r in results)
    assert all(connector.main_calls(key) == 2 for key in PLAN_KEYS)


# ---------------------------------------------------------------------------
# Storage shape, compaction, cache
# ---------------------------------------------------------------------------

def test_sync_compacts_aged_daily_rows(engine, store):
    days = [
        MetricRecord(
            owner_id="acme",
            metric_name=TOTAL_SESSIONS,
            source_type="Client",
            period=Period(2025, 1, day=day, resolution=DAILY),
            value=10.0,
            resolution=DAILY,
            observed_at=datetime(2025, 2, 1),
        )
        for day in range(1, 32)
    ]
    store.upsert_metric_records("acme", days)

    result = _run(engine.synchronize("acme", now=NOW))

    assert result.compaction["periods_compacted"] == ["2025-01"]
    assert store.count_records("acme", Period(2025, 1), resolution=DAILY) == 0
    monthly = store.get_records("acme", ["2025-01"], resolution=MONTHLY, metric_names=[TOTAL_SESSIONS])
    assert [r.value for r in monthly] == [310.0]


def test_each_metric_is_stored_at_one_resolution(engine, store):
    stale = MetricRecord("acme", TOTAL_SESSIONS, "Client", Period(2025, 6), 1.0)
    store.upsert_metric_records("acme", [stale])

    _run(engine.synchronize("acme", now=NOW))

    june = store.get_records("acme", ["2025-06"], metric_names=[TOTAL_SESSIONS])
    assert {r.resolution for r in june} == {DAILY}


def test_sync_invalidates_cached_aggregates(engine):
    _run(engine.synchronize("acme", now=NOW))
    engine.get_dashboard_aggregate("acme", ["2025-01"])
    engine.get_dashboard_aggregate("acme", ["2025-01"])
    assert engine.cache.stats()["hits"] == 1

    _run(engine.synchronize("acme", now=NOW))

    assert engine.cache.stats()["size"] == 0


def test_background_jobs_recompute_and_compact(engine, store):
    _run(engine.synchronize("acme", now=NOW))

    engine.enqueue_background_job(Job(JOB_RECOMPUTE_AGGREGATES, {"client_id": "acme", "periods": ["2025-01"]}))
    engine.enqueue_background_job(Job(JOB_COMPACT, {"client_id": "acme"}))
    _run(engine.queue.drain())

    assert engine.queue.stats()["completed"] == 2
    key = QueryCache.dashboard_key("acme", ["2025-01"], None)
    assert engine.cache.get(key)["record_count"] == 8


def test_sync_result_to_dict(engine):
    result = _run(engine.synchronize("acme", now=NOW))
    data = result.to_dict()

    assert data["success"] is True
    assert data["periods_processed"] == 15
    assert data["compaction"]["errors"] == []
    assert data["duration_seconds"] >= 0


class BrokenDeviceReportConnector(FakeGA4Connector):
    """Device report for one period fails at once while its main report is still running."""

    def __init__(self, broken_period):
        super().__init__()
        self.broken_period = broken_period
        self.finished = []
        self.cancelled = []

    async def run_report(self, property_id, period, metric_names, dimensions=()):
        if period.key == self.broken_period:
            if tuple(dimensions) == ("deviceCategory",):
                raise ValueError("device report rejected")
            if tuple(dimensions) == ():
                try:
                    await asyncio.sleep(0.2)
                except asyncio.CancelledError:
                    self.cancelled.append(period.key)
                    raise
                self.finished.append(period.key)
        return await super().run_report(property_id, period, metric_names, dimensions)


def test_failed_report_cancels_sibling_reports_before_lock_release(settings, store):
    connector = BrokenDeviceReportConnector("2025-03")
    engine = SyncEngine(settings, store, connector)

    async def run_and_wait():
        result = await engine.synchronize("acme", now=NOW)
        # Give an orphaned report time to finish if one was left running
        await asyncio.sleep(0.5)
        return result

    result = _run(run_and_wait())

    assert [e["period"] for e in result.errors] == ["2025-03"]
    assert connector.cancelled == ["2025-03"]
    assert connector.finished == []
    assert not engine.locks.is_locked(lock_key("acme", "2025-03"))


# ---------------------------------------------------------------------------
# Fetch status
# ---------------------------------------------------------------------------

class TestFetchStatus:

    def test_status_before_any_sync(self, engine):
        status = engine.get_fetch_status("acme", now=NOW)

        assert status["property_id"] == "123456789"
        assert [row["period"] for row in status["periods"]] == PLAN_KEYS
        assert all(row["stored_resolution"] is None for row in status["periods"])
        assert status["last_run"] is None

    def test_status_reports_stored_data_errors_and_locks(self, settings, store):
        connector = FakeGA4Connector(failures={"2025-03": 10})
        engine = SyncEngine(settings, store, connector)
        _run(engine.synchronize("acme", now=NOW))
        engine.locks.acquire(lock_key("acme", "2025-01"))

        status = engine.get_fetch_status("acme", now=NOW)
        rows = {row["period"]: row for row in status["periods"]}

        assert rows["2025-06"]["planned_resolution"] == DAILY
        assert rows["2025-06"]["stored_resolution"] == DAILY
        assert rows["2025-02"]["stored_resolution"] == MONTHLY
        assert rows["2025-02"]["last_refreshed_at"] is not None
        assert rows["2025-03"]["stored_resolution"] is None
        assert "429" in rows["2025-03"]["last_error"]
        assert rows["2025-01"]["in_progress"] is True
        assert status["in_progress"] == 1
        assert status["with_errors"] == 1
        assert status["last_run"]["success"] is False

    def test_error_clears_after_the_period_succeeds(self, settings, store):
        connector = FakeGA4Connector(failures={"2025-03": 5})
        engine = SyncEngine(settings, store, connector)

        _run(engine.synchronize("acme", now=NOW))
        assert engine.get_fetch_status("acme", now=NOW)["with_errors"] == 1

        _run(engine.synchronize("acme", now=NOW))
        status = engine.get_fetch_status("acme", now=NOW)
        assert status["with_errors"] == 0
        assert status["last_run"]["success"] is True

    def test_invalid_client_id_is_rejected(self, engine):
        with pytest.raises(ValueError):
            engine.get_fetch_status("bad id!", now=NOW)
