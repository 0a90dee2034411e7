"""
Metric store tests: upsert identity and per-month status.
"""
from datetime import datetime

from pulse_sync.models.records import (
    DAILY,
    MONTHLY,
    SOURCE_COMPETITOR,
    TOTAL_SESSIONS,
    MetricRecord,
    Period,
)


def _record(value, period=Period(2025, 1), source_type="Client", owner_id="acme", resolution=MONTHLY):
    return MetricRecord(owner_id, TOTAL_SESSIONS, source_type, period, value, resolution=resolution)


def test_upsert_overwrites_on_identity(store):
    assert store.upsert_metric_records("acme", [_record(10.0)]) == {"created": 1, "updated": 0}
    assert store.upsert_metric_records("acme", [_record(12.0)]) == {"created": 0, "updated": 1}

    records = store.get_records("acme", ["2025-01"])
    assert [r.value for r in records] == [12.0]


def test_source_type_and_owner_are_part_of_identity(store):
    store.upsert_metric_records("acme", [
        _record(10.0),
        _record(20.0, source_type=SOURCE_COMPETITOR, owner_id="rival"),
    ])

    assert store.count_records("acme", Period(2025, 1)) == 2
    competitors = store.get_records("acme", ["2025-01"], source_types=[SOURCE_COMPETITOR])
    assert [(r.owner_id, r.value) for r in competitors] == [("rival", 20.0)]


def test_duplicates_in_one_batch_keep_the_last(store):
    counts = store.upsert_metric_records("acme", [_record(1.0), _record(2.0)])

    assert counts == {"created": 1, "updated": 0}
    assert store.get_records("acme", ["2025-01"])[0].value == 2.0


def test_existing_status_reports_resolution_per_month(store):
    store.upsert_metric_records("acme", [
        _record(5.0, period=Period(2025, 5, day=1, resolution=DAILY), resolution=DAILY),
        _record(7.0, period=Period(2025, 4)),
    ])

    status = store.get_existing_status("acme", [Period(2025, 5), Period(2025, 4), Period(2025, 3)])

    assert status["2025-05"].resolution == DAILY
    assert status["2025-04"].resolution == MONTHLY
    assert status["2025-03"].resolution is None
    assert not status["2025-03"].has_data
    assert isinstance(status["2025-05"].last_observed_at, datetime)


def test_delete_daily_records_only_touches_daily_rows(store):
    store.upsert_metric_records("acme", [
        _record(5.0, period=Period(2025, 5, day=d, resolution=DAILY), resolution=DAILY) for d in range(1, 4)
    ] + [_record(9.0, period=Period(2025, 5))])

    assert store.delete_daily_records("acme", Period(2025, 5)) == 3
    assert store.count_records("acme", Period(2025, 5)) == 1


def test_records_are_scoped_to_client(store):
    store.upsert_metric_records("acme", [_record(10.0)])
    assert store.get_records("globex", ["2025-01"]) == []


def test_property_registry(store):
    assert store.get_property_id("acme") == "123456789"
    store.register_client("acme", "555")
    assert store.get_property_id("acme") == "555"
    assert store.get_property_id("globex") is None
