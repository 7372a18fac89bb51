"""
test_trip_store.py - JSON store persistence and quarter lock checks.

Usage: pytest test_trip_store.py
"""

from __future__ import annotations

import os
import sys
from datetime import date

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

from models import FuelPurchaseEntry, JurisdictionTotal, QuarterReport, ReportStatus, TripRecord
from trip_store import JsonTripStore, QuarterLockedError


def make_trip(quarter: str = "2024-Q1", vehicle_id: str = "TRK-1", day: date = date(2024, 1, 10)) -> TripRecord:
    return TripRecord(
        quarter=quarter,
        vehicle_id=vehicle_id,
        start_date=day,
        end_date=day,
        start_jurisdiction="CA",
        end_jurisdiction="NV",
        total_miles=200.0,
        gallons=20.0,
    )


def make_fuel(day: date, vehicle_id: str = "TRK-1") -> FuelPurchaseEntry:
    return FuelPurchaseEntry(vehicle_id=vehicle_id, date=day, jurisdiction="CA", gallons=10.0)


@pytest.fixture
def store(tmp_path) -> JsonTripStore:
    return JsonTripStore(str(tmp_path / "data" / "store.json"))


def test_missing_file_is_empty_store(store):
    assert store.list_trips_for_quarter("u1", "2024-Q1") == []
    assert store.list_fuel_purchases_for_quarter("u1", "2024-Q1") == []
    assert store.is_quarter_locked("u1", "2024-Q1") is False


def test_create_assigns_id_and_owner(store):
    created = store.create_trip_record("u1", make_trip())
    assert created.id and created.id.startswith("trip_")
    assert created.user_id == "u1"
    assert store.path.exists()


def test_list_trips_filters_user_quarter_and_vehicle(store):
    store.create_trip_record("u1", make_trip(vehicle_id="TRK-1"))
    store.create_trip_record("u1", make_trip(vehicle_id="TRK-2"))
    store.create_trip_record("u1", make_trip(quarter="2024-Q2", day=date(2024, 4, 2)))
    store.create_trip_record("u2", make_trip())

    assert len(store.list_trips_for_quarter("u1", "2024-Q1")) == 2
    assert len(store.list_trips_for_quarter("u1", "2024-q1", "TRK-2")) == 1
    assert len(store.list_trips_for_quarter("u2", "2024-Q1")) == 1
    assert len(store.list_trips_for_quarter("u1", "2024-Q2")) == 1


def test_fuel_purchases_filtered_by_quarter_dates(store):
    store.add_fuel_purchase("u1", make_fuel(date(2024, 1, 1)))
    store.add_fuel_purchase("u1", make_fuel(date(2024, 3, 31)))
    store.add_fuel_purchase("u1", make_fuel(date(2024, 4, 1)))
    store.add_fuel_purchase("u1", make_fuel(date(2024, 2, 1), vehicle_id="TRK-2"))

    assert len(store.list_fuel_purchases_for_quarter("u1", "2024-Q1")) == 3
    assert len(store.list_fuel_purchases_for_quarter("u1", "2024-Q1", "TRK-2")) == 1
    assert len(store.list_fuel_purchases_for_quarter("u1", "2024-Q2")) == 1


def test_persists_across_instances(store):
    created = store.create_trip_record("u1", make_trip())
    reopened = JsonTripStore(str(store.path))
    trips = reopened.list_trips_for_quarter("u1", "2024-Q1")
    assert [trip.id for trip in trips] == [created.id]
    assert trips[0].start_jurisdiction == "CA"


def test_writes_leave_no_temp_files(store):
    store.create_trip_record("u1", make_trip())
    store.lock_quarter("u1", "2024-Q1")
    leftovers = [path.name for path in store.path.parent.iterdir() if path.suffix == ".tmp"]
    assert leftovers == []


def test_locked_quarter_rejects_create_and_delete(store):
    created = store.create_trip_record("u1", make_trip())
    store.lock_quarter("u1", "2024-Q1")

    assert store.is_quarter_locked("u1", "2024-Q1")
    assert store.locked_quarters("u1") == ["2024-Q1"]
    with pytest.raises(QuarterLockedError):
        store.create_trip_record("u1", make_trip())
    with pytest.raises(QuarterLockedError):
        store.delete_trip_record("u1", created.id)

    # Other users and quarters are unaffected.
    store.create_trip_record("u2", make_trip())
    store.create_trip_record("u1", make_trip(quarter="2024-Q2", day=date(2024, 5, 1)))


def test_unlock_allows_changes_again(store):
    created = store.create_trip_record("u1", make_trip())
    store.lock_quarter("u1", "2024-Q1")
    store.unlock_quarter("u1", "2024-Q1")

    assert store.is_quarter_locked("u1", "2024-Q1") is False
    assert store.delete_trip_record("u1", created.id) is True
    assert store.list_trips_for_quarter("u1", "2024-Q1") == []


def test_delete_unknown_trip_returns_false(store):
    assert store.delete_trip_record("u1", "trip_99999") is False


def test_user_id_required(store):
    with pytest.raises(ValueError):
        store.list_trips_for_quarter("", "2024-Q1")
    with pytest.raises(ValueError):
        store.create_trip_record("  ", make_trip())


def make_report(status: ReportStatus = ReportStatus.DRAFT, miles: float = 400.0) -> QuarterReport:
    return QuarterReport(
        quarter="2024-q1",
        total_miles=miles,
        total_gallons=60.0,
        total_tax=12.5,
        status=status,
        jurisdictions=[JurisdictionTotal(jurisdiction="CA", total_miles=miles, taxable_miles=miles)],
    )


def test_missing_report_is_none(store):
    assert store.get_report("u1", "2024-Q1") is None


def test_save_report_assigns_id_and_year(store):
    saved = store.save_report("u1", make_report())
    assert saved.id.startswith("report_")
    assert saved.user_id == "u1"
    assert saved.quarter == "2024-Q1"
    assert saved.year == 2024
    assert saved.submitted_at is None
    assert store.get_report("u1", "2024-Q1") == saved
    assert store.get_report("u2", "2024-Q1") is None


def test_save_report_replaces_existing(store):
    first = store.save_report("u1", make_report(miles=400.0))
    second = store.save_report("u1", make_report(miles=550.0))

    assert second.id == first.id
    assert second.created_at == first.created_at
    reopened = JsonTripStore(str(store.path))
    assert reopened.get_report("u1", "2024-Q1").total_miles == pytest.approx(550.0)
    assert len(reopened.load_state().reports) == 1


def test_submitted_report_locks_quarter(store):
    store.create_trip_record("u1", make_trip())
    saved = store.save_report("u1", make_report(ReportStatus.SUBMITTED))

    assert saved.is_submitted
    assert saved.submitted_at is not None
    assert store.is_quarter_locked("u1", "2024-Q1")
    assert not store.is_quarter_locked("u2", "2024-Q1")
    with pytest.raises(QuarterLockedError):
        store.create_trip_record("u1", make_trip())


def test_draft_report_leaves_quarter_open(store):
    store.save_report("u1", make_report(ReportStatus.DRAFT))
    assert store.is_quarter_locked("u1", "2024-Q1") is False


def test_path_from_environment(tmp_path, monkeypatch):
    target = tmp_path / "env_store.json"
    monkeypatch.setenv("IFTA_STORE_FILE", str(target))
    assert JsonTripStore().path == target.resolve()


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__]))
