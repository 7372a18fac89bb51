"""
test_importers.py - Load and state mileage importer tests.

Usage: pytest test_importers.py
"""

from __future__ import annotations

import os
import sys
from datetime import date

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

from importers import UNASSIGNED_VEHICLE, trip_from_load, trips_from_state_mileage
from models import LoadRecord, MileageTrip, StateMileage, TripSource


def make_load(**overrides) -> LoadRecord:
    fields = {
        "id": "load_481",
        "load_number": "481",
        "vehicle_id": "TRK-12",
        "driver_id": "DRV-3",
        "origin": "Fresno, CA",
        "destination": "Reno, NV 89501",
        "distance": 310.0,
        "pickup_date": date(2024, 3, 30),
        "delivery_date": date(2024, 4, 1),
    }
    fields.update(overrides)
    return LoadRecord(**fields)


def test_load_becomes_trip():
    trip = trip_from_load(make_load())
    assert trip.source == TripSource.LOAD
    assert trip.source_reference == "load_481"
    assert trip.start_jurisdiction == "CA"
    assert trip.end_jurisdiction == "NV"
    assert trip.total_miles == pytest.approx(310.0)
    assert trip.start_date == date(2024, 3, 30)
    assert trip.end_date == date(2024, 4, 1)
    assert trip.notes == "Imported from Load #481: Fresno, CA to Reno, NV 89501"


def test_load_quarter_follows_delivery_date():
    assert trip_from_load(make_load()).quarter == "2024-Q2"
    assert trip_from_load(make_load(delivery_date=None)).quarter == "2024-Q1"
    assert trip_from_load(make_load(), quarter="2024-Q1").quarter == "2024-Q1"


def test_load_without_vehicle_is_unassigned():
    assert trip_from_load(make_load(vehicle_id=None)).vehicle_id == UNASSIGNED_VEHICLE


def test_load_without_state_codes_is_rejected():
    with pytest.raises(ValueError, match="City, ST"):
        trip_from_load(make_load(origin="Fresno"))


def test_load_without_dates_is_rejected():
    with pytest.raises(ValueError):
        trip_from_load(make_load(pickup_date=None, delivery_date=None))


def make_tracked_trip() -> MileageTrip:
    return MileageTrip(
        id="mt_9",
        vehicle_id="TRK-5",
        start_date=date(2024, 2, 3),
        end_date=date(2024, 2, 4),
        states=[
            StateMileage(state="ca", state_name="California", miles=120.5),
            StateMileage(state="NV", state_name="Nevada", miles=80.0),
            StateMileage(state="AZ", state_name="Arizona", miles=0.0),
        ],
    )


def test_state_mileage_creates_one_same_state_trip_per_state():
    records = trips_from_state_mileage(make_tracked_trip())
    assert [record.start_jurisdiction for record in records] == ["CA", "NV"]
    for record in records:
        assert record.start_jurisdiction == record.end_jurisdiction
        assert record.source == TripSource.MILEAGE_TRACKER
        assert record.source_reference == "mt_9"
        assert record.quarter == "2024-Q1"
        assert record.gallons == 0.0
    assert records[0].notes == "Imported from State Mileage Tracker: California (120.5 miles)"


def test_state_mileage_skips_states_already_imported():
    tracked = make_tracked_trip()
    first = trips_from_state_mileage(tracked)
    second = trips_from_state_mileage(tracked, existing=first)
    assert second == []

    partial = trips_from_state_mileage(tracked, existing=first[:1])
    assert [record.start_jurisdiction for record in partial] == ["NV"]


def test_other_sources_do_not_block_mileage_import():
    tracked = make_tracked_trip()
    load_trip = trip_from_load(make_load(id="mt_9"))
    records = trips_from_state_mileage(tracked, existing=[load_trip])
    assert len(records) == 2


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__]))
