"""
test_allocation.py - Mileage allocation rule tests.

Usage: pytest test_allocation.py
"""

from __future__ import annotations

import os
import sys
from datetime import date

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

import pytest

from allocation import AllocationRule, HalfSplitRule, allocate_gallons, allocate_miles
from models import TripRecord


def make_trip(start: str | None, end: str | None, miles: float = 100.0, gallons: float = 0.0) -> TripRecord:
    return TripRecord(
        quarter="2024-Q1",
        vehicle_id="TRK-1",
        start_date=date(2024, 1, 10),
        end_date=date(2024, 1, 10),
        start_jurisdiction=start,
        end_jurisdiction=end,
        total_miles=miles,
        gallons=gallons,
    )


def test_same_jurisdiction_gets_all_miles():
    assert allocate_miles(make_trip("CA", "CA", 100.0)) == [("CA", 100.0)]


def test_cross_jurisdiction_splits_in_half():
    assert allocate_miles(make_trip("CA", "NV", 200.0)) == [("CA", 100.0), ("NV", 100.0)]


def test_codes_are_normalized_before_comparing():
    assert allocate_miles(make_trip("ca", " CA ", 50.0)) == [("CA", 50.0)]


@pytest.mark.parametrize("start,end", [("CA", None), (None, "NV"), (None, None)])
def test_missing_jurisdiction_allocates_nothing(start, end):
    assert allocate_miles(make_trip(start, end)) == []


def test_gallons_use_the_same_split():
    assert allocate_gallons(make_trip("CA", "NV", 200.0, gallons=20.0)) == [("CA", 10.0), ("NV", 10.0)]


def test_zero_gallons_allocate_nothing():
    assert allocate_gallons(make_trip("CA", "NV", 200.0, gallons=0.0)) == []


def test_custom_rule_replaces_default():
    class StartOnly(AllocationRule):
        name = "start_only"

        def allocate(self, trip, value):
            return [(trip.start_jurisdiction, value)] if trip.start_jurisdiction else []

    assert allocate_miles(make_trip("CA", "NV", 200.0), StartOnly()) == [("CA", 200.0)]
    assert HalfSplitRule().name == "half_split"


if __name__ == "__main__":
    raise SystemExit(pytest.main([__file__]))
