"""
allocation.py - Mileage allocation rules.

A rule decides how much of a trip's miles (or gallons) each jurisdiction
receives. Trips carry only a start and an end code, so the default rule
splits cross-border trips evenly between the two. Route-aware or
odometer-based rules can replace it without touching the aggregator or
the discrepancy detector; both accept a `rule` argument.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from models import TripRecord


class AllocationRule(ABC):
    """Distributes a quantity recorded on a trip across jurisdictions."""

    name = "abstract"

    @abstractmethod
    def allocate(self, trip: TripRecord, value: float) -> list[tuple[str, float]]:
        """Return (jurisdiction, amount) pairs for `value`.

        An empty list means the trip cannot be placed and contributes
        nothing.
        """


class HalfSplitRule(AllocationRule):
    """Same jurisdiction gets everything; two jurisdictions get half each.

    This is a simplification: real distances in each jurisdiction are not
    known from a start/end pair.
    """

    name = "half_split"

    def allocate(self, trip: TripRecord, value: float) -> list[tuple[str, float]]:
        if not trip.has_jurisdictions:
            return []
        if not trip.crosses_jurisdictions:
            return [(trip.start_jurisdiction, value)]
        half = value / 2
        return [(trip.start_jurisdiction, half), (trip.end_jurisdiction, half)]


DEFAULT_RULE: AllocationRule = HalfSplitRule()


def allocate_miles(trip: TripRecord, rule: AllocationRule | None = None) -> list[tuple[str, float]]:
    return (rule or DEFAULT_RULE).allocate(trip, trip.total_miles)


def allocate_gallons(trip: TripRecord, rule: AllocationRule | None = None) -> list[tuple[str, float]]:
    if trip.gallons <= 0:
        return []
    return (rule or DEFAULT_RULE).allocate(trip, trip.gallons)
