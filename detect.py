"""
detect.py - Fuel discrepancy detection.

Compares gallons bought in each jurisdiction against gallons recorded on
trips there. Trip gallons go through the same allocation rule as miles,
so a CA->NV trip claiming 20 gallons counts 10 in each.

    discrepancy = purchased gallons - trip gallons

Positive: fuel was bought that no trip explains (candidate for a
corrective fuel-only record). Negative: trips claim more fuel than was
bought (manual review). Either way only differences larger than
DISCREPANCY_TOLERANCE are reported.
"""

from __future__ import annotations

from typing import Iterable

from allocation import AllocationRule, allocate_gallons
from logging_config import get_logger
from models import Discrepancy, FuelPurchaseEntry, SyncReport, TripRecord
from normalize import parse_quarter

logger = get_logger(__name__)

DISCREPANCY_TOLERANCE = 0.001
# Gallons. Fuel amounts are entered to 3 decimals.

BALANCE_TOLERANCE = 0.01
# Gallons. Net quarter-wide difference under which the quarter counts as
# balanced in the sync report.


def gallons_by_jurisdiction(
    trips: Iterable[TripRecord],
    fuel_entries: Iterable[FuelPurchaseEntry],
    rule: AllocationRule | None = None,
) -> tuple[dict[str, float], dict[str, float]]:
    """Return (purchased gallons, trip gallons) keyed by jurisdiction."""
    purchased: dict[str, float] = {}
    for entry in fuel_entries:
        purchased[entry.jurisdiction] = purchased.get(entry.jurisdiction, 0.0) + entry.gallons

    recorded: dict[str, float] = {}
    for trip in trips:
        for code, gallons in allocate_gallons(trip, rule):
            recorded[code] = recorded.get(code, 0.0) + gallons
    return purchased, recorded


def detect_discrepancies(
    trips: Iterable[TripRecord],
    fuel_entries: Iterable[FuelPurchaseEntry],
    rule: AllocationRule | None = None,
) -> list[Discrepancy]:
    """List jurisdictions where purchases and trips disagree.

    Covers every jurisdiction present in either data set. Output is sorted
    by jurisdiction code.
    """
    purchased, recorded = gallons_by_jurisdiction(trips, fuel_entries, rule)

    discrepancies: list[Discrepancy] = []
    for code in sorted(set(purchased) | set(recorded)):
        from_purchases = purchased.get(code, 0.0)
        from_trips = recorded.get(code, 0.0)
        difference = from_purchases - from_trips
        if abs(difference) <= DISCREPANCY_TOLERANCE:
            continue
        discrepancies.append(
            Discrepancy(
                jurisdiction=code,
                gallons_from_purchases=from_purchases,
                gallons_from_trips=from_trips,
                discrepancy=difference,
            )
        )

    logger.info(
        "detect_complete | jurisdictions_checked=%s | discrepancies=%s | positive=%s | negative=%s",
        len(set(purchased) | set(recorded)),
        len(discrepancies),
        sum(1 for item in discrepancies if item.needs_correction),
        sum(1 for item in discrepancies if item.needs_review),
    )
    return discrepancies


def sort_by_magnitude(discrepancies: Iterable[Discrepancy]) -> list[Discrepancy]:
    """Largest absolute difference first; ties by jurisdiction."""
    return sorted(discrepancies, key=lambda item: (-abs(item.discrepancy), item.jurisdiction))


def build_sync_report(
    quarter: str,
    trips: list[TripRecord],
    fuel_entries: list[FuelPurchaseEntry],
    rule: AllocationRule | None = None,
) -> SyncReport:
    """Quarter-wide fuel sync status plus the per-jurisdiction discrepancies."""
    year, number = parse_quarter(quarter)
    purchased, recorded = gallons_by_jurisdiction(trips, fuel_entries, rule)
    total_fuel = sum(purchased.values())
    total_trip = sum(recorded.values())
    net = total_fuel - total_trip

    return SyncReport(
        quarter=f"{year}-Q{number}",
        discrepancies=sort_by_magnitude(detect_discrepancies(trips, fuel_entries, rule)),
        total_fuel_gallons=total_fuel,
        total_trip_gallons=total_trip,
        net_difference=net,
        is_balanced=abs(net) < BALANCE_TOLERANCE,
    )
