"""
aggregate.py - Jurisdiction aggregation.

Pipeline position:
    trip_store -> aggregate -> detect / export

Builds one JurisdictionTotal per jurisdiction seen on any trip endpoint
or fuel purchase, allocates trip miles with the configured rule, sums
purchased gallons, then runs the taxable-gallon estimator. Inputs are
never modified and nothing is cached, so calling twice on the same data
gives the same answer.
"""

from __future__ import annotations

import time
from typing import Iterable, Optional

from allocation import AllocationRule, allocate_miles
from estimate import apply_taxable_gallons, fleet_mpg, uses_fallback_mpg
from logging_config import get_logger
from models import FuelPurchaseEntry, JurisdictionTotal, QuarterSummary, TripRecord
from normalize import parse_quarter

logger = get_logger(__name__)

ALL_VEHICLES_SCOPE = "all_vehicles"


def _bucket(totals: dict[str, JurisdictionTotal], code: Optional[str]) -> Optional[JurisdictionTotal]:
    if not code:
        return None
    if code not in totals:
        totals[code] = JurisdictionTotal(jurisdiction=code)
    return totals[code]


def aggregate(
    trips: Iterable[TripRecord],
    fuel_entries: Iterable[FuelPurchaseEntry],
    rule: AllocationRule | None = None,
) -> dict[str, JurisdictionTotal]:
    """Per-jurisdiction miles, tax-paid gallons and taxable gallons.

    Trips missing either jurisdiction code contribute no miles. A code
    they do carry still gets a (possibly zero) entry.
    """
    started = time.time()
    totals: dict[str, JurisdictionTotal] = {}
    trip_count = 0
    skipped = 0

    for trip in trips:
        trip_count += 1
        _bucket(totals, trip.start_jurisdiction)
        _bucket(totals, trip.end_jurisdiction)

        shares = allocate_miles(trip, rule)
        if not shares:
            skipped += 1
            logger.debug(
                "aggregate_trip_skipped | trip_id=%s | start=%s | end=%s | reason='missing jurisdiction'",
                trip.id,
                trip.start_jurisdiction,
                trip.end_jurisdiction,
            )
            continue

        for code, miles in shares:
            bucket = _bucket(totals, code)
            bucket.total_miles += miles
            bucket.taxable_miles += miles

    fuel_count = 0
    for entry in fuel_entries:
        fuel_count += 1
        bucket = _bucket(totals, entry.jurisdiction)
        bucket.tax_paid_gallons += entry.gallons

    mpg = apply_taxable_gallons(totals)

    logger.info(
        "aggregate_complete | jurisdictions=%s | trips=%s | skipped_trips=%s | fuel_entries=%s | mpg=%.2f | duration_s=%.3f",
        len(totals),
        trip_count,
        skipped,
        fuel_count,
        mpg,
        time.time() - started,
    )
    return totals


def scope_label(vehicle_id: Optional[str] = None) -> str:
    """Filename-safe label for the export scope."""
    if not vehicle_id:
        return ALL_VEHICLES_SCOPE
    cleaned = "".join(char if char.isalnum() or char in "-_" else "_" for char in str(vehicle_id).strip())
    return f"vehicle_{cleaned}"


def summarize_quarter(
    quarter: str,
    trips: list[TripRecord],
    fuel_entries: list[FuelPurchaseEntry],
    vehicle_id: Optional[str] = None,
    rule: AllocationRule | None = None,
) -> QuarterSummary:
    """Aggregate one quarter into a QuarterSummary sorted by jurisdiction.

    When `vehicle_id` is given, only that vehicle's trips and purchases are
    counted.
    """
    year, number = parse_quarter(quarter)
    if vehicle_id:
        trips = [trip for trip in trips if trip.vehicle_id == vehicle_id]
        fuel_entries = [entry for entry in fuel_entries if entry.vehicle_id == vehicle_id]

    totals = aggregate(trips, fuel_entries, rule)
    total_miles = sum(item.total_miles for item in totals.values())
    total_gallons = sum(item.tax_paid_gallons for item in totals.values())
    fallback = uses_fallback_mpg(total_miles, total_gallons)

    return QuarterSummary(
        quarter=f"{year}-Q{number}",
        scope_label=scope_label(vehicle_id),
        vehicle_id=vehicle_id,
        total_miles=total_miles,
        total_gallons=total_gallons,
        fleet_mpg=fleet_mpg(total_miles, total_gallons),
        mpg_fallback_used=fallback,
        jurisdictions=[totals[code] for code in sorted(totals)],
        trip_count=len(trips),
        fuel_entry_count=len(fuel_entries),
    )
