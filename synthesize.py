"""
synthesize.py - Corrective fuel-only trip records.

For every jurisdiction where more fuel was bought than trips account for,
writes one zero-mile trip carrying the missing gallons. This is the only
step in the engine with a write effect. It runs only when a caller asks
for it; afterwards the caller re-aggregates and re-detects.

Writes are independent. One jurisdiction failing to persist is recorded
in the result and the rest continue; nothing is rolled back.
"""

from __future__ import annotations

from typing import Callable, Iterable, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from logging_config import get_logger
from models import (
    CorrectionFailure,
    Discrepancy,
    FuelPurchaseEntry,
    SynthesisResult,
    TripRecord,
    TripSource,
)
from normalize import format_quarter, parse_quarter, quarter_midpoint
from trip_store import QuarterLockedError, TripStore

logger = get_logger(__name__)

UNKNOWN_VEHICLE = "unknown-vehicle"
# Used when no fuel purchase in the jurisdiction names a vehicle.


def require_user_id(value: object) -> str:
    text = str(value or "").strip()
    if not text:
        raise ValueError("user_id is required")
    return text


class SynthesisContext(BaseModel):
    """Inputs the synthesizer needs besides the discrepancies themselves."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    user_id: str
    quarter: str
    fuel_entries: list[FuelPurchaseEntry] = Field(default_factory=list)
    create_trip: Callable[[TripRecord], TripRecord]
    quarter_locked: bool = False

    @field_validator("user_id", mode="before")
    @classmethod
    def _require_user(cls, value: object) -> str:
        return require_user_id(value)

    @classmethod
    def from_store(
        cls,
        store: TripStore,
        user_id: str,
        quarter: str,
        vehicle_id: Optional[str] = None,
    ) -> "SynthesisContext":
        user_id = require_user_id(user_id)
        return cls(
            user_id=user_id,
            quarter=quarter,
            fuel_entries=store.list_fuel_purchases_for_quarter(user_id, quarter, vehicle_id),
            create_trip=lambda trip: store.create_trip_record(user_id, trip),
            quarter_locked=store.is_quarter_locked(user_id, quarter),
        )


def infer_vehicle(jurisdiction: str, fuel_entries: Iterable[FuelPurchaseEntry]) -> str:
    """Vehicle on the most recent purchase in the jurisdiction, else UNKNOWN_VEHICLE."""
    latest: Optional[FuelPurchaseEntry] = None
    for entry in fuel_entries:
        if entry.jurisdiction != jurisdiction or not entry.vehicle_id:
            continue
        if latest is None or entry.date > latest.date:
            latest = entry
    return latest.vehicle_id if latest is not None else UNKNOWN_VEHICLE


def build_fuel_only_trip(
    discrepancy: Discrepancy,
    quarter: str,
    fuel_entries: Iterable[FuelPurchaseEntry],
) -> TripRecord:
    """Zero-mile trip absorbing `discrepancy.discrepancy` gallons."""
    midpoint = quarter_midpoint(quarter)
    code = discrepancy.jurisdiction
    return TripRecord(
        quarter=quarter,
        vehicle_id=infer_vehicle(code, fuel_entries),
        start_date=midpoint,
        end_date=midpoint,
        start_jurisdiction=code,
        end_jurisdiction=code,
        total_miles=0.0,
        gallons=discrepancy.discrepancy,
        fuel_cost=0.0,
        source=TripSource.FUEL_ONLY,
        notes=(
            f"Auto-generated to account for {discrepancy.discrepancy:.3f} gallons of fuel "
            f"purchased in {code} but not associated with any trip."
        ),
    )


def synthesize_corrections(
    discrepancies: Iterable[Discrepancy],
    context: SynthesisContext,
) -> SynthesisResult:
    """Create one fuel-only trip per positive discrepancy.

    Raises:
        QuarterFormatError: malformed quarter in the context.
        QuarterLockedError: the quarter is locked; nothing is written.
    """
    quarter = format_quarter(*parse_quarter(context.quarter))
    if context.quarter_locked:
        logger.warning(
            "synthesize_rejected | user_id=%s | quarter=%s | reason='quarter locked'",
            context.user_id,
            quarter,
        )
        raise QuarterLockedError(context.user_id, quarter)

    result = SynthesisResult()
    for item in discrepancies:
        if not item.needs_correction:
            logger.info(
                "synthesize_skip | jurisdiction=%s | discrepancy=%.3f | reason='manual review'",
                item.jurisdiction,
                item.discrepancy,
            )
            continue

        try:
            trip = build_fuel_only_trip(item, quarter, context.fuel_entries)
            created = context.create_trip(trip)
        except Exception as exc:
            logger.error(
                "synthesize_write_error | jurisdiction=%s | error_type=%s | error=%s",
                item.jurisdiction,
                type(exc).__name__,
                exc,
                exc_info=True,
            )
            result.errors.append(
                CorrectionFailure(jurisdiction=item.jurisdiction, message=str(exc) or type(exc).__name__)
            )
            continue

        result.created.append(created)
        logger.info(
            "synthesize_created | jurisdiction=%s | gallons=%.3f | vehicle_id=%s | trip_id=%s",
            item.jurisdiction,
            created.gallons,
            created.vehicle_id,
            created.id,
        )

    logger.info(
        "synthesize_complete | quarter=%s | created=%s | failed=%s",
        quarter,
        result.created_count,
        len(result.errors),
    )
    return result
