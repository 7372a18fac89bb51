"""
importers.py - Trip records from other parts of the fleet system.

    trip_from_load(load)                      -> TripRecord (source=load)
    trips_from_state_mileage(trip, existing)  -> list[TripRecord] (source=mileage_tracker)

Imports only build records; persisting them goes through the store so the
quarter lock applies.
"""

from __future__ import annotations

from typing import Iterable, Optional

from logging_config import get_logger
from models import LoadRecord, MileageTrip, TripRecord, TripSource
from normalize import extract_state_code, quarter_for_date

logger = get_logger(__name__)

UNASSIGNED_VEHICLE = "unassigned"


def trip_from_load(load: LoadRecord, quarter: Optional[str] = None) -> TripRecord:
    """Build one trip from a completed load.

    The quarter defaults to the one containing the delivery date (pickup
    date when delivery is missing).

    Raises:
        ValueError: the load has no dates, or origin/destination carry no
            'City, ST' state code.
    """
    start = load.pickup_date or load.delivery_date
    end = load.delivery_date or load.pickup_date
    if start is None or end is None:
        raise ValueError(f"Load {load.load_number or load.id} has no pickup or delivery date.")

    origin_state = extract_state_code(load.origin)
    destination_state = extract_state_code(load.destination)
    if not origin_state or not destination_state:
        raise ValueError(
            f"Load {load.load_number or load.id}: could not read a state code from "
            f"origin {load.origin!r} / destination {load.destination!r}.\n"
            "Locations must look like 'City, ST'."
        )

    record = TripRecord(
        quarter=quarter or quarter_for_date(end),
        vehicle_id=load.vehicle_id or UNASSIGNED_VEHICLE,
        driver_id=load.driver_id,
        start_date=start,
        end_date=end,
        start_jurisdiction=origin_state,
        end_jurisdiction=destination_state,
        total_miles=load.distance,
        source=TripSource.LOAD,
        source_reference=load.id,
        notes=f"Imported from Load #{load.load_number or load.id}: {load.origin} to {load.destination}",
    )
    logger.debug(
        "import_load | load_id=%s | start=%s | end=%s | miles=%.1f",
        load.id,
        origin_state,
        destination_state,
        load.distance,
    )
    return record


def trips_from_state_mileage(
    trip: MileageTrip,
    existing: Iterable[TripRecord] = (),
    quarter: Optional[str] = None,
) -> list[TripRecord]:
    """One same-state trip per state crossed on a tracked trip.

    States already imported from this tracked trip (matched on
    source_reference and jurisdiction) and states with no miles are
    skipped, so re-running an import does not double count.
    """
    already = {
        record.start_jurisdiction
        for record in existing
        if record.source == TripSource.MILEAGE_TRACKER and record.source_reference == trip.id
    }
    end = trip.end_date or trip.start_date
    target_quarter = quarter or quarter_for_date(trip.start_date)

    records: list[TripRecord] = []
    for state in trip.states:
        if state.state in already:
            logger.info(
                "import_mileage_skip | trip_id=%s | state=%s | reason='already imported'",
                trip.id,
                state.state,
            )
            continue
        if state.miles <= 0:
            continue

        label = state.state_name or state.state
        records.append(
            TripRecord(
                quarter=target_quarter,
                vehicle_id=trip.vehicle_id,
                start_date=trip.start_date,
                end_date=end,
                start_jurisdiction=state.state,
                end_jurisdiction=state.state,
                total_miles=state.miles,
                source=TripSource.MILEAGE_TRACKER,
                source_reference=trip.id,
                notes=f"Imported from State Mileage Tracker: {label} ({state.miles:.1f} miles)",
            )
        )

    logger.info(
        "import_mileage_complete | trip_id=%s | states=%s | created=%s | skipped=%s",
        trip.id,
        len(trip.states),
        len(records),
        len(trip.states) - len(records),
    )
    return records
