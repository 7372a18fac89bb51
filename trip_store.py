"""
trip_store.py - Persisted trip and fuel-purchase storage.

Stores every user's trips, fuel purchases, quarter locks and saved
quarter reports in one local JSON file. Writes go through a temp file in
the same directory and `os.replace`, so a crash never leaves a
half-written store behind.

A locked quarter is closed for filing: its trip records can no longer be
created or deleted until it is unlocked. Saving a submitted quarter
report locks the quarter in the same write.
"""

from __future__ import annotations

import json
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional, Protocol

from pydantic import BaseModel, ConfigDict, Field, field_validator

from logging_config import get_logger
from models import FuelPurchaseEntry, QuarterReport, TripRecord
from normalize import format_quarter, parse_quarter, quarter_date_range

logger = get_logger(__name__)


class QuarterLockedError(RuntimeError):
    """Raised when writing trip records into a quarter closed for filing."""

    def __init__(self, user_id: str, quarter: str) -> None:
        super().__init__(f"Quarter {quarter} is locked for filing; trip records cannot be changed.")
        self.user_id = user_id
        self.quarter = quarter


class TripStore(Protocol):
    """What the engine needs from storage."""

    def list_trips_for_quarter(
        self, user_id: str, quarter: str, vehicle_id: Optional[str] = None
    ) -> list[TripRecord]: ...

    def list_fuel_purchases_for_quarter(
        self, user_id: str, quarter: str, vehicle_id: Optional[str] = None
    ) -> list[FuelPurchaseEntry]: ...

    def create_trip_record(self, user_id: str, trip: TripRecord) -> TripRecord: ...

    def is_quarter_locked(self, user_id: str, quarter: str) -> bool: ...


class StoreState(BaseModel):
    """Everything persisted in the store file."""

    model_config = ConfigDict(extra="ignore")

    trips: list[TripRecord] = Field(default_factory=list)
    fuel_purchases: list[FuelPurchaseEntry] = Field(default_factory=list)
    locked_quarters: dict[str, list[str]] = Field(default_factory=dict)
    reports: list[QuarterReport] = Field(default_factory=list)
    next_id: int = 1
    updated_at: Optional[str] = None

    @field_validator("locked_quarters", mode="before")
    @classmethod
    def _normalize_locks(cls, value: Any) -> dict[str, list[str]]:
        source = value if isinstance(value, dict) else {}
        result: dict[str, list[str]] = {}
        for key, raw in source.items():
            user_id = str(key or "").strip()
            if not user_id or not isinstance(raw, list):
                continue
            quarters = sorted({str(item).strip().upper() for item in raw if str(item).strip()})
            if quarters:
                result[user_id] = quarters
        return result


def _require_user(user_id: Any) -> str:
    text = str(user_id or "").strip()
    if not text:
        raise ValueError("user_id is required")
    return text


def _canonical_quarter(quarter: Any) -> str:
    return format_quarter(*parse_quarter(quarter))


class JsonTripStore:
    """Disk-backed store using one JSON file and atomic writes."""

    def __init__(self, path: Optional[str] = None) -> None:
        target = path or os.getenv("IFTA_STORE_FILE", "data/ifta_store.json")
        self.path = Path(target).resolve()
        self._lock = threading.Lock()

    def load_state(self) -> StoreState:
        """Load the store from disk. A missing file is an empty store."""
        if not self.path.exists():
            return StoreState()

        # Corrupt files raise instead of loading as empty.
        raw = json.loads(self.path.read_text(encoding="utf-8"))
        return StoreState.model_validate(raw)

    def _save_state(self, state: StoreState) -> None:
        state.updated_at = datetime.now(timezone.utc).isoformat()
        self.path.parent.mkdir(parents=True, exist_ok=True)

        payload = state.model_dump(mode="json")
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=str(self.path.parent),
            delete=False,
            suffix=".tmp",
            prefix="ifta-store-",
        ) as tmp_file:
            json.dump(payload, tmp_file, ensure_ascii=False, indent=2)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
            tmp_path = Path(tmp_file.name)

        os.replace(tmp_path, self.path)

    # -- reads ---------------------------------------------------------------

    def list_trips_for_quarter(
        self,
        user_id: str,
        quarter: str,
        vehicle_id: Optional[str] = None,
    ) -> list[TripRecord]:
        user_id = _require_user(user_id)
        quarter = _canonical_quarter(quarter)
        state = self.load_state()
        trips = [
            trip
            for trip in state.trips
            if trip.user_id == user_id
            and trip.quarter == quarter
            and (not vehicle_id or trip.vehicle_id == vehicle_id)
        ]
        trips.sort(key=lambda trip: (trip.start_date, trip.id or ""))
        logger.debug(
            "store_list_trips | user_id=%s | quarter=%s | vehicle_id=%s | count=%s",
            user_id,
            quarter,
            vehicle_id,
            len(trips),
        )
        return trips

    def list_fuel_purchases_for_quarter(
        self,
        user_id: str,
        quarter: str,
        vehicle_id: Optional[str] = None,
    ) -> list[FuelPurchaseEntry]:
        """Purchases dated inside the quarter's calendar range."""
        user_id = _require_user(user_id)
        first_day, last_day = quarter_date_range(quarter)
        state = self.load_state()
        entries = [
            entry
            for entry in state.fuel_purchases
            if entry.user_id == user_id
            and first_day <= entry.date <= last_day
            and (not vehicle_id or entry.vehicle_id == vehicle_id)
        ]
        entries.sort(key=lambda entry: (entry.date, entry.id or ""))
        return entries

    def is_quarter_locked(self, user_id: str, quarter: str) -> bool:
        user_id = _require_user(user_id)
        quarter = _canonical_quarter(quarter)
        return quarter in self.load_state().locked_quarters.get(user_id, [])

    def locked_quarters(self, user_id: str) -> list[str]:
        return list(self.load_state().locked_quarters.get(_require_user(user_id), []))

    # -- writes --------------------------------------------------------------

    def create_trip_record(self, user_id: str, trip: TripRecord) -> TripRecord:
        """Persist a new trip and return it with its assigned id.

        Raises:
            QuarterLockedError: the trip's quarter is locked for filing.
        """
        user_id = _require_user(user_id)
        with self._lock:
            state = self.load_state()
            if trip.quarter in state.locked_quarters.get(user_id, []):
                raise QuarterLockedError(user_id, trip.quarter)

            record = trip.model_copy(update={"id": f"trip_{state.next_id:05d}", "user_id": user_id})
            state.next_id += 1
            state.trips.append(record)
            self._save_state(state)

        logger.info(
            "store_trip_created | user_id=%s | trip_id=%s | quarter=%s | source=%s",
            user_id,
            record.id,
            record.quarter,
            record.source.value,
        )
        return record

    def delete_trip_record(self, user_id: str, trip_id: str) -> bool:
        """Delete a trip. Returns False when no such trip exists for the user."""
        user_id = _require_user(user_id)
        with self._lock:
            state = self.load_state()
            target = next(
                (trip for trip in state.trips if trip.id == trip_id and trip.user_id == user_id),
                None,
            )
            if target is None:
                return False
            if target.quarter in state.locked_quarters.get(user_id, []):
                raise QuarterLockedError(user_id, target.quarter)

            state.trips = [trip for trip in state.trips if trip is not target]
            self._save_state(state)

        logger.info("store_trip_deleted | user_id=%s | trip_id=%s", user_id, trip_id)
        return True

    def add_fuel_purchase(self, user_id: str, entry: FuelPurchaseEntry) -> FuelPurchaseEntry:
        user_id = _require_user(user_id)
        with self._lock:
            state = self.load_state()
            record = entry.model_copy(update={"id": f"fuel_{state.next_id:05d}", "user_id": user_id})
            state.next_id += 1
            state.fuel_purchases.append(record)
            self._save_state(state)
        return record

    def lock_quarter(self, user_id: str, quarter: str) -> None:
        self._set_lock(user_id, quarter, locked=True)

    def unlock_quarter(self, user_id: str, quarter: str) -> None:
        self._set_lock(user_id, quarter, locked=False)

    def _set_lock(self, user_id: str, quarter: str, locked: bool) -> None:
        user_id = _require_user(user_id)
        quarter = _canonical_quarter(quarter)
        with self._lock:
            state = self.load_state()
            quarters = set(state.locked_quarters.get(user_id, []))
            if locked:
                quarters.add(quarter)
            else:
                quarters.discard(quarter)
            if quarters:
                state.locked_quarters[user_id] = sorted(quarters)
            else:
                state.locked_quarters.pop(user_id, None)
            self._save_state(state)

        logger.info(
            "store_quarter_lock | user_id=%s | quarter=%s | locked=%s",
            user_id,
            quarter,
            locked,
        )

    # -- quarter reports -----------------------------------------------------

    def get_report(self, user_id: str, quarter: str) -> Optional[QuarterReport]:
        user_id = _require_user(user_id)
        quarter = _canonical_quarter(quarter)
        state = self.load_state()
        return next(
            (report for report in state.reports if report.user_id == user_id and report.quarter == quarter),
            None,
        )

    def save_report(self, user_id: str, report: QuarterReport) -> QuarterReport:
        """Insert or replace the user's report for `report.quarter`.

        A submitted report also locks the quarter.
        """
        user_id = _require_user(user_id)
        now = datetime.now(timezone.utc).isoformat()
        with self._lock:
            state = self.load_state()
            existing = next(
                (item for item in state.reports if item.user_id == user_id and item.quarter == report.quarter),
                None,
            )

            update: dict[str, Any] = {"user_id": user_id, "updated_at": now}
            if existing is not None:
                update["id"] = existing.id
                update["created_at"] = existing.created_at
            else:
                update["id"] = f"report_{state.next_id:05d}"
                update["created_at"] = now
                state.next_id += 1
            if report.is_submitted:
                update["submitted_at"] = report.submitted_at or now
                quarters = set(state.locked_quarters.get(user_id, []))
                quarters.add(report.quarter)
                state.locked_quarters[user_id] = sorted(quarters)

            record = report.model_copy(update=update)
            state.reports = [item for item in state.reports if item is not existing] + [record]
            self._save_state(state)

        logger.info(
            "store_report_saved | user_id=%s | quarter=%s | status=%s | replaced=%s",
            user_id,
            record.quarter,
            record.status.value,
            existing is not None,
        )
        return record
