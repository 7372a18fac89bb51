"""
api.py - FastAPI HTTP layer for the IFTA reconciliation engine.

Exposes the engine over the JSON store:
- quarter summary, fuel sync report, corrective records, report exports
- quarter lock and saved draft/submitted quarter reports
- trip / fuel-purchase entry and imports from loads and the mileage tracker
- CSV upload for a one-off reconciliation without touching the store

No reconciliation logic is implemented here.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any, Optional

import uvicorn
from dotenv import load_dotenv
from fastapi import Body, FastAPI, File, Form, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import ValidationError

from aggregate import summarize_quarter
from detect import build_sync_report
from estimate import apply_tax_rates, load_rate_table
from export import export_report
from importers import trip_from_load, trips_from_state_mileage
from logging_config import get_logger, setup_logging
from main import load_fuel_purchases, load_trips
from models import (
    CorrectionFailure,
    ExportData,
    FuelPurchaseEntry,
    IftaRate,
    LoadRecord,
    MileageTrip,
    QuarterReport,
    QuarterSummary,
    ReportStatus,
    SynthesisResult,
    TripRecord,
)
from normalize import format_quarter, parse_quarter, quarter_for_date
from synthesize import SynthesisContext, synthesize_corrections
from trip_store import JsonTripStore, QuarterLockedError

load_dotenv()

logger = get_logger("ifta-api")

app = FastAPI(
    title="IFTA Reconciliation API",
    version="1.0.0",
)

# Allows local UI use from file:// or another local host/port.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

trip_store = JsonTripStore()


def _rate_table() -> Optional[list[IftaRate]]:
    path = os.getenv("IFTA_RATES_FILE")
    return load_rate_table(path) if path else None


def _quarter(quarter: str) -> str:
    try:
        return format_quarter(*parse_quarter(quarter))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _server_error(event: str, exc: Exception, detail: str) -> HTTPException:
    logger.error(
        "%s | error_type=%s | error=%s",
        event,
        type(exc).__name__,
        exc,
        exc_info=True,
    )
    return HTTPException(status_code=500, detail=detail)


def _load_quarter(
    user_id: str, quarter: str, vehicle_id: Optional[str]
) -> tuple[list[TripRecord], list[FuelPurchaseEntry]]:
    trips = trip_store.list_trips_for_quarter(user_id, quarter, vehicle_id)
    fuel_entries = trip_store.list_fuel_purchases_for_quarter(user_id, quarter, vehicle_id)
    return trips, fuel_entries


def _summary(quarter: str, trips: list[TripRecord], fuel_entries: list[FuelPurchaseEntry], vehicle_id: Optional[str]) -> QuarterSummary:
    summary = summarize_quarter(quarter, trips, fuel_entries, vehicle_id=vehicle_id)
    rates = _rate_table()
    if rates:
        apply_tax_rates(summary.jurisdictions, rates)
    return summary


@app.get("/health")
def health() -> dict[str, str]:
    """Service health check."""
    return {"status": "ok"}


@app.get("/ifta/{quarter}/summary")
def quarter_summary(
    quarter: str,
    user_id: str = Query(..., min_length=1),
    vehicle_id: Optional[str] = Query(default=None),
) -> dict[str, Any]:
    """Per-jurisdiction totals for the quarter."""
    quarter = _quarter(quarter)
    try:
        trips, fuel_entries = _load_quarter(user_id, quarter, vehicle_id)
        summary = _summary(quarter, trips, fuel_entries, vehicle_id)
        payload = summary.model_dump(mode="json")
        payload["locked"] = trip_store.is_quarter_locked(user_id, quarter)
        return payload
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        raise _server_error("api_summary_error", exc, "Failed to build quarter summary.") from exc


@app.get("/ifta/{quarter}/discrepancies")
def quarter_discrepancies(
    quarter: str,
    user_id: str = Query(..., min_length=1),
    vehicle_id: Optional[str] = Query(default=None),
) -> dict[str, Any]:
    """Fuel sync report: purchases vs trip gallons per jurisdiction."""
    quarter = _quarter(quarter)
    try:
        trips, fuel_entries = _load_quarter(user_id, quarter, vehicle_id)
        return build_sync_report(quarter, trips, fuel_entries).model_dump(mode="json")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        raise _server_error("api_discrepancies_error", exc, "Failed to detect discrepancies.") from exc


@app.post("/ifta/{quarter}/corrections")
def create_corrections(
    quarter: str,
    user_id: str = Query(..., min_length=1),
    vehicle_id: Optional[str] = Query(default=None),
) -> dict[str, Any]:
    """Create fuel-only trips for positive discrepancies, then re-detect."""
    quarter = _quarter(quarter)
    try:
        trips, fuel_entries = _load_quarter(user_id, quarter, vehicle_id)
        report = build_sync_report(quarter, trips, fuel_entries)
        context = SynthesisContext.from_store(trip_store, user_id, quarter, vehicle_id)
        result = synthesize_corrections(report.discrepancies, context)

        trips, fuel_entries = _load_quarter(user_id, quarter, vehicle_id)
        after = build_sync_report(quarter, trips, fuel_entries)
        return {
            "created": [trip.model_dump(mode="json") for trip in result.created],
            "errors": [failure.model_dump(mode="json") for failure in result.errors],
            "sync": after.model_dump(mode="json"),
        }
    except QuarterLockedError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        raise _server_error("api_corrections_error", exc, "Failed to create corrective records.") from exc


@app.get("/ifta/{quarter}/export")
def export_quarter(
    quarter: str,
    user_id: str = Query(..., min_length=1),
    vehicle_id: Optional[str] = Query(default=None),
    export_format: str = Query(default="csv", alias="format"),
    export_type: str = Query(default="summary"),
) -> Response:
    """Download the quarter report as csv, xml, json, txt or pdf."""
    quarter = _quarter(quarter)
    try:
        trips, fuel_entries = _load_quarter(user_id, quarter, vehicle_id)
        summary = _summary(quarter, trips, fuel_entries, vehicle_id)
        result = export_report(export_format, ExportData.from_summary(summary, trips), export_type)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        raise _server_error("api_export_error", exc, "Failed to export report.") from exc

    if not result.ok:
        raise HTTPException(status_code=422, detail=result.error)
    return Response(
        content=result.content,
        media_type=result.media_type,
        headers={"Content-Disposition": f'attachment; filename="{result.filename}"'},
    )


@app.get("/ifta/{quarter}/lock")
def quarter_lock_status(quarter: str, user_id: str = Query(..., min_length=1)) -> dict[str, Any]:
    quarter = _quarter(quarter)
    return {"quarter": quarter, "locked": trip_store.is_quarter_locked(user_id, quarter)}


@app.post("/ifta/{quarter}/lock")
def lock_quarter(quarter: str, user_id: str = Query(..., min_length=1)) -> dict[str, Any]:
    """Close the quarter for filing. Trip records can no longer change."""
    quarter = _quarter(quarter)
    trip_store.lock_quarter(user_id, quarter)
    return {"quarter": quarter, "locked": True}


@app.delete("/ifta/{quarter}/lock")
def unlock_quarter(quarter: str, user_id: str = Query(..., min_length=1)) -> dict[str, Any]:
    quarter = _quarter(quarter)
    trip_store.unlock_quarter(user_id, quarter)
    return {"quarter": quarter, "locked": False}


@app.get("/ifta/{quarter}/report")
def get_quarter_report(quarter: str, user_id: str = Query(..., min_length=1)) -> dict[str, Any]:
    """Saved report for the quarter."""
    quarter = _quarter(quarter)
    report = trip_store.get_report(user_id, quarter)
    if report is None:
        raise HTTPException(status_code=404, detail=f"No saved report for {quarter}")
    return report.model_dump(mode="json")


@app.put("/ifta/{quarter}/report")
def save_quarter_report(
    quarter: str,
    user_id: str = Query(..., min_length=1),
    payload: Optional[dict[str, Any]] = Body(default=None),
) -> dict[str, Any]:
    """Snapshot the quarter's current totals as a draft or submitted report.

    Submitting locks the quarter.
    """
    quarter = _quarter(quarter)
    try:
        status = ReportStatus(str((payload or {}).get("status") or ReportStatus.DRAFT.value).strip().lower())
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="status must be 'draft' or 'submitted'") from exc

    try:
        trips, fuel_entries = _load_quarter(user_id, quarter, None)
        summary = _summary(quarter, trips, fuel_entries, None)
        report = trip_store.save_report(user_id, QuarterReport.from_summary(summary, status))
        return report.model_dump(mode="json")
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:
        raise _server_error("api_report_error", exc, "Failed to save quarter report.") from exc


@app.post("/ifta/trips")
def create_trip(user_id: str = Query(..., min_length=1), payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    """Record a manual trip."""
    try:
        trip = TripRecord.model_validate(payload)
        return trip_store.create_trip_record(user_id, trip).model_dump(mode="json")
    except QuarterLockedError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.delete("/ifta/trips/{trip_id}")
def delete_trip(trip_id: str, user_id: str = Query(..., min_length=1)) -> dict[str, Any]:
    try:
        deleted = trip_store.delete_trip_record(user_id, trip_id)
    except QuarterLockedError as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    if not deleted:
        raise HTTPException(status_code=404, detail=f"Trip not found: {trip_id}")
    return {"id": trip_id, "deleted": True}


@app.post("/ifta/fuel-purchases")
def create_fuel_purchase(user_id: str = Query(..., min_length=1), payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    try:
        entry = FuelPurchaseEntry.model_validate(payload)
        return trip_store.add_fuel_purchase(user_id, entry).model_dump(mode="json")
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _persist_imported(user_id: str, records: list[TripRecord], result: SynthesisResult, label: str) -> None:
    for record in records:
        try:
            result.created.append(trip_store.create_trip_record(user_id, record))
        except QuarterLockedError as exc:
            result.errors.append(CorrectionFailure(jurisdiction=record.start_jurisdiction or "", message=str(exc)))
    logger.info(
        "api_import_complete | kind=%s | user_id=%s | created=%s | failed=%s",
        label,
        user_id,
        result.created_count,
        len(result.errors),
    )


@app.post("/ifta/import/loads")
def import_loads(user_id: str = Query(..., min_length=1), payload: list[dict[str, Any]] = Body(...)) -> dict[str, Any]:
    """Turn completed loads into trips. Loads already imported are skipped."""
    try:
        loads = [LoadRecord.model_validate(item) for item in payload]
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    result = SynthesisResult()
    records: list[TripRecord] = []
    for load in loads:
        try:
            record = trip_from_load(load)
        except ValueError as exc:
            result.errors.append(CorrectionFailure(jurisdiction="", message=str(exc)))
            continue
        existing = trip_store.list_trips_for_quarter(user_id, record.quarter)
        if any(trip.source_reference == load.id for trip in existing):
            logger.info("api_import_skip | load_id=%s | reason='already imported'", load.id)
            continue
        records.append(record)

    _persist_imported(user_id, records, result, "loads")
    return result.model_dump(mode="json")


@app.post("/ifta/import/state-mileage")
def import_state_mileage(user_id: str = Query(..., min_length=1), payload: dict[str, Any] = Body(...)) -> dict[str, Any]:
    """One same-state trip per state on a tracked trip."""
    try:
        tracked = MileageTrip.model_validate(payload)
        existing = trip_store.list_trips_for_quarter(user_id, quarter_for_date(tracked.start_date))
        records = trips_from_state_mileage(tracked, existing)
    except (ValueError, ValidationError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    result = SynthesisResult()
    _persist_imported(user_id, records, result, "state_mileage")
    return result.model_dump(mode="json")


async def _save_upload(upload: UploadFile, destination: Path) -> None:
    """Save an UploadFile to disk."""
    try:
        with destination.open("wb") as out_file:
            while True:
                chunk = await upload.read(1024 * 1024)
                if not chunk:
                    break
                out_file.write(chunk)
    finally:
        await upload.close()


@app.post("/ifta/reconcile-upload")
async def reconcile_upload(
    quarter: str = Form(...),
    trips_csv: UploadFile = File(...),
    fuel_csv: UploadFile = File(...),
    vehicle_id: Optional[str] = Form(default=None),
) -> dict[str, Any]:
    """Reconcile uploaded trip and fuel CSVs without writing to the store."""
    quarter = _quarter(quarter)
    with tempfile.TemporaryDirectory(prefix="ifta-upload-") as tmp_dir:
        tmp_path = Path(tmp_dir)
        trips_path = tmp_path / "trips.csv"
        fuel_path = tmp_path / "fuel.csv"
        try:
            await _save_upload(trips_csv, trips_path)
            await _save_upload(fuel_csv, fuel_path)
            trips = load_trips(str(trips_path), quarter)
            fuel_entries = load_fuel_purchases(str(fuel_path), quarter)
        except (FileNotFoundError, ValueError) as exc:
            raise HTTPException(status_code=400, detail=f"Failed to load CSV: {exc}") from exc

    try:
        summary = _summary(quarter, trips, fuel_entries, vehicle_id)
        if vehicle_id:
            trips = [trip for trip in trips if trip.vehicle_id == vehicle_id]
            fuel_entries = [entry for entry in fuel_entries if entry.vehicle_id == vehicle_id]
        report = build_sync_report(quarter, trips, fuel_entries)
    except Exception as exc:
        raise _server_error("api_upload_error", exc, "Failed to reconcile uploaded files.") from exc

    return {"summary": summary.model_dump(mode="json"), "sync": report.model_dump(mode="json")}


if __name__ == "__main__":
    setup_logging()
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run("api:app", host="0.0.0.0", port=port, reload=False)
