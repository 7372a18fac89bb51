"""
main.py - CLI orchestration for the IFTA reconciliation engine.

This module is orchestration-only:
1. load trips + fuel purchases (CSV files or the JSON store)
2. aggregate
3. detect discrepancies
4. synthesize corrections (only with --synthesize)
5. export (only with --export)
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from pathlib import Path
from typing import Any, Optional

import pandas as pd
from dotenv import load_dotenv
from pydantic import ValidationError

from aggregate import summarize_quarter
from detect import build_sync_report
from estimate import apply_tax_rates, load_rate_table
from export import export_report
from logging_config import get_logger, setup_logging
from models import (
    ExportData,
    ExportFormat,
    ExportType,
    FuelPurchaseEntry,
    IftaRate,
    QuarterSummary,
    SyncReport,
    TripRecord,
)
from normalize import (
    format_quarter,
    normalize_date,
    normalize_jurisdiction,
    normalize_quantity,
    parse_quarter,
    quarter_date_range,
    quarter_for_date,
)
from synthesize import SynthesisContext, synthesize_corrections
from trip_store import JsonTripStore, QuarterLockedError

logger = get_logger("ifta-recon")

TRIP_REQUIRED_COLUMNS = ["vehicle_id", "start_date", "start_jurisdiction", "end_jurisdiction", "total_miles"]
TRIP_OPTIONAL_COLUMNS = ["id", "quarter", "end_date", "driver_id", "gallons", "fuel_cost", "source", "notes"]
FUEL_REQUIRED_COLUMNS = ["vehicle_id", "date", "jurisdiction", "gallons"]
FUEL_OPTIONAL_COLUMNS = ["id", "total_amount"]


def _configure_output_symbols() -> tuple[str, str]:
    """Configure stdout encoding and return safe line/fail symbols."""
    try:
        if hasattr(sys.stdout, "reconfigure"):
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")
    except (AttributeError, ValueError, OSError):
        pass

    try:
        "═✗".encode(sys.stdout.encoding or "utf-8")
        return "═", "✗"
    except (LookupError, UnicodeEncodeError):
        return "=", "X"


BOX_CHAR, FAIL_CHAR = _configure_output_symbols()


def _read_csv(csv_path: str, label: str, required: list[str], optional: list[str]) -> pd.DataFrame:
    """Read a CSV, normalize column names and check required columns."""
    if csv_path is None or not str(csv_path).strip():
        raise ValueError(f"{label} CSV path cannot be empty")

    csv_path = str(csv_path).strip()
    if not os.path.exists(csv_path):
        raise FileNotFoundError(f"{label} CSV not found: {csv_path}")

    try:
        df = pd.read_csv(csv_path, encoding="utf-8-sig", dtype=str, keep_default_na=False)
    except UnicodeDecodeError:
        logger.warning(
            "csv_encoding_warning | path=%s | reason='utf-8 decode failed' | fallback=latin-1",
            csv_path,
        )
        df = pd.read_csv(csv_path, encoding="latin-1", dtype=str, keep_default_na=False)
    except Exception as exc:
        raise ValueError(f"Failed to read {label} CSV '{csv_path}': {exc}") from exc

    df.columns = [str(col).strip().lower() for col in df.columns]
    df = df[~(df == "").all(axis=1)].copy()

    missing = [column for column in required if column not in df.columns]
    if missing:
        raise ValueError(
            f"{label} CSV missing required columns: {missing}\n"
            f"Required: {required}\n"
            f"Found: {list(df.columns)}"
        )
    for column in optional:
        if column not in df.columns:
            df[column] = ""

    logger.info("csv_loaded | kind=%s | path=%s | rows=%s", label.lower(), csv_path, len(df))
    return df


def load_trips(csv_path: str, quarter: str) -> list[TripRecord]:
    """Load trips for `quarter` from a CSV file.

    Rows without a quarter column value are assigned the quarter of their
    start date. Rows that cannot be parsed are skipped with a warning.
    """
    quarter = format_quarter(*parse_quarter(quarter))
    df = _read_csv(csv_path, "Trips", TRIP_REQUIRED_COLUMNS, TRIP_OPTIONAL_COLUMNS)

    trips: list[TripRecord] = []
    invalid = 0
    for index, row in df.iterrows():
        start_date = normalize_date(row["start_date"])
        end_date = normalize_date(row["end_date"]) or start_date
        try:
            row_quarter = str(row["quarter"]).strip() or quarter_for_date(start_date)
            trip = TripRecord(
                id=str(row["id"]).strip() or None,
                quarter=row_quarter,
                vehicle_id=row["vehicle_id"],
                driver_id=str(row["driver_id"]).strip() or None,
                start_date=start_date,
                end_date=end_date,
                start_jurisdiction=normalize_jurisdiction(row["start_jurisdiction"]),
                end_jurisdiction=normalize_jurisdiction(row["end_jurisdiction"]),
                total_miles=normalize_quantity(row["total_miles"]),
                gallons=normalize_quantity(row["gallons"]),
                fuel_cost=normalize_quantity(row["fuel_cost"]),
                source=str(row["source"]).strip().lower() or "manual",
                notes=str(row["notes"]),
            )
        except (ValidationError, ValueError) as exc:
            invalid += 1
            logger.warning("csv_trip_row_invalid | row=%s | error=%s | fallback='skip row'", index + 2, exc)
            continue
        if trip.quarter == quarter:
            trips.append(trip)

    if invalid:
        logger.warning("csv_trip_warning | invalid_rows=%s", invalid)
    logger.info("trips_loaded | quarter=%s | in_quarter=%s | total_rows=%s", quarter, len(trips), len(df))
    return trips


def load_fuel_purchases(csv_path: str, quarter: str) -> list[FuelPurchaseEntry]:
    """Load fuel purchases dated inside `quarter` from a CSV file."""
    first_day, last_day = quarter_date_range(quarter)
    df = _read_csv(csv_path, "Fuel", FUEL_REQUIRED_COLUMNS, FUEL_OPTIONAL_COLUMNS)

    entries: list[FuelPurchaseEntry] = []
    invalid = 0
    for index, row in df.iterrows():
        try:
            entry = FuelPurchaseEntry(
                id=str(row["id"]).strip() or None,
                vehicle_id=str(row["vehicle_id"]).strip(),
                date=normalize_date(row["date"]),
                jurisdiction=row["jurisdiction"],
                gallons=normalize_quantity(row["gallons"]),
                total_amount=normalize_quantity(row["total_amount"]),
            )
        except (ValidationError, ValueError) as exc:
            invalid += 1
            logger.warning("csv_fuel_row_invalid | row=%s | error=%s | fallback='skip row'", index + 2, exc)
            continue
        if first_day <= entry.date <= last_day:
            entries.append(entry)

    if invalid:
        logger.warning("csv_fuel_warning | invalid_rows=%s", invalid)
    logger.info("fuel_loaded | quarter=%s | in_quarter=%s | total_rows=%s", quarter, len(entries), len(df))
    return entries


def run_reconciliation(
    quarter: str,
    trips: list[TripRecord],
    fuel_entries: list[FuelPurchaseEntry],
    vehicle_id: Optional[str] = None,
    rates: Optional[list[IftaRate]] = None,
) -> tuple[QuarterSummary, SyncReport]:
    """Aggregate and detect for one quarter, logging stage timings."""
    pipeline_start = time.time()

    stage_start = time.time()
    logger.info("pipeline_stage | stage=1/2 | name=aggregate | status=start")
    summary = summarize_quarter(quarter, trips, fuel_entries, vehicle_id=vehicle_id)
    if rates:
        apply_tax_rates(summary.jurisdictions, rates)
    aggregate_time = time.time() - stage_start
    logger.info(
        "pipeline_stage | stage=1/2 | name=aggregate | status=complete | jurisdictions=%s | mpg=%.2f | duration_s=%.2f",
        len(summary.jurisdictions),
        summary.fleet_mpg,
        aggregate_time,
    )

    stage_start = time.time()
    logger.info("pipeline_stage | stage=2/2 | name=detect | status=start")
    if vehicle_id:
        trips = [trip for trip in trips if trip.vehicle_id == vehicle_id]
        fuel_entries = [entry for entry in fuel_entries if entry.vehicle_id == vehicle_id]
    report = build_sync_report(quarter, trips, fuel_entries)
    detect_time = time.time() - stage_start

    logger.info(
        "pipeline_complete | total_duration_s=%.2f | aggregate_s=%.2f | detect_s=%.2f | discrepancies=%s | balanced=%s",
        time.time() - pipeline_start,
        aggregate_time,
        detect_time,
        len(report.discrepancies),
        report.is_balanced,
    )
    return summary, report


def _print_summary(summary: QuarterSummary, report: SyncReport) -> None:
    print(f"\n{BOX_CHAR * 72}")
    print(f"  IFTA SUMMARY - {summary.quarter} ({summary.scope_label})")
    print(f"{BOX_CHAR * 72}")
    mpg_note = " (fallback)" if summary.mpg_fallback_used else ""
    print(f"  Trips: {summary.trip_count}   Fuel purchases: {summary.fuel_entry_count}")
    print(f"  Total miles: {summary.total_miles:,.1f}   Fuel purchased: {summary.total_gallons:,.3f} gal")
    print(f"  Fleet MPG: {summary.fleet_mpg:.2f}{mpg_note}")
    print()
    print(f"  {'Jur':<5} {'Miles':>12} {'Paid gal':>12} {'Taxable gal':>12} {'Net gal':>12}")
    print(f"  {'─' * 5} {'─' * 12} {'─' * 12} {'─' * 12} {'─' * 12}")
    for item in summary.jurisdictions:
        print(
            f"  {item.jurisdiction:<5} {item.total_miles:>12,.1f} {item.tax_paid_gallons:>12,.3f} "
            f"{item.taxable_gallons:>12,.3f} {item.net_taxable_gallons:>12,.3f}"
        )

    print()
    status = "balanced" if report.is_balanced else f"net difference {report.net_difference:+.3f} gal"
    print(f"  Fuel sync: {status}")
    for item in report.discrepancies:
        action = "needs fuel-only trip" if item.needs_correction else "review trip gallons"
        print(
            f"    {FAIL_CHAR} {item.jurisdiction:<4} purchases {item.gallons_from_purchases:,.3f}  "
            f"trips {item.gallons_from_trips:,.3f}  diff {item.discrepancy:+,.3f}  ({action})"
        )
    print(f"{BOX_CHAR * 72}")


def _report_json(summary: QuarterSummary, report: SyncReport, extra: dict[str, Any]) -> dict[str, Any]:
    payload = {
        "summary": summary.model_dump(mode="json"),
        "sync": report.model_dump(mode="json"),
    }
    payload.update(extra)
    return payload


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point for the IFTA reconciliation engine."""
    load_dotenv()

    parser = argparse.ArgumentParser(
        prog="ifta-recon",
        description=(
            "IFTA Reconciliation Engine\n"
            "Per-jurisdiction miles and gallons for a quarter, fuel/trip "
            "discrepancies, and report exports."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  %(prog)s --quarter 2024-Q1 --trips trips.csv --fuel fuel.csv\n"
            "  %(prog)s --quarter 2024-Q1 --user u1 --synthesize\n"
            "  %(prog)s --quarter 2024-Q1 --user u1 --export pdf --output reports/\n"
        ),
    )
    parser.add_argument("--quarter", "-q", required=True, help="IFTA quarter, e.g. 2024-Q1")
    parser.add_argument("--trips", "-t", help="Trips CSV file")
    parser.add_argument("--fuel", "-f", help="Fuel purchases CSV file")
    parser.add_argument("--user", "-u", help="Read from the JSON store for this user id instead of CSV files")
    parser.add_argument("--vehicle", help="Limit to one vehicle id")
    parser.add_argument(
        "--rates",
        default=os.getenv("IFTA_RATES_FILE"),
        help="JSON tax rate table; adds tax rate and tax due columns (env: IFTA_RATES_FILE)",
    )
    parser.add_argument(
        "--synthesize",
        action="store_true",
        help="Create fuel-only trips for positive discrepancies (writes to the store with --user)",
    )
    parser.add_argument("--export", choices=[item.value for item in ExportFormat], help="Write a report file")
    parser.add_argument(
        "--export-type",
        choices=[item.value for item in ExportType],
        default=ExportType.SUMMARY.value,
        help="Summary (per jurisdiction) or detailed (per trip) export",
    )
    parser.add_argument("--output", "-o", default=".", help="Directory for exported files")
    parser.add_argument("--json", action="store_true", help="Print results as JSON instead of a table")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose (DEBUG-level) logging")
    parser.add_argument(
        "--log-json",
        action="store_true",
        help="Output logs as JSON lines (for production/log aggregation)",
    )

    args = parser.parse_args(argv)
    setup_logging(
        level=logging.DEBUG if args.verbose else logging.INFO,
        json_format=args.log_json,
    )

    csv_mode = bool(args.trips or args.fuel)
    if csv_mode and args.user:
        parser.error("Use --trips/--fuel OR --user, not both")
    if csv_mode and not (args.trips and args.fuel):
        parser.error("--trips and --fuel must be given together")
    if not csv_mode and not args.user:
        parser.error("Provide --trips and --fuel, or --user")

    try:
        quarter = format_quarter(*parse_quarter(args.quarter))
        store: Optional[JsonTripStore] = None
        if csv_mode:
            logger.info("cli_mode | mode=csv | trips=%s | fuel=%s", args.trips, args.fuel)
            trips = load_trips(args.trips, quarter)
            fuel_entries = load_fuel_purchases(args.fuel, quarter)
        else:
            store = JsonTripStore()
            logger.info("cli_mode | mode=store | path=%s | user_id=%s", store.path, args.user)
            trips = store.list_trips_for_quarter(args.user, quarter, args.vehicle)
            fuel_entries = store.list_fuel_purchases_for_quarter(args.user, quarter, args.vehicle)

        rates = load_rate_table(args.rates) if args.rates else None
        summary, report = run_reconciliation(quarter, trips, fuel_entries, args.vehicle, rates)
        extra: dict[str, Any] = {}

        if args.synthesize:
            if store is not None:
                context = SynthesisContext.from_store(store, args.user, quarter, args.vehicle)
            else:
                # CSV inputs are read-only; corrective trips are kept in memory.
                pending: list[TripRecord] = []

                def _create(trip: TripRecord) -> TripRecord:
                    created = trip.model_copy(update={"id": f"corr_{len(pending) + 1:03d}"})
                    pending.append(created)
                    return created

                context = SynthesisContext(
                    user_id="csv",
                    quarter=quarter,
                    fuel_entries=[
                        entry for entry in fuel_entries if not args.vehicle or entry.vehicle_id == args.vehicle
                    ],
                    create_trip=_create,
                )
            result = synthesize_corrections(report.discrepancies, context)
            extra["synthesis"] = result.model_dump(mode="json")

            # Full recompute with the new records.
            if store is not None:
                trips = store.list_trips_for_quarter(args.user, quarter, args.vehicle)
            else:
                trips = trips + result.created
            summary, report = run_reconciliation(quarter, trips, fuel_entries, args.vehicle, rates)

        if args.export:
            scoped_trips = [trip for trip in trips if not args.vehicle or trip.vehicle_id == args.vehicle]
            exported = export_report(args.export, ExportData.from_summary(summary, scoped_trips), args.export_type)
            if not exported.ok:
                raise ValueError(exported.error)
            target = Path(args.output) / exported.filename
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(exported.content)
            extra["export"] = {"filename": exported.filename, "path": str(target), "bytes": len(exported.content)}
            logger.info("cli_export_written | path=%s", target)

        if args.json:
            print(json.dumps(_report_json(summary, report, extra), indent=2))
        else:
            _print_summary(summary, report)
            if "synthesis" in extra:
                created = extra["synthesis"]["created"]
                errors = extra["synthesis"]["errors"]
                print(f"  Corrections: {len(created)} created, {len(errors)} failed")
                for failure in errors:
                    print(f"    {FAIL_CHAR} {failure['jurisdiction']}: {failure['message']}")
            if "export" in extra:
                print(f"  Exported: {extra['export']['path']}")
    except FileNotFoundError as exc:
        logger.error("cli_error | type=FileNotFoundError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except QuarterLockedError as exc:
        logger.error("cli_error | type=QuarterLockedError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except ValueError as exc:
        logger.error("cli_error | type=ValueError | error=%s", exc)
        print(f"\nError: {exc}")
        raise SystemExit(1) from exc
    except KeyboardInterrupt:
        print("\nInterrupted.")
        raise SystemExit(130)
    except Exception as exc:
        logger.error(
            "cli_error | type=%s | error=%s",
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        print(f"\nUnexpected error: {exc}")
        print("Run with --verbose for full traceback.")
        raise SystemExit(1) from exc


if __name__ == "__main__":
    main()
