"""
models.py - Data Models for the IFTA Reconciliation Engine

This file defines ALL data structures used across the engine.
Every module communicates exclusively through these models:

    trip_store.py  ->  list[TripRecord], list[FuelPurchaseEntry]
    aggregate.py   ->  dict[str, JurisdictionTotal], QuarterSummary
    detect.py      ->  list[Discrepancy], SyncReport
    synthesize.py  ->  SynthesisResult
    export.py      ->  ExportResult (uses ExportData as input)

Design principles:
1. Trips and fuel purchases are entered independently; nothing here
   assumes they agree with each other
2. Provenance is an explicit closed enum, never inferred from which
   foreign keys happen to be set
3. Derived models (totals, discrepancies) are recomputed on every call
   and never persisted
4. All fields have descriptions - they double as API documentation

Schema relationships:
    TripSource        --used by--> TripRecord.source
    JurisdictionTotal --used by--> QuarterSummary.jurisdictions, ExportData
    Discrepancy       --used by--> SyncReport, synthesize_corrections()
    CorrectionFailure --used by--> SynthesisResult.errors
"""

from __future__ import annotations

import datetime as dt
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from normalize import normalize_jurisdiction, parse_quarter


class TripSource(str, Enum):
    """Where a trip record came from."""

    # Per-state rows produced by the state mileage tracker importer.
    MILEAGE_TRACKER = "mileage_tracker"

    # One record per completed dispatch load.
    LOAD = "load"

    # Typed in by the user.
    MANUAL = "manual"

    # Synthesized by the corrective-record synthesizer. Always zero miles
    # and a single jurisdiction; only the gallons matter.
    FUEL_ONLY = "fuel_only"


class ExportFormat(str, Enum):
    """Output formats supported by the report exporter."""

    CSV = "csv"
    XML = "xml"
    JSON = "json"
    TXT = "txt"
    PDF = "pdf"


class ExportType(str, Enum):
    """Summary exports list jurisdictions; detailed exports list trips."""

    SUMMARY = "summary"
    DETAILED = "detailed"


class TripRecord(BaseModel):
    """One trip entered for an IFTA quarter.

    A trip moves a vehicle from a start jurisdiction to an end jurisdiction.
    Same-state trips carry the same code on both ends. Either code may be
    missing on legacy or half-entered rows; such trips still appear in
    detailed exports but contribute nothing to jurisdiction totals.
    """

    id: Optional[str] = Field(
        default=None,
        description="Store-assigned identifier. None until the record is persisted.",
    )
    user_id: Optional[str] = Field(
        default=None,
        description="Owner of the record. Set by the store on create.",
    )
    quarter: str = Field(
        ...,
        description="IFTA quarter in YYYY-QN form, e.g. '2024-Q1'.",
    )
    vehicle_id: str = Field(
        ...,
        description="Vehicle identifier (unit number or plate).",
    )
    driver_id: Optional[str] = Field(
        default=None,
        description="Driver identifier, if known.",
    )
    start_date: dt.date = Field(..., description="Date the trip started.")
    end_date: dt.date = Field(..., description="Date the trip ended.")
    start_jurisdiction: Optional[str] = Field(
        default=None,
        description="Two-letter jurisdiction code where the trip started, e.g. 'CA'.",
    )
    end_jurisdiction: Optional[str] = Field(
        default=None,
        description=(
            "Two-letter jurisdiction code where the trip ended. Equal to "
            "start_jurisdiction for same-state trips."
        ),
    )
    total_miles: float = Field(
        default=0.0,
        ge=0,
        description="Miles driven on the trip.",
    )
    gallons: float = Field(
        default=0.0,
        ge=0,
        description=(
            "Gallons the driver attributed to this trip. Compared against "
            "fuel purchases by the discrepancy detector."
        ),
    )
    fuel_cost: float = Field(
        default=0.0,
        ge=0,
        description="Cost of the fuel attributed to the trip, in dollars.",
    )
    source: TripSource = Field(
        default=TripSource.MANUAL,
        description="Provenance of the record.",
    )
    source_reference: Optional[str] = Field(
        default=None,
        description=(
            "Identifier of the originating load or mileage-tracker trip, "
            "used to avoid importing the same source twice."
        ),
    )
    notes: str = Field(default="", description="Free-text notes.")

    @field_validator("quarter", mode="before")
    @classmethod
    def _validate_quarter(cls, value: object) -> str:
        year, number = parse_quarter(value)
        return f"{year}-Q{number}"

    @field_validator("start_jurisdiction", "end_jurisdiction", mode="before")
    @classmethod
    def _normalize_codes(cls, value: object) -> Optional[str]:
        return normalize_jurisdiction(value)

    @field_validator("vehicle_id", mode="before")
    @classmethod
    def _require_vehicle(cls, value: object) -> str:
        text = str(value or "").strip()
        if not text:
            raise ValueError("vehicle_id is required")
        return text

    @model_validator(mode="after")
    def _check_fuel_only_shape(self) -> "TripRecord":
        if self.source == TripSource.FUEL_ONLY:
            if self.total_miles != 0:
                raise ValueError("fuel-only records must have zero miles")
            if self.start_jurisdiction != self.end_jurisdiction:
                raise ValueError("fuel-only records must start and end in one jurisdiction")
        return self

    @property
    def is_fuel_only(self) -> bool:
        """Whether this record was synthesized to absorb unmatched fuel."""
        return self.source == TripSource.FUEL_ONLY

    @property
    def has_jurisdictions(self) -> bool:
        """Whether both jurisdiction codes are present."""
        return bool(self.start_jurisdiction) and bool(self.end_jurisdiction)

    @property
    def crosses_jurisdictions(self) -> bool:
        """Whether the trip starts and ends in different jurisdictions."""
        return self.has_jurisdictions and self.start_jurisdiction != self.end_jurisdiction

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "id": "trip_0001",
                    "quarter": "2024-Q1",
                    "vehicle_id": "TRK-12",
                    "driver_id": "DRV-3",
                    "start_date": "2024-01-08",
                    "end_date": "2024-01-09",
                    "start_jurisdiction": "CA",
                    "end_jurisdiction": "NV",
                    "total_miles": 200.0,
                    "gallons": 20.0,
                    "fuel_cost": 84.50,
                    "source": "load",
                    "source_reference": "load_481",
                    "notes": "Imported from Load #481: Fresno, CA to Reno, NV",
                }
            ]
        }
    )


class FuelPurchaseEntry(BaseModel):
    """One fuel purchase. Read-only to the engine."""

    id: Optional[str] = Field(default=None, description="Store-assigned identifier.")
    user_id: Optional[str] = Field(default=None, description="Owner of the record.")
    vehicle_id: str = Field(..., description="Vehicle that was fueled.")
    date: dt.date = Field(..., description="Purchase date.")
    jurisdiction: str = Field(
        ...,
        description="Two-letter code of the jurisdiction where fuel was bought (tax paid).",
    )
    gallons: float = Field(..., ge=0, description="Gallons purchased.")
    total_amount: float = Field(default=0.0, ge=0, description="Amount paid, in dollars.")

    @field_validator("jurisdiction", mode="before")
    @classmethod
    def _normalize_code(cls, value: object) -> str:
        code = normalize_jurisdiction(value)
        if code is None:
            raise ValueError("jurisdiction is required for a fuel purchase")
        return code

    model_config = ConfigDict(
        json_schema_extra={
            "examples": [
                {
                    "id": "fuel_0007",
                    "vehicle_id": "TRK-12",
                    "date": "2024-01-08",
                    "jurisdiction": "CA",
                    "gallons": 15.0,
                    "total_amount": 72.35,
                }
            ]
        }
    )


class IftaRate(BaseModel):
    """Per-jurisdiction fuel tax rate, in dollars per gallon."""

    jurisdiction: str
    rate: float = Field(default=0.0, ge=0)
    surcharge: float = Field(default=0.0, ge=0)

    @field_validator("jurisdiction", mode="before")
    @classmethod
    def _normalize_code(cls, value: object) -> str:
        code = normalize_jurisdiction(value)
        if code is None:
            raise ValueError("jurisdiction is required for a tax rate")
        return code

    @property
    def total_rate(self) -> float:
        return self.rate + self.surcharge


class JurisdictionTotal(BaseModel):
    """Derived per-jurisdiction totals for one quarter.

    Built fresh on every aggregation; never stored.
    """

    jurisdiction: str = Field(..., description="Two-letter jurisdiction code.")
    total_miles: float = Field(default=0.0, description="Miles allocated to the jurisdiction.")
    taxable_miles: float = Field(
        default=0.0,
        description="Taxable miles. Equal to total miles; no exemptions are modelled.",
    )
    tax_paid_gallons: float = Field(
        default=0.0,
        description="Gallons purchased in the jurisdiction (tax already paid at the pump).",
    )
    taxable_gallons: float = Field(
        default=0.0,
        description="Gallons consumed in the jurisdiction, estimated as taxable miles / fleet MPG.",
    )
    net_taxable_gallons: float = Field(
        default=0.0,
        description="taxable_gallons - tax_paid_gallons. Negative means a credit.",
    )
    tax_rate: float = Field(default=0.0, description="Total rate applied, when known.")
    tax_due: float = Field(default=0.0, description="net_taxable_gallons * tax_rate.")


class Discrepancy(BaseModel):
    """Difference between purchased and trip-recorded gallons in one jurisdiction."""

    jurisdiction: str
    gallons_from_purchases: float = 0.0
    gallons_from_trips: float = 0.0
    discrepancy: float = Field(
        default=0.0,
        description="gallons_from_purchases - gallons_from_trips.",
    )

    @property
    def needs_correction(self) -> bool:
        """Fuel was bought that no trip accounts for."""
        return self.discrepancy > 0

    @property
    def needs_review(self) -> bool:
        """Trips claim more fuel than was bought; left for manual review."""
        return self.discrepancy < 0


class SyncReport(BaseModel):
    """Quarter-level view of how well trips and fuel purchases agree."""

    quarter: str
    discrepancies: list[Discrepancy] = Field(default_factory=list)
    total_fuel_gallons: float = 0.0
    total_trip_gallons: float = 0.0
    net_difference: float = 0.0
    is_balanced: bool = True


class CorrectionFailure(BaseModel):
    """A jurisdiction whose corrective record could not be written."""

    jurisdiction: str
    message: str


class SynthesisResult(BaseModel):
    """Outcome of one synthesis run. Partial success is normal."""

    created: list[TripRecord] = Field(default_factory=list)
    errors: list[CorrectionFailure] = Field(default_factory=list)

    @property
    def created_count(self) -> int:
        return len(self.created)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


class QuarterSummary(BaseModel):
    """Aggregated view of one quarter, sorted by jurisdiction."""

    quarter: str
    scope_label: str = "all_vehicles"
    vehicle_id: Optional[str] = None
    total_miles: float = 0.0
    total_gallons: float = Field(
        default=0.0,
        description="Gallons purchased across all jurisdictions.",
    )
    fleet_mpg: float = 0.0
    mpg_fallback_used: bool = False
    jurisdictions: list[JurisdictionTotal] = Field(default_factory=list)
    trip_count: int = 0
    fuel_entry_count: int = 0


class ReportStatus(str, Enum):
    """Filing state of a saved quarter report."""

    DRAFT = "draft"

    # Filed with the base jurisdiction. Saving a report in this state
    # locks the quarter.
    SUBMITTED = "submitted"


class QuarterReport(BaseModel):
    """Saved per-user snapshot of a quarter's totals.

    One report exists per user and quarter; saving again replaces the
    figures and keeps the original id and creation time.
    """

    id: Optional[str] = Field(default=None, description="Store-assigned identifier.")
    user_id: Optional[str] = Field(default=None, description="Owner of the report.")
    quarter: str = Field(..., description="IFTA quarter in YYYY-QN form.")
    year: int = Field(default=0, description="Calendar year taken from the quarter.")
    total_miles: float = Field(default=0.0, ge=0)
    total_gallons: float = Field(default=0.0, ge=0, description="Gallons purchased in the quarter.")
    total_tax: float = Field(default=0.0, description="Sum of tax due across jurisdictions.")
    status: ReportStatus = Field(default=ReportStatus.DRAFT)
    submitted_at: Optional[str] = Field(default=None, description="UTC timestamp of submission.")
    jurisdictions: list[JurisdictionTotal] = Field(default_factory=list)
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @field_validator("quarter", mode="before")
    @classmethod
    def _validate_quarter(cls, value: object) -> str:
        year, number = parse_quarter(value)
        return f"{year}-Q{number}"

    @model_validator(mode="after")
    def _fill_year(self) -> "QuarterReport":
        self.year = parse_quarter(self.quarter)[0]
        return self

    @property
    def is_submitted(self) -> bool:
        return self.status == ReportStatus.SUBMITTED

    @classmethod
    def from_summary(
        cls,
        summary: QuarterSummary,
        status: ReportStatus = ReportStatus.DRAFT,
    ) -> "QuarterReport":
        return cls(
            quarter=summary.quarter,
            total_miles=summary.total_miles,
            total_gallons=summary.total_gallons,
            total_tax=sum(item.tax_due for item in summary.jurisdictions),
            status=status,
            jurisdictions=summary.jurisdictions,
        )


class ExportData(BaseModel):
    """Everything the report exporter needs to render one file."""

    quarter: str
    scope_label: str = "all_vehicles"
    trips: list[TripRecord] = Field(default_factory=list)
    jurisdictions: list[JurisdictionTotal] = Field(default_factory=list)
    fleet_mpg: float = 0.0
    total_fuel_gallons: float = 0.0
    fuel_entry_count: int = 0

    @classmethod
    def from_summary(cls, summary: QuarterSummary, trips: list[TripRecord]) -> "ExportData":
        return cls(
            quarter=summary.quarter,
            scope_label=summary.scope_label,
            trips=trips,
            jurisdictions=summary.jurisdictions,
            fleet_mpg=summary.fleet_mpg,
            total_fuel_gallons=summary.total_gallons,
            fuel_entry_count=summary.fuel_entry_count,
        )


class ExportResult(BaseModel):
    """Rendered export. On failure `error` is set and content is empty."""

    format: ExportFormat
    export_type: ExportType = ExportType.SUMMARY
    filename: str
    media_type: str
    content: bytes = b""
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class LoadRecord(BaseModel):
    """A completed dispatch load, as handed to the load importer."""

    id: str
    load_number: str = ""
    vehicle_id: Optional[str] = None
    driver_id: Optional[str] = None
    origin: str = Field(default="", description="Origin in 'City, ST' form.")
    destination: str = Field(default="", description="Destination in 'City, ST' form.")
    distance: float = Field(default=0.0, ge=0, description="Loaded miles.")
    pickup_date: Optional[dt.date] = None
    delivery_date: Optional[dt.date] = None


class StateMileage(BaseModel):
    """Miles driven in one state during a tracked trip."""

    state: str
    state_name: str = ""
    miles: float = Field(default=0.0, ge=0)

    @field_validator("state", mode="before")
    @classmethod
    def _normalize_code(cls, value: object) -> str:
        code = normalize_jurisdiction(value)
        if code is None:
            raise ValueError("state is required")
        return code


class MileageTrip(BaseModel):
    """A trip recorded by the state mileage tracker."""

    id: str
    vehicle_id: str
    start_date: dt.date
    end_date: Optional[dt.date] = None
    states: list[StateMileage] = Field(default_factory=list)
