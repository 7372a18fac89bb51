"""
export.py - IFTA report rendering.

This module converts aggregated quarter data (`ExportData`) into
downloadable files:
- csv   delimited rows via pandas
- xml   element tree (<iftaSummary> / <iftaData>)
- json  attribute document for other systems
- txt   fixed-width plain text for printing or email
- pdf   printable report via reportlab

Display rules shared by every format:
- miles 1 decimal, gallons 3 decimals, currency 2 decimals, MPG 2 decimals
- purchased-gallon totals in the PDF summary box are whole numbers
- the TOTAL row is the sum of the rounded values shown above it, so a
  reader adding up the column by hand gets the printed total

Rendering errors never propagate; they come back on `ExportResult.error`.
"""

from __future__ import annotations

import io
import json
import xml.etree.ElementTree as ET
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable
from xml.dom import minidom

import pandas as pd
from reportlab.lib import colors
from reportlab.lib.pagesizes import landscape, letter
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from logging_config import get_logger
from models import (
    ExportData,
    ExportFormat,
    ExportResult,
    ExportType,
    JurisdictionTotal,
    TripRecord,
)
from normalize import quarter_slug

logger = get_logger(__name__)

FILENAME_PREFIXES: dict[ExportType, str] = {
    ExportType.SUMMARY: "ifta_summary",
    ExportType.DETAILED: "ifta_detailed",
}

MEDIA_TYPES: dict[ExportFormat, str] = {
    ExportFormat.CSV: "text/csv",
    ExportFormat.XML: "application/xml",
    ExportFormat.JSON: "application/json",
    ExportFormat.TXT: "text/plain",
    ExportFormat.PDF: "application/pdf",
}

ERROR_MESSAGES: dict[ExportFormat, str] = {
    ExportFormat.CSV: "Could not generate the CSV export.",
    ExportFormat.XML: "Could not generate the XML export.",
    ExportFormat.JSON: "Could not generate the JSON export.",
    ExportFormat.TXT: "Could not generate the text report.",
    ExportFormat.PDF: "Could not generate the PDF report.",
}

REPORT_TITLE = "IFTA Quarterly Fuel Tax Report"
TOTAL_LABEL = "TOTAL"

MILES_PLACES = 1
GALLON_PLACES = 3
CURRENCY_PLACES = 2
MPG_PLACES = 2

SUMMARY_COLUMNS: list[tuple[str, str, int]] = [
    # (header, JurisdictionTotal attribute, decimal places)
    ("Total Miles", "total_miles", MILES_PLACES),
    ("Taxable Miles", "taxable_miles", MILES_PLACES),
    ("Tax Paid Gallons", "tax_paid_gallons", GALLON_PLACES),
    ("Taxable Gallons", "taxable_gallons", GALLON_PLACES),
    ("Net Taxable Gallons", "net_taxable_gallons", GALLON_PLACES),
]
TAX_COLUMNS: list[tuple[str, str, int]] = [
    ("Tax Rate", "tax_rate", GALLON_PLACES),
    ("Tax Due", "tax_due", CURRENCY_PLACES),
]
DETAILED_NUMERIC_COLUMNS: list[tuple[str, str, int]] = [
    ("Miles", "total_miles", MILES_PLACES),
    ("Gallons", "gallons", GALLON_PLACES),
    ("Fuel Cost", "fuel_cost", CURRENCY_PLACES),
]


def fmt(value: float, places: int) -> str:
    """Fixed-point display string, e.g. fmt(12.34567, 3) -> '12.346'.

    Values that round to zero never show a sign: fmt(-0.0001, 3) -> '0.000'.
    """
    text = f"{value:.{places}f}"
    if text.startswith("-") and float(text) == 0:
        return text[1:]
    return text


def build_export_filename(prefix: str, quarter: str, scope: str, extension: str) -> str:
    """`ifta_summary`, `2024-Q1`, `all_vehicles`, `csv` -> ifta_summary_2024_Q1_all_vehicles.csv"""
    return f"{prefix}_{quarter_slug(quarter)}_{scope}.{extension.lstrip('.')}"


def _sum_displayed(values: list[str], places: int) -> str:
    total = sum((Decimal(value) for value in values), Decimal(0))
    return fmt(float(total), places)


def _has_tax_rates(jurisdictions: list[JurisdictionTotal]) -> bool:
    return any(item.tax_rate > 0 for item in jurisdictions)


# -- table builders ------------------------------------------------------------


def summary_table(data: ExportData) -> tuple[list[str], list[list[str]], list[str]]:
    """Header, jurisdiction rows and TOTAL row as display strings."""
    columns = list(SUMMARY_COLUMNS)
    if _has_tax_rates(data.jurisdictions):
        columns += TAX_COLUMNS

    header = ["Jurisdiction"] + [name for name, _, _ in columns]
    rows: list[list[str]] = []
    for item in sorted(data.jurisdictions, key=lambda total: total.jurisdiction):
        rows.append([item.jurisdiction] + [fmt(getattr(item, attr), places) for _, attr, places in columns])

    totals = [TOTAL_LABEL]
    for index, (name, _, places) in enumerate(columns, start=1):
        if name == "Tax Rate":
            totals.append("")
            continue
        totals.append(_sum_displayed([row[index] for row in rows], places))
    return header, rows, totals


def detailed_table(data: ExportData) -> tuple[list[str], list[list[str]], list[str]]:
    """Header, one row per trip and TOTAL row as display strings."""
    header = [
        "Trip ID",
        "Start Date",
        "End Date",
        "Vehicle ID",
        "Driver ID",
        "Start Jurisdiction",
        "End Jurisdiction",
        "Miles",
        "Gallons",
        "Fuel Cost",
        "Source",
        "Notes",
    ]
    rows: list[list[str]] = []
    for trip in data.trips:
        rows.append(
            [
                trip.id or "",
                trip.start_date.isoformat(),
                trip.end_date.isoformat(),
                trip.vehicle_id,
                trip.driver_id or "",
                trip.start_jurisdiction or "",
                trip.end_jurisdiction or "",
                fmt(trip.total_miles, MILES_PLACES),
                fmt(trip.gallons, GALLON_PLACES),
                fmt(trip.fuel_cost, CURRENCY_PLACES),
                trip.source.value,
                trip.notes,
            ]
        )

    totals = [TOTAL_LABEL] + [""] * 6
    for offset, (_, _, places) in enumerate(DETAILED_NUMERIC_COLUMNS):
        totals.append(_sum_displayed([row[7 + offset] for row in rows], places))
    totals += ["", ""]
    return header, rows, totals


def _table_for(data: ExportData, export_type: ExportType) -> tuple[list[str], list[list[str]], list[str]]:
    if export_type == ExportType.DETAILED:
        return detailed_table(data)
    return summary_table(data)


def _header_figures(data: ExportData) -> dict[str, str]:
    total_miles = _sum_displayed([fmt(item.total_miles, MILES_PLACES) for item in data.jurisdictions], MILES_PLACES)
    total_gallons = _sum_displayed(
        [fmt(item.tax_paid_gallons, GALLON_PLACES) for item in data.jurisdictions], GALLON_PLACES
    )
    return {
        "total_miles": total_miles,
        "total_gallons": total_gallons,
        "avg_mpg": fmt(data.fleet_mpg, MPG_PLACES),
    }


# -- renderers -----------------------------------------------------------------


def render_csv(data: ExportData, export_type: ExportType) -> bytes:
    header, rows, totals = _table_for(data, export_type)
    df = pd.DataFrame(rows + [totals], columns=header)
    output = io.StringIO()
    df.to_csv(output, index=False)
    return output.getvalue().encode("utf-8")


def _trip_element(parent: ET.Element, trip: TripRecord) -> None:
    node = ET.SubElement(parent, "trip")
    ET.SubElement(node, "id").text = trip.id or ""
    ET.SubElement(node, "startDate").text = trip.start_date.isoformat()
    ET.SubElement(node, "endDate").text = trip.end_date.isoformat()
    ET.SubElement(node, "vehicleId").text = trip.vehicle_id
    ET.SubElement(node, "driverId").text = trip.driver_id or ""
    ET.SubElement(node, "startJurisdiction").text = trip.start_jurisdiction or ""
    ET.SubElement(node, "endJurisdiction").text = trip.end_jurisdiction or ""
    ET.SubElement(node, "miles").text = fmt(trip.total_miles, MILES_PLACES)
    ET.SubElement(node, "gallons").text = fmt(trip.gallons, GALLON_PLACES)
    ET.SubElement(node, "fuelCost").text = fmt(trip.fuel_cost, CURRENCY_PLACES)
    ET.SubElement(node, "source").text = trip.source.value


def render_xml(data: ExportData, export_type: ExportType) -> bytes:
    figures = _header_figures(data)
    root = ET.Element("iftaData" if export_type == ExportType.DETAILED else "iftaSummary")
    ET.SubElement(root, "quarter").text = data.quarter
    ET.SubElement(root, "scope").text = data.scope_label
    ET.SubElement(root, "totalMiles").text = figures["total_miles"]
    ET.SubElement(root, "totalGallons").text = figures["total_gallons"]
    ET.SubElement(root, "avgMpg").text = figures["avg_mpg"]

    header, rows, totals = summary_table(data)
    tags = ["code", "totalMiles", "taxableMiles", "taxPaidGallons", "taxableGallons", "netTaxableGallons"]
    if len(header) > len(tags):
        tags += ["taxRate", "taxDue"]

    jurisdictions = ET.SubElement(root, "jurisdictions")
    for row in rows:
        node = ET.SubElement(jurisdictions, "jurisdiction")
        for tag, value in zip(tags, row):
            ET.SubElement(node, tag).text = value
    totals_node = ET.SubElement(root, "totals")
    for tag, value in zip(tags[1:], totals[1:]):
        if value:
            ET.SubElement(totals_node, tag).text = value

    if export_type == ExportType.DETAILED:
        trips_node = ET.SubElement(root, "trips")
        for trip in data.trips:
            _trip_element(trips_node, trip)

    raw = ET.tostring(root, encoding="utf-8")
    return minidom.parseString(raw).toprettyxml(indent="  ", encoding="utf-8")


def _decimal_value(text: str) -> float | None:
    return float(Decimal(text)) if text else None


def render_json(data: ExportData, export_type: ExportType) -> bytes:
    figures = _header_figures(data)
    header, rows, totals = summary_table(data)
    keys = [
        "jurisdiction",
        "total_miles",
        "taxable_miles",
        "tax_paid_gallons",
        "taxable_gallons",
        "net_taxable_gallons",
        "tax_rate",
        "tax_due",
    ][: len(header)]

    def _row(values: list[str]) -> dict[str, Any]:
        return {key: (value if index == 0 else _decimal_value(value)) for index, (key, value) in enumerate(zip(keys, values))}

    document: dict[str, Any] = {
        "quarter": data.quarter,
        "scope": data.scope_label,
        "export_date": datetime.now(timezone.utc).isoformat(),
        "export_type": export_type.value,
        "total_miles": float(Decimal(figures["total_miles"])),
        "total_gallons": float(Decimal(figures["total_gallons"])),
        "avg_mpg": float(Decimal(figures["avg_mpg"])),
        "jurisdictions": [_row(row) for row in rows],
        "totals": {key: value for key, value in _row(totals).items() if key != "jurisdiction" and value is not None},
    }
    if export_type == ExportType.DETAILED:
        document["trips"] = [trip.model_dump(mode="json", exclude={"user_id"}) for trip in data.trips]
    return json.dumps(document, indent=2).encode("utf-8")


def _fixed_width(header: list[str], rows: list[list[str]], totals: list[str]) -> list[str]:
    widths = [max(len(str(cell)) for cell in column) for column in zip(header, *rows, totals)]
    lines: list[str] = []

    def _line(cells: list[str]) -> str:
        parts = []
        for index, (cell, width) in enumerate(zip(cells, widths)):
            parts.append(str(cell).ljust(width) if index == 0 else str(cell).rjust(width))
        return "  ".join(parts).rstrip()

    lines.append(_line(header))
    lines.append("  ".join("-" * width for width in widths))
    lines.extend(_line(row) for row in rows)
    lines.append("  ".join("=" * width for width in widths))
    lines.append(_line(totals))
    return lines


def render_txt(data: ExportData, export_type: ExportType) -> bytes:
    figures = _header_figures(data)
    lines = [
        f"IFTA {'DETAILED REPORT' if export_type == ExportType.DETAILED else 'SUMMARY'} FOR {data.quarter}",
        f"Scope: {data.scope_label}",
        f"Generated: {datetime.now(timezone.utc).strftime('%Y-%m-%d %H:%M UTC')}",
        "",
        f"Total Miles:   {figures['total_miles']}",
        f"Total Gallons: {figures['total_gallons']}",
        f"Average MPG:   {figures['avg_mpg']}",
        "",
    ]
    lines.extend(_fixed_width(*summary_table(data)))
    if export_type == ExportType.DETAILED:
        # Notes are free text and would wreck the column layout.
        header, rows, totals = detailed_table(data)
        lines.append("")
        lines.append("TRIPS")
        lines.extend(_fixed_width(header[:-1], [row[:-1] for row in rows], totals[:-1]))
    return ("\n".join(lines) + "\n").encode("utf-8")


def _pdf_table(header: list[str], rows: list[list[str]], totals: list[str]) -> Table:
    table = Table([header] + rows + [totals], repeatRows=1)
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#1f3a5f")),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.whitesmoke),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("FONTSIZE", (0, 0), (-1, -1), 8),
                ("ALIGN", (1, 0), (-1, -1), "RIGHT"),
                ("BOTTOMPADDING", (0, 0), (-1, 0), 8),
                ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
                ("ROWBACKGROUNDS", (0, 1), (-1, -2), [colors.white, colors.HexColor("#f3f5f8")]),
                ("BACKGROUND", (0, -1), (-1, -1), colors.HexColor("#fff2cc")),
                ("FONTNAME", (0, -1), (-1, -1), "Helvetica-Bold"),
            ]
        )
    )
    return table


def render_pdf(data: ExportData, export_type: ExportType) -> bytes:
    output = io.BytesIO()
    doc = SimpleDocTemplate(output, pagesize=landscape(letter), title=f"{REPORT_TITLE} {data.quarter}")
    styles = getSampleStyleSheet()
    title_style = ParagraphStyle("ReportTitle", parent=styles["Heading1"], fontSize=20, spaceAfter=12)
    elements: list[Any] = [
        Paragraph(REPORT_TITLE, title_style),
        Paragraph(
            f"Quarter: {data.quarter} &nbsp;&nbsp; Scope: {data.scope_label} &nbsp;&nbsp; "
            f"Generated: {datetime.now(timezone.utc).strftime('%Y-%m-%d')}",
            styles["Normal"],
        ),
        Spacer(1, 14),
    ]

    figures = _header_figures(data)
    purchased = sum(item.tax_paid_gallons for item in data.jurisdictions)
    stats = Table(
        [
            ["Total Miles", "Fuel Purchased (gal)", "Fleet MPG", "Jurisdictions", "Trips"],
            [
                figures["total_miles"],
                f"{purchased:,.0f}",
                figures["avg_mpg"],
                str(len(data.jurisdictions)),
                str(len(data.trips)),
            ],
        ]
    )
    stats.setStyle(
        TableStyle(
            [
                ("BOX", (0, 0), (-1, -1), 1, colors.HexColor("#1f3a5f")),
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#e8eef6")),
                ("FONTNAME", (0, 1), (-1, 1), "Helvetica-Bold"),
                ("FONTSIZE", (0, 1), (-1, 1), 12),
                ("ALIGN", (0, 0), (-1, -1), "CENTER"),
            ]
        )
    )
    elements += [stats, Spacer(1, 18), Paragraph("Jurisdiction Summary", styles["Heading2"])]
    elements.append(_pdf_table(*summary_table(data)))

    if export_type == ExportType.DETAILED and data.trips:
        header, rows, totals = detailed_table(data)
        elements += [Spacer(1, 18), Paragraph("Trip Detail", styles["Heading2"])]
        elements.append(_pdf_table(header[:-1], [row[:-1] for row in rows], totals[:-1]))

    doc.build(elements)
    return output.getvalue()


RENDERERS: dict[ExportFormat, Callable[[ExportData, ExportType], bytes]] = {
    ExportFormat.CSV: render_csv,
    ExportFormat.XML: render_xml,
    ExportFormat.JSON: render_json,
    ExportFormat.TXT: render_txt,
    ExportFormat.PDF: render_pdf,
}


def export_report(
    fmt_name: ExportFormat | str,
    data: ExportData,
    export_type: ExportType | str = ExportType.SUMMARY,
) -> ExportResult:
    """Render `data` in the requested format.

    An unknown format or export type raises ValueError (input error). Any
    failure while rendering is returned on `ExportResult.error`.
    """
    try:
        export_format = ExportFormat(str(getattr(fmt_name, "value", fmt_name)).strip().lower())
    except ValueError as exc:
        supported = ", ".join(item.value for item in ExportFormat)
        raise ValueError(f"Unsupported export format: {fmt_name!r}. Supported: {supported}") from exc
    try:
        kind = ExportType(str(getattr(export_type, "value", export_type)).strip().lower())
    except ValueError as exc:
        raise ValueError(f"Unsupported export type: {export_type!r}. Use 'summary' or 'detailed'.") from exc

    filename = build_export_filename(FILENAME_PREFIXES[kind], data.quarter, data.scope_label, export_format.value)
    result = ExportResult(
        format=export_format,
        export_type=kind,
        filename=filename,
        media_type=MEDIA_TYPES[export_format],
    )

    try:
        result.content = RENDERERS[export_format](data, kind)
    except Exception as exc:
        logger.error(
            "export_render_error | format=%s | export_type=%s | quarter=%s | error_type=%s | error=%s",
            export_format.value,
            kind.value,
            data.quarter,
            type(exc).__name__,
            exc,
            exc_info=True,
        )
        result.content = b""
        result.error = ERROR_MESSAGES[export_format]
        return result

    logger.info(
        "export_complete | format=%s | export_type=%s | filename=%s | bytes=%s",
        export_format.value,
        kind.value,
        filename,
        len(result.content),
    )
    return result
