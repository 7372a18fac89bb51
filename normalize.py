"""
normalize.py - Input normalization module.

Quarter helpers:
    parse_quarter(quarter)        -> (year, number)
    quarter_date_range(quarter)   -> (first day, last day)
    quarter_midpoint(quarter)     -> 15th of the quarter's middle month
    quarter_for_date(value)       -> 'YYYY-QN'
    quarter_slug(quarter)         -> 'YYYY_QN' for filenames

Field normalizers:
    normalize_jurisdiction(code)  -> upper-case code or None
    normalize_date(date_str)      -> ISO YYYY-MM-DD or ''
    normalize_quantity(value)     -> non-negative float
    extract_state_code(location)  -> 'ST' from 'City, ST'

Design principles:
    - Quarter identifiers are strict: malformed input raises immediately
    - Record fields degrade to neutral defaults and log a warning
    - Pure transformations, no store access
"""

from __future__ import annotations

import calendar
import math
import re
from datetime import date, datetime
from typing import Any, Optional

from dateutil import parser as dateparser

from logging_config import get_logger

logger = get_logger(__name__)

QUARTER_PATTERN = re.compile(r"^(\d{4})-Q(\d)$")
QUARTER_FORMAT_MESSAGE = "Invalid quarter format. Use YYYY-QN (e.g., 2023-Q1)"

# Trailing ", ST" in a "City, ST" location string.
STATE_CODE_PATTERN = re.compile(r",\s*([A-Z]{2})\b")

NULL_TOKENS = {"", "n/a", "na", "none", "null", "nan", "unknown"}


class QuarterFormatError(ValueError):
    """Raised when a quarter identifier is not in YYYY-QN form."""


def parse_quarter(quarter: Any) -> tuple[int, int]:
    """Split 'YYYY-QN' into (year, quarter number).

    Raises:
        QuarterFormatError: when the text is not YYYY-Q1..YYYY-Q4.
    """
    text = str(quarter or "").strip().upper()
    match = QUARTER_PATTERN.match(text)
    if not match:
        raise QuarterFormatError(f"{QUARTER_FORMAT_MESSAGE}. Got: {quarter!r}")

    year, number = int(match.group(1)), int(match.group(2))
    if number < 1 or number > 4:
        raise QuarterFormatError(f"{QUARTER_FORMAT_MESSAGE}. Got: {quarter!r}")
    return year, number


def format_quarter(year: int, number: int) -> str:
    return f"{year}-Q{number}"


def quarter_date_range(quarter: Any) -> tuple[date, date]:
    """Return the first and last calendar day of the quarter."""
    year, number = parse_quarter(quarter)
    start_month = (number - 1) * 3 + 1
    end_month = start_month + 2
    last_day = calendar.monthrange(year, end_month)[1]
    return date(year, start_month, 1), date(year, end_month, last_day)


def quarter_midpoint(quarter: Any) -> date:
    """Return the 15th of the quarter's second month.

    Synthesized records are dated here so they always sort inside the
    quarter regardless of when they are created.
    """
    year, number = parse_quarter(quarter)
    middle_month = (number - 1) * 3 + 2
    return date(year, middle_month, 15)


def quarter_for_date(value: Any) -> str:
    """Derive the 'YYYY-QN' quarter containing a date or date string."""
    if isinstance(value, datetime):
        day = value.date()
    elif isinstance(value, date):
        day = value
    else:
        normalized = normalize_date(value)
        if not normalized:
            raise ValueError(f"Cannot derive a quarter from date: {value!r}")
        day = date.fromisoformat(normalized)
    return format_quarter(day.year, (day.month - 1) // 3 + 1)


def quarter_slug(quarter: Any) -> str:
    """'2024-Q1' -> '2024_Q1'."""
    year, number = parse_quarter(quarter)
    return f"{year}_Q{number}"


def normalize_jurisdiction(code: Any) -> Optional[str]:
    """Upper-case and strip a jurisdiction code; blank or null becomes None."""
    if code is None:
        return None
    try:
        if isinstance(code, float) and math.isnan(code):
            return None
    except TypeError:
        pass

    text = str(code).strip().upper()
    if text.lower() in NULL_TOKENS:
        return None
    return text


def normalize_date(date_str: Any) -> str:
    """Normalize date text to ISO YYYY-MM-DD. Unparseable input returns ''."""
    if date_str is None:
        return ""
    if isinstance(date_str, datetime):
        return date_str.strftime("%Y-%m-%d")
    if isinstance(date_str, date):
        return date_str.isoformat()

    text = str(date_str).strip()
    if text.lower() in NULL_TOKENS:
        return ""
    if not any(char.isdigit() for char in text):
        logger.debug("normalize_date | rejected_no_digits | raw=%r", text)
        return ""

    try:
        parsed = dateparser.parse(text, dayfirst=False)
    except (ValueError, TypeError, OverflowError) as exc:
        logger.warning(
            "normalize_date | parse_error=%s | raw=%r | fallback=''",
            type(exc).__name__,
            text,
        )
        return ""

    if parsed is None:
        logger.warning("normalize_date | parse_failed | raw=%r | fallback=''", text)
        return ""
    return parsed.strftime("%Y-%m-%d")


def normalize_quantity(value: Any) -> float:
    """Coerce miles/gallons/dollar input to a non-negative float.

    Strips currency symbols and thousands separators. Missing, non-finite
    or negative values fall back to 0.0 with a warning.
    """
    if value is None:
        return 0.0

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        number = float(value)
    else:
        cleaned = str(value).strip().replace("$", "").replace(",", "").strip()
        if cleaned.lower() in NULL_TOKENS:
            return 0.0
        try:
            number = float(cleaned)
        except ValueError:
            logger.warning("normalize_quantity | parse_failed | raw=%r | fallback=0.0", value)
            return 0.0

    if not math.isfinite(number):
        # NaN from an empty pandas cell lands here too.
        return 0.0
    if number < 0:
        logger.warning("normalize_quantity | negative=%r | fallback=0.0", value)
        return 0.0
    return number


def extract_state_code(location: Any) -> Optional[str]:
    """Pull the two-letter state code out of a 'City, ST' location."""
    if not location:
        return None
    match = STATE_CODE_PATTERN.search(str(location))
    if not match:
        logger.debug("extract_state_code | no_match | location=%r", location)
        return None
    return match.group(1)
