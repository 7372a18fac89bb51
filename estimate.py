"""
estimate.py - Taxable-gallon estimation.

Taxable gallons for a jurisdiction are its taxable miles divided by the
fleet's average MPG for the quarter. Fleet MPG is total allocated miles
over total purchased gallons.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Iterable, Mapping

from logging_config import get_logger
from models import IftaRate, JurisdictionTotal

logger = get_logger(__name__)

DEFAULT_FLEET_MPG = 6.0
# Used when a quarter has no miles or no purchased gallons. Changing it
# shifts every taxable-gallon figure for such quarters.


def fleet_mpg(total_miles: float, total_gallons: float) -> float:
    """Average MPG, or DEFAULT_FLEET_MPG when either side is zero."""
    if total_miles > 0 and total_gallons > 0:
        return total_miles / total_gallons
    return DEFAULT_FLEET_MPG


def uses_fallback_mpg(total_miles: float, total_gallons: float) -> bool:
    return not (total_miles > 0 and total_gallons > 0)


def apply_taxable_gallons(totals: Mapping[str, JurisdictionTotal]) -> float:
    """Fill taxable and net taxable gallons in place. Returns the MPG used."""
    total_miles = sum(item.total_miles for item in totals.values())
    total_gallons = sum(item.tax_paid_gallons for item in totals.values())
    mpg = fleet_mpg(total_miles, total_gallons)

    if uses_fallback_mpg(total_miles, total_gallons) and totals:
        logger.info(
            "estimate_mpg_fallback | total_miles=%.1f | total_gallons=%.3f | mpg=%.2f",
            total_miles,
            total_gallons,
            mpg,
        )

    for item in totals.values():
        item.taxable_gallons = item.taxable_miles / mpg
        item.net_taxable_gallons = item.taxable_gallons - item.tax_paid_gallons
    return mpg


def load_rate_table(path: str) -> list[IftaRate]:
    """Read a JSON list of {jurisdiction, rate, surcharge} objects.

    Raises:
        FileNotFoundError: missing file.
        ValueError: not a list of rate objects.
    """
    target = Path(path)
    if not target.exists():
        raise FileNotFoundError(f"Tax rate file not found: {path}")

    raw = json.loads(target.read_text(encoding="utf-8"))
    if not isinstance(raw, list):
        raise ValueError(f"Tax rate file must contain a JSON list: {path}")
    rates = [IftaRate.model_validate(item) for item in raw]
    logger.info("estimate_rates_loaded | path=%s | jurisdictions=%s", path, len(rates))
    return rates


def apply_tax_rates(
    totals: Iterable[JurisdictionTotal],
    rates: Iterable[IftaRate] | Mapping[str, float],
) -> list[JurisdictionTotal]:
    """Set tax_rate and tax_due from a rate table.

    Jurisdictions missing from the table keep a zero rate and are logged.
    """
    if isinstance(rates, Mapping):
        lookup = {str(code).strip().upper(): float(value) for code, value in rates.items()}
    else:
        lookup = {rate.jurisdiction: rate.total_rate for rate in rates}

    result: list[JurisdictionTotal] = []
    missing: list[str] = []
    for item in totals:
        rate = lookup.get(item.jurisdiction)
        if rate is None:
            missing.append(item.jurisdiction)
            rate = 0.0
        item.tax_rate = rate
        item.tax_due = item.net_taxable_gallons * rate
        result.append(item)

    if missing:
        logger.warning("estimate_rate_missing | jurisdictions=%s | fallback=0.0", missing)
    return result
