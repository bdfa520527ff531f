"""
Straight-line depreciation amounts with fixed-point money.
"""
import calendar
from datetime import date
from decimal import Decimal, ROUND_HALF_EVEN
from typing import Dict, List, Optional

from core.errors import DepreciationDataError
from core.periods import (
    AssetSnapshot, Period, acquisition_period, iter_periods, month_sequence, validate_asset,
)

CENT = Decimal("0.01")


def to_money(value) -> Decimal:
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_EVEN)


def monthly_amount(asset: AssetSnapshot) -> Decimal:
    """Regular per-period charge, value / useful_life rounded to the cent."""
    validate_asset(asset)
    return (to_money(asset.value) / asset.useful_life).quantize(CENT, rounding=ROUND_HALF_EVEN)


def _checked_sequence(asset: AssetSnapshot, period: Period) -> int:
    validate_asset(asset)
    if asset.purchase_date > period.last_day:
        raise DepreciationDataError(
            f"Asset {asset.asset_tag} was acquired after period {period}",
            asset_id=asset.id, period=period,
        )
    k = month_sequence(asset, period)
    if k < 1:
        raise DepreciationDataError(
            f"Period {period} is the acquisition period of asset {asset.asset_tag}",
            asset_id=asset.id, period=period,
        )
    if k > asset.useful_life:
        raise DepreciationDataError(
            f"Period {period} is beyond the useful life of asset {asset.asset_tag}",
            asset_id=asset.id, period=period,
        )
    return k


def accumulated_through(asset: AssetSnapshot, period: Period) -> Decimal:
    """Total depreciation recognized up to and including `period`."""
    k = _checked_sequence(asset, period)
    value = to_money(asset.value)
    if k == asset.useful_life:
        return value
    return min(monthly_amount(asset) * k, value)


def compute_amount(asset: AssetSnapshot, period: Period) -> Decimal:
    """
    Depreciation charge for one period.

    Every period gets the same rounded monthly amount, capped by what is left
    to depreciate; the final period of the useful life takes the remainder so
    the lifetime total equals the asset value exactly.
    """
    k = _checked_sequence(asset, period)
    value = to_money(asset.value)
    before = min(monthly_amount(asset) * (k - 1), value)
    amount = accumulated_through(asset, period) - before
    return max(amount, Decimal("0.00"))


def book_value_after(asset: AssetSnapshot, period: Period) -> Decimal:
    return to_money(asset.value) - accumulated_through(asset, period)


def depreciation_date(asset: AssetSnapshot, period: Period) -> date:
    """Acquisition day-of-month carried into `period`, clamped to month end."""
    last = calendar.monthrange(period.year, period.month)[1]
    return date(period.year, period.month, min(asset.purchase_date.day, last))


def projected_schedule(asset: AssetSnapshot, start: Optional[Period] = None) -> List[Dict]:
    """Every remaining period with amount, running total and book value, without saving."""
    validate_asset(asset)
    first = acquisition_period(asset).next()
    if start is not None and start > first:
        first = start
    last = acquisition_period(asset).shift(asset.useful_life)
    rows = []
    for period in iter_periods(first, last):
        rows.append({
            "period": str(period),
            "month_sequence": month_sequence(asset, period),
            "depreciation_date": depreciation_date(asset, period).isoformat(),
            "depreciation_amount": compute_amount(asset, period),
            "accumulated_depreciation": accumulated_through(asset, period),
            "current_value": book_value_after(asset, period),
        })
    return rows
