from datetime import date
from decimal import Decimal

import pytest

from core.calculator import (
    accumulated_through, book_value_after, compute_amount, depreciation_date,
    monthly_amount, projected_schedule,
)
from core.errors import DepreciationDataError
from core.periods import AssetSnapshot, Period, iter_periods


def _asset(value="600000", useful_life=6, purchase_date=date(2024, 1, 10)):
    return AssetSnapshot(
        id=7,
        asset_tag="AST-0007",
        value=Decimal(value),
        purchase_date=purchase_date,
        useful_life=useful_life,
    )


def test_even_split_is_identical_every_period():
    asset = _asset()
    amounts = [compute_amount(asset, p) for p in iter_periods(Period(2024, 2), Period(2024, 7))]
    assert amounts == [Decimal("100000.00")] * 6


def test_final_period_absorbs_rounding_remainder():
    asset = _asset(value="1000", useful_life=3)
    amounts = [compute_amount(asset, p) for p in iter_periods(Period(2024, 2), Period(2024, 4))]
    assert amounts == [Decimal("333.33"), Decimal("333.33"), Decimal("333.34")]
    assert sum(amounts) == Decimal("1000.00")


@pytest.mark.parametrize("value,life", [
    ("1000", 7),
    ("0.05", 3),
    ("0.02", 3),
    ("12345678.91", 97),
    ("99.99", 12),
])
def test_lifetime_sum_equals_value_exactly(value, life):
    asset = _asset(value=value, useful_life=life)
    first = Period(2024, 2)
    amounts = [compute_amount(asset, p) for p in iter_periods(first, first.shift(life - 1))]
    assert sum(amounts) == Decimal(value)
    assert all(a >= 0 for a in amounts)


def test_monthly_amount_uses_bankers_rounding():
    # 0.125 per month rounds half to even
    assert monthly_amount(_asset(value="1.00", useful_life=8)) == Decimal("0.12")


def test_accumulated_and_book_value_track_entries():
    asset = _asset(value="1000", useful_life=3)
    assert accumulated_through(asset, Period(2024, 3)) == Decimal("666.66")
    assert book_value_after(asset, Period(2024, 3)) == Decimal("333.34")
    assert book_value_after(asset, Period(2024, 4)) == Decimal("0.00")


@pytest.mark.parametrize("life", [0, -1])
def test_invalid_useful_life_is_data_error(life):
    with pytest.raises(DepreciationDataError):
        compute_amount(_asset(useful_life=life), Period(2024, 2))


def test_period_before_acquisition_is_data_error():
    with pytest.raises(DepreciationDataError):
        compute_amount(_asset(), Period(2023, 12))


def test_acquisition_period_itself_is_not_depreciated():
    with pytest.raises(DepreciationDataError):
        compute_amount(_asset(), Period(2024, 1))


def test_period_beyond_horizon_is_data_error():
    with pytest.raises(DepreciationDataError):
        compute_amount(_asset(), Period(2024, 8))


def test_depreciation_date_clamps_to_month_end():
    asset = _asset(purchase_date=date(2024, 1, 31))
    assert depreciation_date(asset, Period(2024, 2)) == date(2024, 2, 29)
    assert depreciation_date(asset, Period(2024, 3)) == date(2024, 3, 31)


def test_projected_schedule_covers_remaining_life():
    asset = _asset(value="1000", useful_life=3)
    rows = projected_schedule(asset)
    assert [r["period"] for r in rows] == ["2024-02", "2024-03", "2024-04"]
    assert rows[-1]["current_value"] == Decimal("0.00")

    remaining = projected_schedule(asset, start=Period(2024, 4))
    assert [r["month_sequence"] for r in remaining] == [3]
