"""
Accounting periods and the per-asset backlog resolver.

A period is one calendar month. Depreciation for an asset starts in the month
after acquisition (month sequence 1) and stops at the useful-life horizon
(month sequence == useful_life).
"""
import calendar
import re
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Iterator, List, Optional, Union

from core.errors import DepreciationDataError

PERIOD_RE = re.compile(r"^(\d{4})-(\d{2})$")

# Lifecycle statuses that never accrue depreciation
NON_DEPRECIABLE_STATUSES = {"Disposed", "Lost", "Fully Depreciated"}


@dataclass(frozen=True, order=True)
class Period:
    """One calendar month, ordered chronologically."""
    year: int
    month: int

    def __post_init__(self):
        if not 1 <= self.month <= 12:
            raise ValueError(f"Invalid month {self.month} for period")

    @classmethod
    def parse(cls, value: Union[str, "Period"]) -> "Period":
        if isinstance(value, Period):
            return value
        m = PERIOD_RE.match((value or "").strip())
        if not m:
            raise ValueError(f"Invalid period '{value}'. Expected YYYY-MM")
        return cls(int(m.group(1)), int(m.group(2)))

    @classmethod
    def containing(cls, value: Union[date, datetime]) -> "Period":
        return cls(value.year, value.month)

    @property
    def index(self) -> int:
        return self.year * 12 + (self.month - 1)

    @classmethod
    def from_index(cls, index: int) -> "Period":
        return cls(index // 12, index % 12 + 1)

    def shift(self, months: int) -> "Period":
        return Period.from_index(self.index + months)

    def next(self) -> "Period":
        return self.shift(1)

    def months_since(self, other: "Period") -> int:
        return self.index - other.index

    @property
    def first_day(self) -> date:
        return date(self.year, self.month, 1)

    @property
    def last_day(self) -> date:
        return date(self.year, self.month, calendar.monthrange(self.year, self.month)[1])

    def __str__(self):
        return f"{self.year:04d}-{self.month:02d}"


@dataclass
class AssetSnapshot:
    """Detached view of the asset fields the depreciation core reads."""
    id: int
    asset_tag: str
    value: Optional[Decimal]
    purchase_date: Optional[date]
    useful_life: Optional[int]
    status: str = "In Use"
    last_depreciated_period: Optional[Period] = None
    name: Optional[str] = None
    # stored marker text when it is not a valid YYYY-MM period
    invalid_marker: Optional[str] = None

    @property
    def is_depreciable(self) -> bool:
        return self.status not in NON_DEPRECIABLE_STATUSES


def validate_asset(asset: AssetSnapshot) -> None:
    """Raise DepreciationDataError when an asset cannot be depreciated at all."""
    if asset.useful_life is None or asset.useful_life <= 0:
        raise DepreciationDataError(
            f"Asset {asset.asset_tag} has invalid useful life ({asset.useful_life})",
            asset_id=asset.id,
        )
    if asset.purchase_date is None:
        raise DepreciationDataError(
            f"Asset {asset.asset_tag} has no acquisition date", asset_id=asset.id
        )
    if asset.value is None or Decimal(asset.value) < 0:
        raise DepreciationDataError(
            f"Asset {asset.asset_tag} has invalid value ({asset.value})", asset_id=asset.id
        )
    if asset.invalid_marker is not None:
        raise DepreciationDataError(
            f"Asset {asset.asset_tag} has invalid last depreciated period '{asset.invalid_marker}'",
            asset_id=asset.id,
        )


def acquisition_period(asset: AssetSnapshot) -> Period:
    return Period.containing(asset.purchase_date)


def horizon_period(asset: AssetSnapshot) -> Period:
    """Last period that may still accrue depreciation."""
    return acquisition_period(asset).shift(asset.useful_life)


def month_sequence(asset: AssetSnapshot, period: Period) -> int:
    """1-based position of `period` in the asset's depreciation life."""
    return period.months_since(acquisition_period(asset))


def iter_periods(start: Period, end: Period) -> Iterator[Period]:
    """Inclusive ascending range of periods. Empty when start > end."""
    for index in range(start.index, end.index + 1):
        yield Period.from_index(index)


def outstanding_periods(asset: AssetSnapshot, as_of: Optional[Union[date, datetime]] = None) -> List[Period]:
    """
    Periods still owed for an asset, oldest first.

    Covers every period strictly after the asset's last recorded period (or
    after its acquisition period when nothing is recorded) up to and including
    the period containing `as_of`, capped at the useful-life horizon.
    """
    if not asset.is_depreciable:
        return []

    validate_asset(asset)

    if as_of is None:
        as_of = date.today()

    acquired = acquisition_period(asset)
    start = acquired.next()
    if asset.last_depreciated_period is not None:
        start = max(start, asset.last_depreciated_period.next())

    end = min(Period.containing(as_of), horizon_period(asset))
    return list(iter_periods(start, end))
