"""
Exception types shared by the depreciation core.
"""


class DepreciationError(Exception):
    """Base class for depreciation engine errors."""


class ScheduleConfigError(DepreciationError):
    """A schedule row cannot be evaluated (bad timezone, time, frequency or cron)."""


class DepreciationDataError(DepreciationError):
    """An asset's own data makes depreciation impossible (e.g. useful life <= 0)."""

    def __init__(self, message: str, asset_id=None, period=None):
        super().__init__(message)
        self.asset_id = asset_id
        self.period = period
