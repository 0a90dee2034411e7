"""
Period Planner

Builds the rolling list of calendar months a sync run considers and
decides which of them are tracked at daily resolution.
"""
from datetime import date, datetime, timedelta
from typing import List, Optional, Tuple, Union

from dateutil.relativedelta import relativedelta

from pulse_sync.models.records import DAILY, MONTHLY, Period

DateLike = Union[date, datetime]


class PeriodPlanner:
    """
    Pure planner: the same ``now`` always yields the same plan, so a
    retried run covers exactly the same periods.
    """

    def __init__(
        self,
        history_months: int = 15,
        daily_retention_months: int = 2,
        mutable_window_months: int = 2,
    ):
        if history_months < 1:
            raise ValueError("history_months must be at least 1")
        self.history_months = history_months
        self.daily_retention_months = max(0, daily_retention_months)
        self.mutable_window_months = max(0, mutable_window_months)

    @classmethod
    def from_settings(cls, settings) -> "PeriodPlanner":
        return cls(
            history_months=settings.history_months,
            daily_retention_months=settings.daily_retention_months,
            mutable_window_months=settings.mutable_window_months,
        )

    def plan(self, now: DateLike) -> List[Period]:
        """
        Trailing ``history_months`` calendar months ending with the month
        containing ``now``, newest first.
        """
        anchor = date(now.year, now.month, 1)
        periods = []
        for offset in range(self.history_months):
            month_start = anchor - relativedelta(months=offset)
            resolution = DAILY if offset < self.daily_retention_months else MONTHLY
            periods.append(Period(month_start.year, month_start.month, resolution=resolution))
        return periods

    @staticmethod
    def months_between(reference: DateLike, period: Period) -> int:
        """Whole calendar months from ``period`` up to ``reference`` (0 = same month)."""
        return (reference.year - period.year) * 12 + (reference.month - period.month)

    def is_in_mutable_window(self, period: Period, reference: DateLike) -> bool:
        """Recent months the provider may still backfill."""
        return 0 <= self.months_between(reference, period) < self.mutable_window_months

    def is_past_daily_retention(self, period: Period, reference: DateLike) -> bool:
        """Months whose daily rows should be compacted into a monthly aggregate."""
        return self.months_between(reference, period) >= self.daily_retention_months

    @staticmethod
    def reportable_range(period: Period, now: DateLike, data_delay_days: int = 0) -> Optional[Tuple[date, date]]:
        """
        Calendar bounds of ``period`` the provider can report on as of ``now``.

        The current month stops at ``now`` minus the provider's processing
        delay. Returns None when the whole period is still inside the delay.
        """
        cutoff = date(now.year, now.month, now.day) - timedelta(days=data_delay_days)
        end = min(period.end_date, cutoff)
        if end < period.start_date:
            return None
        return period.start_date, end
