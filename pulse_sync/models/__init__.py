"""Database models and domain records for the sync engine"""

from pulse_sync.models.metric import ClientMetric, ClientGA4Property
from pulse_sync.models.records import (
    Period,
    PeriodStatus,
    MetricRecord,
    parse_period,
    DAILY,
    MONTHLY,
)

__all__ = [
    "ClientMetric",
    "ClientGA4Property",
    "Period",
    "PeriodStatus",
    "MetricRecord",
    "parse_period",
    "DAILY",
    "MONTHLY",
]
