"""
Domain records passed between planner, fetcher, store and optimizer.

ORM rows live in metric.py; these are the plain values the engine works with.
"""
import calendar
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, List, Optional, Union

# Resolutions
DAILY = "daily"
MONTHLY = "monthly"
RESOLUTIONS = (DAILY, MONTHLY)

# Source types (whose data a record describes)
SOURCE_CLIENT = "Client"
SOURCE_COMPETITOR = "Competitor"
SOURCE_PORTFOLIO_AVG = "CD_Avg"
SOURCE_INDUSTRY_AVG = "Industry_Avg"
SOURCE_TYPES = (SOURCE_CLIENT, SOURCE_COMPETITOR, SOURCE_PORTFOLIO_AVG, SOURCE_INDUSTRY_AVG)

# Metric names as stored
BOUNCE_RATE = "Bounce Rate"
SESSION_DURATION = "Session Duration"
PAGES_PER_SESSION = "Pages per Session"
SESSIONS_PER_USER = "Sessions per User"
TOTAL_SESSIONS = "Total Sessions"
TOTAL_USERS = "Total Users"
TRAFFIC_CHANNELS = "Traffic Channels"
DEVICE_DISTRIBUTION = "Device Distribution"

# How a metric rolls up from days to a month
ADDITIVE = "additive"
RATE = "rate"
DISTRIBUTION = "distribution"


@dataclass(frozen=True)
class MetricDefinition:
    name: str
    kind: str
    weight_metric: Optional[str] = None  # rate metrics only
    is_percentage: bool = False


METRICS: Dict[str, MetricDefinition] = {
    BOUNCE_RATE: MetricDefinition(BOUNCE_RATE, RATE, weight_metric=TOTAL_SESSIONS, is_percentage=True),
    SESSION_DURATION: MetricDefinition(SESSION_DURATION, RATE, weight_metric=TOTAL_SESSIONS),
    PAGES_PER_SESSION: MetricDefinition(PAGES_PER_SESSION, RATE, weight_metric=TOTAL_SESSIONS),
    SESSIONS_PER_USER: MetricDefinition(SESSIONS_PER_USER, RATE, weight_metric=TOTAL_USERS),
    TOTAL_SESSIONS: MetricDefinition(TOTAL_SESSIONS, ADDITIVE),
    TOTAL_USERS: MetricDefinition(TOTAL_USERS, ADDITIVE),
    TRAFFIC_CHANNELS: MetricDefinition(TRAFFIC_CHANNELS, DISTRIBUTION),
    DEVICE_DISTRIBUTION: MetricDefinition(DEVICE_DISTRIBUTION, DISTRIBUTION),
}


def metric_kind(metric_name: str) -> str:
    """Unknown metrics are treated as unweighted rates."""
    definition = METRICS.get(metric_name)
    return definition.kind if definition else RATE


@dataclass(frozen=True)
class Period:
    """A calendar month, or one day inside a month."""
    year: int
    month: int
    day: Optional[int] = None
    resolution: str = MONTHLY

    def __post_init__(self):
        if not 1 <= self.month <= 12:
            raise ValueError(f"Invalid month: {self.month}")
        if self.resolution not in RESOLUTIONS:
            raise ValueError(f"Invalid resolution: {self.resolution}")
        if self.day is not None and not 1 <= self.day <= calendar.monthrange(self.year, self.month)[1]:
            raise ValueError(f"Invalid day {self.day} for {self.year}-{self.month:02d}")

    @property
    def month_key(self) -> str:
        return f"{self.year}-{self.month:02d}"

    @property
    def key(self) -> str:
        if self.day is None:
            return self.month_key
        return f"{self.month_key}-{self.day:02d}"

    @property
    def start_date(self) -> date:
        return date(self.year, self.month, self.day or 1)

    @property
    def end_date(self) -> date:
        if self.day is not None:
            return self.start_date
        return date(self.year, self.month, calendar.monthrange(self.year, self.month)[1])

    def month_period(self) -> "Period":
        """The enclosing month, keeping this period's resolution."""
        return Period(self.year, self.month, resolution=self.resolution)

    def day_period(self, day: int) -> "Period":
        return Period(self.year, self.month, day=day, resolution=DAILY)

    def __str__(self) -> str:
        return self.key


def parse_period(key: str, resolution: Optional[str] = None) -> Period:
    """Parse ``YYYY-MM`` or ``YYYY-MM-DD``. Day keys default to daily resolution."""
    parts = key.strip().split("-")
    if len(parts) not in (2, 3) or not all(p.isdigit() for p in parts):
        raise ValueError(f"Invalid period key: {key!r}")
    year, month = int(parts[0]), int(parts[1])
    if len(parts) == 3:
        return Period(year, month, day=int(parts[2]), resolution=resolution or DAILY)
    return Period(year, month, resolution=resolution or MONTHLY)


# A distribution value: [{"category": "Direct", "sessions": 120, "percentage": 40.0}, ...]
MetricValue = Union[float, List[Dict[str, Any]]]


@dataclass
class MetricRecord:
    """One observed value for one owner, one metric, one period, one source type."""
    owner_id: str
    metric_name: str
    source_type: str
    period: Period
    value: MetricValue
    resolution: str = MONTHLY
    observed_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def upsert_key(self) -> tuple:
        return (self.owner_id, self.metric_name, self.period.key, self.source_type)


@dataclass
class PeriodStatus:
    """What the store already holds for one month."""
    period: str
    resolution: Optional[str] = None  # daily, monthly or None when empty
    record_count: int = 0
    metric_names: List[str] = field(default_factory=list)
    last_observed_at: Optional[datetime] = None

    @property
    def has_data(self) -> bool:
        return self.record_count > 0
