"""
GA4 Fetch Service

Decides whether a period needs fetching, pulls it from GA4 through the
connector (which owns retry/backoff) and maps report rows into
MetricRecords:

- rate metrics are stored as 0-1 decimals
- channel and device breakdowns become ordered
  [{category, sessions, percentage}] lists summing to 100
"""
import asyncio
import math
import re
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from pulse_sync.connectors.base_connector import BaseConnector, ReportRow
from pulse_sync.exceptions import ConfigurationError
from pulse_sync.models.records import (
    BOUNCE_RATE,
    DAILY,
    DEVICE_DISTRIBUTION,
    METRICS,
    MONTHLY,
    PAGES_PER_SESSION,
    SESSION_DURATION,
    SESSIONS_PER_USER,
    SOURCE_CLIENT,
    TOTAL_SESSIONS,
    TOTAL_USERS,
    TRAFFIC_CHANNELS,
    MetricRecord,
    Period,
    PeriodStatus,
)
from pulse_sync.services.period_planner import PeriodPlanner
from pulse_sync.utils.logger import log
from pulse_sync.utils.retry import RetryStats

CLIENT_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,100}$")

# GA4 API metric name -> stored metric name (request order matters for row parsing)
GA4_METRIC_MAP = {
    "bounceRate": BOUNCE_RATE,
    "averageSessionDuration": SESSION_DURATION,
    "screenPageViewsPerSession": PAGES_PER_SESSION,
    "sessionsPerUser": SESSIONS_PER_USER,
    "sessions": TOTAL_SESSIONS,
    "totalUsers": TOTAL_USERS,
}
CORE_GA4_METRICS = list(GA4_METRIC_MAP)

DATE_DIMENSION = "date"
CHANNEL_DIMENSION = "sessionDefaultChannelGroup"
DEVICE_DIMENSION = "deviceCategory"

# Unknown channels fall into "Other"
CHANNEL_NAME_MAP = {
    "Direct": "Direct",
    "(none)": "Direct",
    "Paid Search": "Paid Search",
    "Organic Search": "Organic Search",
    "Referral": "Referral",
    "Email": "Email",
    "Paid Social": "Social Media",
    "Organic Social": "Social Media",
    "Social": "Social Media",
    "Cross-network": "Other",
    "Unassigned": "Other",
    "Video": "Other",
    "Organic Video": "Other",
    "Affiliates": "Other",
    "Audio": "Other",
    "SMS": "Other",
    "Mobile Push Notifications": "Other",
}

# Tablet is reported together with mobile
DEVICE_NAME_MAP = {
    "desktop": "Desktop",
    "mobile": "Mobile",
    "tablet": "Mobile",
}


def validate_client_id(client_id: str) -> bool:
    return isinstance(client_id, str) and bool(CLIENT_ID_PATTERN.match(client_id))


def normalize_rate(value: float) -> float:
    """Store rates as 0-1 decimals. Values above 1.0 are percentages (e.g. 45.2 -> 0.452)."""
    value = float(value or 0)
    if value > 1.0:
        value = value / 100.0
    return round(value, 6)


def normalize_channel_name(channel: str) -> str:
    return CHANNEL_NAME_MAP.get(channel, "Other")


def normalize_device_name(device: str) -> str:
    return DEVICE_NAME_MAP.get((device or "").lower(), "Mobile")


def build_distribution(pairs: Iterable[Tuple[str, float]]) -> List[Dict]:
    """
    Consolidate (category, sessions) pairs into an ordered share list.

    Percentages carry one decimal and use largest-remainder rounding so
    they add up to exactly 100.0 (all zeros when there are no sessions).
    """
    totals: Dict[str, int] = {}
    for category, sessions in pairs:
        totals[category] = totals.get(category, 0) + int(round(sessions or 0))

    ordered = sorted(totals.items(), key=lambda item: (-item[1], item[0]))
    total_sessions = sum(sessions for _, sessions in ordered)
    if total_sessions <= 0:
        return [{"category": c, "sessions": s, "percentage": 0.0} for c, s in ordered]

    # Work in tenths of a percent
    raw = [sessions * 1000 / total_sessions for _, sessions in ordered]
    tenths = [math.floor(r) for r in raw]
    shortfall = 1000 - sum(tenths)
    by_remainder = sorted(range(len(raw)), key=lambda i: raw[i] - tenths[i], reverse=True)
    for i in by_remainder[:shortfall]:
        tenths[i] += 1

    return [
        {"category": category, "sessions": sessions, "percentage": tenths[i] / 10}
        for i, (category, sessions) in enumerate(ordered)
    ]


def _parse_ga4_date(value: str) -> date:
    """GA4 returns dates as YYYYMMDD"""
    return datetime.strptime(value, "%Y%m%d").date()


async def _gather_reports(*reports):
    """
    Await report coroutines together and return their results in order.

    If one fails, the others are cancelled and awaited before the error is
    raised, so no request for the period outlives the caller's lock.
    """
    tasks = [asyncio.ensure_future(report) for report in reports]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    finally:
        pending = [task for task in tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    errors = [task.exception() for task in tasks if not task.cancelled() and task.exception() is not None]
    if errors:
        raise errors[0]
    return [task.result() for task in tasks]


class GA4FetchService:
    """Fetch client for one analytics provider property per client."""

    def __init__(
        self,
        connector: BaseConnector,
        property_lookup: Callable[[str], Optional[str]],
        planner: PeriodPlanner,
    ):
        self.connector = connector
        self.property_lookup = property_lookup
        self.planner = planner

    def should_fetch(
        self,
        existing_status: Optional[PeriodStatus],
        period: Period,
        force: bool,
        reference: date,
    ) -> bool:
        """
        True when ``force`` is set, nothing is stored for the period, the
        period is inside the mutable window, or a daily-tracked period only
        holds monthly data.
        """
        if force:
            return True
        if existing_status is None or not existing_status.has_data:
            return True
        if self.planner.is_in_mutable_window(period, reference):
            return True
        if period.resolution == DAILY and existing_status.resolution == MONTHLY:
            return True
        return False

    def resolve_property(self, client_id: str) -> str:
        property_id = self.property_lookup(client_id)
        if not property_id:
            raise ConfigurationError(f"No GA4 property configured for client {client_id}")
        return property_id

    async def fetch_period(
        self,
        client_id: str,
        period: Period,
        retry_stats: Optional[RetryStats] = None,
    ) -> List[MetricRecord]:
        """
        Fetch one month for a client.

        Daily-tracked months yield one record per day per scalar metric;
        monthly months yield one record per scalar metric. Both also yield
        the month's channel and device distributions.
        """
        property_id = self.resolve_property(client_id)
        stats = retry_stats if retry_stats is not None else RetryStats()
        month = period.month_period()

        main_dimensions = [DATE_DIMENSION] if period.resolution == DAILY else []
        main_rows, channel_rows, device_rows = await _gather_reports(
            self.connector.query_metrics(property_id, month, CORE_GA4_METRICS, main_dimensions, retry_stats=stats),
            self.connector.query_metrics(property_id, month, ["sessions"], [CHANNEL_DIMENSION], retry_stats=stats),
            self.connector.query_metrics(property_id, month, ["sessions"], [DEVICE_DIMENSION], retry_stats=stats),
        )

        observed_at = datetime.utcnow()
        records: List[MetricRecord] = []

        if period.resolution == DAILY:
            for row in main_rows:
                day = _parse_ga4_date(row["dimensions"][0])
                if (day.year, day.month) != (month.year, month.month):
                    continue
                records.extend(self._scalar_records(client_id, month.day_period(day.day), row, DAILY, observed_at))
        elif main_rows:
            records.extend(self._scalar_records(client_id, month, main_rows[0], MONTHLY, observed_at))

        channels = build_distribution(
            (normalize_channel_name(row["dimensions"][0]), row["metrics"].get("sessions", 0))
            for row in channel_rows
        )
        devices = build_distribution(
            (normalize_device_name(row["dimensions"][0]), row["metrics"].get("sessions", 0))
            for row in device_rows
        )
        # Distributions are always stored per month
        monthly = Period(month.year, month.month, resolution=MONTHLY)
        if channels:
            records.append(self._record(client_id, TRAFFIC_CHANNELS, monthly, channels, MONTHLY, observed_at))
        if devices:
            records.append(self._record(client_id, DEVICE_DISTRIBUTION, monthly, devices, MONTHLY, observed_at))

        log.info(
            f"Fetched {len(records)} GA4 records for {client_id} {period.key} ({period.resolution})"
            + (f" after {stats.retries} retries" if stats.retries else "")
        )
        return records

    async def validate_client_access(self, client_id: str, reference: date) -> bool:
        """Check the client's property answers a minimal report."""
        try:
            property_id = self.resolve_property(client_id)
        except ConfigurationError as e:
            log.warning(str(e))
            return False
        reference_period = Period(reference.year, reference.month)
        return await self.connector.validate_connection(property_id, reference_period)

    def _scalar_records(
        self,
        client_id: str,
        period: Period,
        row: ReportRow,
        resolution: str,
        observed_at: datetime,
    ) -> List[MetricRecord]:
        records = []
        for ga4_name, metric_name in GA4_METRIC_MAP.items():
            if ga4_name not in row["metrics"]:
                continue
            value = float(row["metrics"][ga4_name])
            if METRICS[metric_name].is_percentage:
                value = normalize_rate(value)
            records.append(self._record(client_id, metric_name, period, value, resolution, observed_at))
        return records

    @staticmethod
    def _record(client_id, metric_name, period, value, resolution, observed_at) -> MetricRecord:
        return MetricRecord(
            owner_id=client_id,
            metric_name=metric_name,
            source_type=SOURCE_CLIENT,
            period=period,
            value=value,
            resolution=resolution,
            observed_at=observed_at,
        )
