"""
Google Analytics 4 data connector

Runs Data API reports for one client property and one period. Provider
errors are mapped onto the engine's error taxonomy so the sync engine can
tell a bad credential (fatal) from a rate limit (retry).
"""
import asyncio
from datetime import date
from typing import List, Optional, Sequence

from google.analytics.data_v1beta import BetaAnalyticsDataClient
from google.analytics.data_v1beta.types import (
    DateRange,
    Dimension,
    Metric,
    OrderBy,
    RunReportRequest,
)
from google.api_core import exceptions as google_exceptions
from google.auth import exceptions as auth_exceptions
from google.oauth2 import service_account

from pulse_sync.config import Settings, get_settings
from pulse_sync.connectors.base_connector import BaseConnector, ReportRow
from pulse_sync.exceptions import ConfigurationError, ProviderAuthError, TransientProviderError
from pulse_sync.models.records import Period
from pulse_sync.services.period_planner import PeriodPlanner
from pulse_sync.utils.logger import log

GA4_SCOPES = ["https://www.googleapis.com/auth/analytics.readonly"]

# google-api-core errors that are worth retrying
_TRANSIENT_ERRORS = (
    google_exceptions.TooManyRequests,
    google_exceptions.ResourceExhausted,
    google_exceptions.ServiceUnavailable,
    google_exceptions.DeadlineExceeded,
    google_exceptions.InternalServerError,
    google_exceptions.BadGateway,
    google_exceptions.GatewayTimeout,
)

_AUTH_ERRORS = (
    google_exceptions.Unauthenticated,
    google_exceptions.PermissionDenied,
    auth_exceptions.GoogleAuthError,
)

_CONFIG_ERRORS = (
    google_exceptions.NotFound,
    google_exceptions.InvalidArgument,
)


class GA4Connector(BaseConnector):
    """Connector for Google Analytics 4 Data API"""

    def __init__(self, settings: Optional[Settings] = None, client: Optional[BetaAnalyticsDataClient] = None):
        settings = settings or get_settings()
        super().__init__(
            "Google Analytics 4",
            max_attempts=settings.max_fetch_attempts,
            base_delay=settings.fetch_retry_base_delay,
            max_delay=settings.fetch_retry_max_delay,
        )
        self.credentials_path = settings.ga4_credentials_path
        self.data_delay_days = settings.ga4_data_delay_days
        self.client = client

    async def connect(self) -> bool:
        """Load service account credentials and build the Data API client"""
        try:
            credentials = service_account.Credentials.from_service_account_file(
                self.credentials_path,
                scopes=GA4_SCOPES,
            )
        except FileNotFoundError as e:
            raise ConfigurationError(f"GA4 credentials file not found: {self.credentials_path}") from e
        except (ValueError, auth_exceptions.GoogleAuthError) as e:
            raise ProviderAuthError(f"Invalid GA4 service account credentials: {e}") from e

        self.client = BetaAnalyticsDataClient(credentials=credentials)
        log.info("Connected to Google Analytics 4")
        return True

    def date_range_for(self, period: Period, today: Optional[date] = None) -> Optional[tuple]:
        """
        Calendar bounds of ``period`` clipped to the GA4 processing delay.

        Returns None when the whole period is still inside the delay.
        """
        return PeriodPlanner.reportable_range(period, today or date.today(), self.data_delay_days)

    async def run_report(
        self,
        property_id: str,
        period: Period,
        metric_names: Sequence[str],
        dimensions: Sequence[str] = (),
    ) -> List[ReportRow]:
        """Run one report and return rows as plain dicts"""
        if not self.client:
            await self.connect()

        date_range = self.date_range_for(period)
        if date_range is None:
            log.info(
                f"GA4: {period.key} is inside the {self.data_delay_days}-day processing delay, nothing to fetch"
            )
            return []
        start, end = date_range

        request = RunReportRequest(
            property=f"properties/{property_id}",
            date_ranges=[DateRange(start_date=start.isoformat(), end_date=end.isoformat())],
            metrics=[Metric(name=name) for name in metric_names],
            dimensions=[Dimension(name=name) for name in dimensions],
        )
        if "date" in dimensions:
            request.order_bys = [OrderBy(dimension=OrderBy.DimensionOrderBy(dimension_name="date"))]

        try:
            response = await self._call_client(self.client.run_report, request)
        except _AUTH_ERRORS as e:
            raise ProviderAuthError(f"GA4 rejected credentials for property {property_id}: {e}") from e
        except _TRANSIENT_ERRORS as e:
            raise TransientProviderError(
                f"GA4 transient error for property {property_id}: {e}",
                status_code=getattr(e, "code", None),
            ) from e
        except _CONFIG_ERRORS as e:
            raise ConfigurationError(f"GA4 rejected report for property {property_id}: {e}") from e

        rows = []
        for row in response.rows:
            rows.append({
                "dimensions": [value.value for value in row.dimension_values],
                "metrics": {
                    name: float(value.value or 0)
                    for name, value in zip(metric_names, row.metric_values)
                },
            })

        log.debug(f"GA4 returned {len(rows)} rows for property {property_id}, {period.key}")
        return rows

    @staticmethod
    async def _call_client(method, *args):
        """
        Run a blocking Data API call in a worker thread.

        A running request thread can't be interrupted, so on cancellation
        the caller is held until the request returns.
        """
        call = asyncio.ensure_future(asyncio.to_thread(method, *args))
        try:
            return await asyncio.shield(call)
        except asyncio.CancelledError:
            await asyncio.gather(call, return_exceptions=True)
            raise
