"""
Shared fixtures: in-memory database, fake GA4 provider, engine wiring.
"""
import asyncio
import calendar
import os
from datetime import datetime

# Console logging only and no database file during tests
os.environ.setdefault("LOG_DIR", "")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from sqlalchemy.orm import sessionmaker

from pulse_sync.config import Settings
from pulse_sync.connectors.base_connector import BaseConnector
from pulse_sync.exceptions import TransientProviderError
from pulse_sync.models.base import create_db_engine, init_db
from pulse_sync.services.metric_store import MetricStore
from pulse_sync.services.sync_engine import SyncEngine

# Planning reference used across tests: plan covers 2024-04 .. 2025-06
NOW = datetime(2025, 6, 15, 9, 30)

CHANNEL_ROWS = [
    ("Organic Search", 500),
    ("Direct", 300),
    ("(none)", 50),
    ("Paid Social", 100),
    ("Unassigned", 7),
]
DEVICE_ROWS = [("desktop", 600), ("mobile", 300), ("tablet", 57)]
MONTHLY_SESSIONS = 3000.0


def _run(coro):
    return asyncio.run(coro)


def daily_sessions(day: int) -> float:
    return float(100 + day)


class FakeGA4Connector(BaseConnector):
    """
    In-process stand-in for the GA4 Data API.

    ``failures`` maps a period key to how many times its main report
    raises a transient error before succeeding; ``error`` is raised on
    every call.
    """

    def __init__(self, failures=None, error=None, bounce_rate=0.45, max_attempts=5):
        super().__init__("Fake GA4", max_attempts=max_attempts, base_delay=0.0, max_delay=0.0)
        self.failures = dict(failures or {})
        self.error = error
        self.bounce_rate = bounce_rate
        self.calls = []

    async def connect(self) -> bool:
        return True

    async def run_report(self, property_id, period, metric_names, dimensions=()):
        dimensions = tuple(dimensions)
        self.calls.append((period.key, dimensions))
        await asyncio.sleep(0)

        if self.error is not None:
            raise self.error

        if dimensions == ("sessionDefaultChannelGroup",):
            return [{"dimensions": [name], "metrics": {"sessions": float(s)}} for name, s in CHANNEL_ROWS]
        if dimensions == ("deviceCategory",):
            return [{"dimensions": [name], "metrics": {"sessions": float(s)}} for name, s in DEVICE_ROWS]

        if self.failures.get(period.key):
            self.failures[period.key] -= 1
            raise TransientProviderError("429 Too Many Requests", status_code=429)

        if dimensions == ("date",):
            days = calendar.monthrange(period.year, period.month)[1]
            return [
                {
                    "dimensions": [f"{period.year}{period.month:02d}{day:02d}"],
                    "metrics": self._scalar_metrics(daily_sessions(day)),
                }
                for day in range(1, days + 1)
            ]
        return [{"dimensions": [], "metrics": self._scalar_metrics(MONTHLY_SESSIONS)}]

    def _scalar_metrics(self, sessions):
        return {
            "bounceRate": self.bounce_rate,
            "averageSessionDuration": 95.0,
            "screenPageViewsPerSession": 3.2,
            "sessionsPerUser": 1.25,
            "sessions": sessions,
            "totalUsers": sessions / 1.25,
        }

    def main_calls(self, period_key: str) -> int:
        """Number of scalar-report requests made for one period."""
        return sum(
            1 for key, dims in self.calls
            if key == period_key and dims in ((), ("date",))
        )


@pytest.fixture
def settings():
    return Settings(
        _env_file=None,
        log_dir="",
        database_url="sqlite://",
        fetch_retry_base_delay=0.0,
        fetch_retry_max_delay=0.0,
        job_retry_base_delay=0.0,
        job_retry_max_delay=0.0,
        enable_scheduler=False,
    )


@pytest.fixture
def session_factory():
    engine = create_db_engine("sqlite://")
    init_db(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def store(session_factory):
    store = MetricStore(session_factory)
    store.register_client("acme", "123456789")
    return store


@pytest.fixture
def connector():
    return FakeGA4Connector()


@pytest.fixture
def engine(settings, store, connector):
    return SyncEngine(settings, store, connector)
