"""
Sync Engine

Orchestrates a GA4 sync run for one client:

    plan periods -> per period: lock, re-check, fetch, upsert, release
                 -> compact aged daily rows -> invalidate cached aggregates

Periods are independent. A transient or storage failure is recorded
against its period and the run carries on; an authentication or
configuration failure stops new periods from starting. synchronize()
always returns a SyncResult.
"""
import asyncio
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Dict, List, Optional, Sequence, Union

from pulse_sync.config import Settings, get_settings
from pulse_sync.connectors.base_connector import BaseConnector
from pulse_sync.exceptions import FATAL_ERRORS, ConfigurationError, PulseSyncError, QueueFullError
from pulse_sync.models.records import DAILY, MONTHLY, DISTRIBUTION, MetricRecord, Period, metric_kind, parse_period
from pulse_sync.services.aggregation_service import AggregationService
from pulse_sync.services.ga4_fetch_service import GA4FetchService, validate_client_id
from pulse_sync.services.job_queue import BackgroundJobQueue, Job
from pulse_sync.services.metric_store import MetricStore
from pulse_sync.services.period_planner import PeriodPlanner
from pulse_sync.services.storage_optimizer import StorageOptimizer
from pulse_sync.utils.cache import QueryCache
from pulse_sync.utils.locks import LockManager, lock_key
from pulse_sync.utils.logger import log
from pulse_sync.utils.retry import RetryStats

JOB_RECOMPUTE_AGGREGATES = "recompute_aggregates"
JOB_COMPACT = "compact"


@dataclass
class SyncResult:
    """
    Outcome of one run.

    Every planned period lands in exactly one of: processed, ``errors``,
    ``skipped_periods`` (held by another run) or ``not_started`` (fatal error
    or deadline). ``fatal_error`` is a run-level summary; the periods that
    raised it are also listed in ``errors``, so the four buckets always add
    up to the plan.
    """
    client_id: str
    started_at: datetime = field(default_factory=datetime.utcnow)
    completed_at: Optional[datetime] = None
    periods_processed: int = 0
    daily_periods: int = 0
    monthly_periods: int = 0
    periods_fetched: int = 0
    records_upserted: int = 0
    retries: int = 0
    errors: List[Dict[str, str]] = field(default_factory=list)
    skipped_periods: List[str] = field(default_factory=list)
    not_started: List[str] = field(default_factory=list)
    fatal_error: Optional[str] = None
    compaction: Optional[dict] = None

    @property
    def success(self) -> bool:
        return self.fatal_error is None and not self.errors

    @property
    def duration_seconds(self) -> float:
        end = self.completed_at or datetime.utcnow()
        return (end - self.started_at).total_seconds()

    def to_dict(self) -> dict:
        return {
            "client_id": self.client_id,
            "success": self.success,
            "periods_processed": self.periods_processed,
            "daily_periods": self.daily_periods,
            "monthly_periods": self.monthly_periods,
            "periods_fetched": self.periods_fetched,
            "records_upserted": self.records_upserted,
            "retries": self.retries,
            "errors": list(self.errors),
            "skipped_periods": list(self.skipped_periods),
            "not_started": list(self.not_started),
            "fatal_error": self.fatal_error,
            "compaction": self.compaction,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "duration_seconds": round(self.duration_seconds, 3),
        }


class SyncEngine:
    """
    Entry point for triggers (API, scheduler). All collaborators are
    injected; the engine reads configuration only from ``settings``.
    """

    def __init__(
        self,
        settings: Settings,
        store: MetricStore,
        connector: BaseConnector,
        locks: Optional[LockManager] = None,
        cache: Optional[QueryCache] = None,
        queue: Optional[BackgroundJobQueue] = None,
    ):
        self.settings = settings
        self.store = store
        self.connector = connector
        self.planner = PeriodPlanner.from_settings(settings)
        self.locks = locks or LockManager(default_ttl=settings.lock_ttl_seconds)
        self.cache = cache or QueryCache(
            default_ttl=settings.cache_ttl_seconds,
            max_entries=settings.cache_max_entries,
        )
        self.queue = queue or BackgroundJobQueue(
            max_concurrent=settings.max_concurrent_jobs,
            max_queue_size=settings.max_queue_size,
            retry_base_delay=settings.job_retry_base_delay,
            retry_max_delay=settings.job_retry_max_delay,
            retry_every=settings.job_retry_every,
        )
        self.fetcher = GA4FetchService(connector, store.get_property_id, self.planner)
        self.optimizer = StorageOptimizer(store, self.planner, self.locks, settings.lock_ttl_seconds)
        self.aggregator = AggregationService(store)

        # client_id -> period key -> last error; cleared when the period next succeeds
        self._period_errors: Dict[str, Dict[str, dict]] = {}
        self._last_runs: Dict[str, SyncResult] = {}

        self.queue.register(JOB_RECOMPUTE_AGGREGATES, self._handle_recompute_aggregates)
        self.queue.register(JOB_COMPACT, self._handle_compact)

    # ── Sync ─────────────────────────────────────────────

    async def synchronize(
        self,
        client_id: str,
        force: bool = False,
        timeout: Optional[float] = None,
        now: Optional[datetime] = None,
    ) -> SyncResult:
        """
        Sync the rolling history window for ``client_id``.

        Args:
            client_id: Client identifier
            force: Refetch every period regardless of stored data
            timeout: Seconds after which no new period starts
            now: Planning reference time (defaults to the current time)
        """
        self.check_client_id(client_id)
        now = now or datetime.now()
        return await self._run(client_id, self.planner.plan(now), force, timeout, now)

    async def refresh_current_period(self, client_id: str, now: Optional[datetime] = None) -> SyncResult:
        """Force-refetch only the month containing ``now``."""
        self.check_client_id(client_id)
        now = now or datetime.now()
        return await self._run(client_id, self.planner.plan(now)[:1], True, None, now)

    async def sync_all_clients(self, force: bool = False) -> List[SyncResult]:
        """Sync every registered client; runs interleave."""
        clients = self.store.list_clients()
        if not clients:
            log.info("No clients registered, nothing to sync")
            return []
        results = await asyncio.gather(*(self.synchronize(c, force=force) for c in clients))
        failed = [r.client_id for r in results if not r.success]
        log.info(f"Synced {len(results)} clients ({len(failed)} with errors{': ' + ', '.join(failed) if failed else ''})")
        return list(results)

    async def _run(
        self,
        client_id: str,
        periods: List[Period],
        force: bool,
        timeout: Optional[float],
        now: datetime,
    ) -> SyncResult:
        result = SyncResult(client_id=client_id)
        reference = now.date() if isinstance(now, datetime) else now
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout if timeout is not None else None

        log.info(f"Starting GA4 sync for {client_id}: {len(periods)} periods (force={force})")

        try:
            self.fetcher.resolve_property(client_id)
        except ConfigurationError as e:
            log.error(f"GA4 sync for {client_id} aborted: {e}")
            result.fatal_error = str(e)
            result.not_started = [p.key for p in periods]
            result.completed_at = datetime.utcnow()
            self._last_runs[client_id] = result
            return result

        semaphore = asyncio.Semaphore(max(1, self.settings.period_fan_out))
        await asyncio.gather(*(
            self._process_period(client_id, period, force, reference, deadline, semaphore, result)
            for period in periods
        ))

        compaction = self.optimizer.compact(client_id, periods, reference)
        result.compaction = compaction.to_dict()
        self.cache.invalidate_client(client_id)
        if result.periods_fetched and self.queue.is_running:
            self._enqueue_warmup(client_id)
        result.completed_at = datetime.utcnow()
        self._last_runs[client_id] = result

        if result.success:
            log.info(
                f"GA4 sync for {client_id} completed: {result.periods_processed} periods "
                f"({result.periods_fetched} fetched) in {result.duration_seconds:.1f}s"
            )
        else:
            log.warning(
                f"GA4 sync for {client_id} finished with {len(result.errors)} errors"
                + (f", fatal: {result.fatal_error}" if result.fatal_error else "")
            )
        return result

    async def _process_period(
        self,
        client_id: str,
        period: Period,
        force: bool,
        reference: date,
        deadline: Optional[float],
        semaphore: asyncio.Semaphore,
        result: SyncResult,
    ) -> None:
        async with semaphore:
            if result.fatal_error or (deadline is not None and asyncio.get_running_loop().time() >= deadline):
                result.not_started.append(period.key)
                return

            key = lock_key(client_id, period)
            if not self.locks.acquire(key, self.settings.lock_ttl_seconds):
                log.info(f"{key} is being fetched by another run, skipping")
                result.skipped_periods.append(period.key)
                return

            stats = RetryStats()
            try:
                status = self.store.get_existing_status(client_id, [period])[period.month_key]
                refreshed = status.last_observed_at is not None and status.last_observed_at >= result.started_at
                if not refreshed and self.fetcher.should_fetch(status, period, force, reference):
                    records = await self.fetcher.fetch_period(client_id, period, retry_stats=stats)
                    result.records_upserted += self._store_period(client_id, period, records)
                    result.periods_fetched += 1
                self._count_processed(period, result)
                self._period_errors.get(client_id, {}).pop(period.key, None)
            except FATAL_ERRORS as e:
                log.error(f"Fatal error syncing {key}: {e}")
                if result.fatal_error is None:
                    result.fatal_error = str(e)
                self._record_period_error(result, period, str(e))
            except PulseSyncError as e:
                log.error(f"Failed to sync {key}: {e}")
                self._record_period_error(result, period, str(e))
            except Exception as e:
                log.exception(f"Unexpected error syncing {key}: {e}")
                self._record_period_error(result, period, f"{type(e).__name__}: {e}")
            finally:
                result.retries += stats.retries
                self.locks.release(key)

    def _record_period_error(self, result: SyncResult, period: Period, message: str) -> None:
        result.errors.append({"period": period.key, "message": message})
        self._period_errors.setdefault(result.client_id, {})[period.key] = {
            "message": message,
            "at": datetime.utcnow(),
        }

    def _store_period(self, client_id: str, period: Period, records: List[MetricRecord]) -> int:
        """Upsert fetched records and drop rows of the other resolution for the same metrics."""
        if not records:
            return 0
        counts = self.store.upsert_metric_records(client_id, records)

        # Distributions are always monthly; scalar metrics follow the period's resolution
        scalar_names = sorted({r.metric_name for r in records if metric_kind(r.metric_name) != DISTRIBUTION})
        if scalar_names:
            stale = MONTHLY if period.resolution == DAILY else DAILY
            removed = self.store.delete_records(client_id, period, stale, scalar_names)
            if removed:
                log.info(f"Removed {removed} {stale} rows superseded by {period.resolution} data for {client_id} {period.key}")
        return counts["created"] + counts["updated"]

    @staticmethod
    def _count_processed(period: Period, result: SyncResult) -> None:
        result.periods_processed += 1
        if period.resolution == DAILY:
            result.daily_periods += 1
        else:
            result.monthly_periods += 1

    # ── Reads ────────────────────────────────────────────

    def get_dashboard_aggregate(
        self,
        client_id: str,
        periods: Optional[Sequence[Union[str, Period]]] = None,
        filters: Optional[dict] = None,
    ) -> dict:
        """Aggregate stored records for ``periods`` (default: the current plan), served through the query cache."""
        self.check_client_id(client_id)
        month_keys = self._month_keys(periods)
        key = QueryCache.dashboard_key(client_id, month_keys, filters)
        return self.cache.get_or_compute(
            key,
            None,
            lambda: self.aggregator.aggregate(client_id, month_keys, filters),
        )

    def get_fetch_status(self, client_id: str, now: Optional[datetime] = None) -> dict:
        """
        Per-period fetch status for the current plan: what is stored, whether
        a fetch holds the period lock right now, and the period's last error.
        """
        self.check_client_id(client_id)
        periods = self.planner.plan(now or datetime.now())
        stored = self.store.get_existing_status(client_id, periods)
        errors = self._period_errors.get(client_id, {})

        rows = []
        for period in periods:
            status = stored[period.month_key]
            error = errors.get(period.key)
            rows.append({
                "period": period.key,
                "planned_resolution": period.resolution,
                "stored_resolution": status.resolution,
                "record_count": status.record_count,
                "last_refreshed_at": status.last_observed_at.isoformat() if status.last_observed_at else None,
                "in_progress": self.locks.is_locked(lock_key(client_id, period)),
                "last_error": error["message"] if error else None,
                "last_error_at": error["at"].isoformat() if error else None,
            })

        last_run = self._last_runs.get(client_id)
        return {
            "client_id": client_id,
            "property_id": self.store.get_property_id(client_id),
            "periods": rows,
            "in_progress": sum(1 for row in rows if row["in_progress"]),
            "with_errors": sum(1 for row in rows if row["last_error"]),
            "last_run": last_run.to_dict() if last_run else None,
        }

    async def validate_client_access(self, client_id: str) -> bool:
        self.check_client_id(client_id)
        return await self.fetcher.validate_client_access(client_id, date.today())

    # ── Background jobs ──────────────────────────────────

    def enqueue_background_job(self, job: Job) -> Job:
        return self.queue.enqueue(job)

    def _enqueue_warmup(self, client_id: str) -> None:
        job = Job(
            JOB_RECOMPUTE_AGGREGATES,
            {"client_id": client_id},
            max_attempts=self.settings.job_max_attempts,
        )
        try:
            self.queue.enqueue(job)
        except QueueFullError as e:
            log.warning(f"Skipping aggregate warm-up for {client_id}: {e}")

    def _handle_recompute_aggregates(self, job: Job) -> None:
        client_id = job.payload["client_id"]
        periods = job.payload.get("periods")
        filters = job.payload.get("filters")
        month_keys = self._month_keys(periods)
        generation = self.cache.generation
        value = self.aggregator.aggregate(client_id, month_keys, filters)
        self.cache.set(QueryCache.dashboard_key(client_id, month_keys, filters), value, generation=generation)

    def _handle_compact(self, job: Job) -> None:
        client_id = job.payload["client_id"]
        now = datetime.now()
        result = self.optimizer.compact(client_id, self.planner.plan(now), now.date())
        if result.errors:
            raise PulseSyncError(f"Compaction for {client_id} had {len(result.errors)} errors: {result.errors[0]['message']}")
        if result.periods_compacted:
            self.cache.invalidate_client(client_id)

    # ── Helpers ──────────────────────────────────────────

    def _month_keys(self, periods: Optional[Sequence[Union[str, Period]]]) -> List[str]:
        if not periods:
            return [p.month_key for p in self.planner.plan(datetime.now())]
        keys = set()
        for period in periods:
            keys.add(period.month_key if isinstance(period, Period) else parse_period(period).month_key)
        return sorted(keys)

    @staticmethod
    def check_client_id(client_id: str) -> None:
        if not validate_client_id(client_id):
            raise ValueError(f"Invalid client id: {client_id!r}")


def build_engine(
    settings: Optional[Settings] = None,
    store: Optional[MetricStore] = None,
    connector: Optional[BaseConnector] = None,
) -> SyncEngine:
    """Wire an engine from settings with the default store and GA4 connector."""
    settings = settings or get_settings()
    if connector is None:
        from pulse_sync.connectors.ga4_connector import GA4Connector
        connector = GA4Connector(settings)
    return SyncEngine(settings, store or MetricStore(), connector)
