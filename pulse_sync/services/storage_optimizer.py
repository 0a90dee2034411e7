"""
Storage Optimizer

Compacts daily rows into monthly rows once a month falls out of the
daily-retention window. Each month is compacted under its fetch lock:
monthly aggregates are upserted first and the daily rows are deleted
only after that upsert succeeded, so a failure never loses data.
"""
from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

from pulse_sync.exceptions import StorageError
from pulse_sync.models.records import DAILY, MONTHLY, MetricRecord, Period
from pulse_sync.services.aggregation_service import rollup
from pulse_sync.services.metric_store import MetricStore
from pulse_sync.services.period_planner import PeriodPlanner
from pulse_sync.utils.locks import LockManager, lock_key
from pulse_sync.utils.logger import log


@dataclass
class CompactionResult:
    periods_compacted: List[str] = field(default_factory=list)
    records_upserted: int = 0
    rows_deleted: int = 0
    skipped_periods: List[str] = field(default_factory=list)  # lock held elsewhere
    errors: List[Dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


class StorageOptimizer:
    def __init__(
        self,
        store: MetricStore,
        planner: PeriodPlanner,
        locks: LockManager,
        lock_ttl: Optional[float] = None,
    ):
        self.store = store
        self.planner = planner
        self.locks = locks
        self.lock_ttl = lock_ttl

    def compaction_candidates(self, client_id: str, periods: Iterable[Period], reference: date) -> List[Period]:
        """Months past daily retention that still hold daily rows."""
        aged = [p for p in periods if self.planner.is_past_daily_retention(p, reference)]
        if not aged:
            return []
        status = self.store.get_existing_status(client_id, aged)
        return [p for p in aged if status[p.month_key].resolution == DAILY]

    def compact(self, client_id: str, periods: Iterable[Period], reference: date) -> CompactionResult:
        """
        Compact every eligible month among ``periods``.

        Idempotent: once a month is compacted it has no daily rows left,
        so a second call upserts and deletes nothing.
        """
        result = CompactionResult()
        try:
            candidates = self.compaction_candidates(client_id, periods, reference)
        except StorageError as e:
            result.errors.append({"period": "*", "message": str(e)})
            return result

        for period in candidates:
            with self.locks.held(lock_key(client_id, period), self.lock_ttl) as acquired:
                if not acquired:
                    log.info(f"Compaction of {client_id} {period.month_key} skipped, period is locked")
                    result.skipped_periods.append(period.month_key)
                    continue
                try:
                    upserted, deleted = self.compact_period(client_id, period)
                except StorageError as e:
                    log.error(f"Compaction failed for {client_id} {period.month_key}: {e}")
                    result.errors.append({"period": period.month_key, "message": str(e)})
                    continue

            if deleted:
                result.periods_compacted.append(period.month_key)
            result.records_upserted += upserted
            result.rows_deleted += deleted

        if result.periods_compacted:
            log.info(
                f"Compacted {len(result.periods_compacted)} months for {client_id}: "
                f"{result.rows_deleted} daily rows -> {result.records_upserted} monthly records"
            )
        return result

    def compact_period(self, client_id: str, period: Period) -> Tuple[int, int]:
        """Replace one month's daily rows with monthly aggregates. Caller holds the period lock."""
        daily = self.store.get_daily_records(client_id, period)
        if not daily:
            return 0, 0

        observed = {}
        for record in daily:
            key = (record.owner_id, record.source_type, record.metric_name)
            observed[key] = max(observed.get(key, record.observed_at), record.observed_at)

        month = Period(period.year, period.month, resolution=MONTHLY)
        monthly = [
            MetricRecord(
                owner_id=owner_id,
                metric_name=metric_name,
                source_type=source_type,
                period=month,
                value=value,
                resolution=MONTHLY,
                observed_at=observed[(owner_id, source_type, metric_name)],
            )
            for (owner_id, source_type, metric_name), value in rollup(daily).items()
        ]

        counts = self.store.upsert_metric_records(client_id, monthly)
        deleted = self.store.delete_daily_records(
            client_id, period, metric_names=sorted({r.metric_name for r in monthly})
        )
        return counts["created"] + counts["updated"], deleted
