"""
Metric Store
Persists MetricRecords and answers "what do we already have" questions for the sync engine.
"""
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError

from pulse_sync.exceptions import StorageError
from pulse_sync.models.base import SessionLocal
from pulse_sync.models.metric import ClientMetric, ClientGA4Property
from pulse_sync.models.records import DAILY, MONTHLY, MetricRecord, Period, PeriodStatus, parse_period
from pulse_sync.utils.logger import log


class MetricStore:
    """
    SQLAlchemy-backed store for client metrics.

    Every public method opens its own session so the store can be shared
    across concurrent sync runs.
    """

    def __init__(self, session_factory=SessionLocal):
        self.session_factory = session_factory

    # ── Writes ───────────────────────────────────────────

    def upsert_metric_records(self, client_id: str, records: Iterable[MetricRecord]) -> Dict[str, int]:
        """
        Insert or overwrite records keyed on (owner, metric, period, source type).

        Returns:
            Dict with created/updated counts
        """
        # Last write wins for duplicates inside one batch
        batch = {r.upsert_key: r for r in records}
        if not batch:
            return {"created": 0, "updated": 0}

        period_keys = {key[2] for key in batch}
        db = self.session_factory()
        try:
            existing = {
                (row.owner_id, row.metric_name, row.time_period, row.source_type): row
                for row in db.query(ClientMetric).filter(
                    ClientMetric.client_id == client_id,
                    ClientMetric.time_period.in_(period_keys),
                )
            }

            created = updated = 0
            for key, record in batch.items():
                row = existing.get(key)
                if row is None:
                    row = ClientMetric(
                        client_id=client_id,
                        owner_id=record.owner_id,
                        metric_name=record.metric_name,
                        source_type=record.source_type,
                        time_period=record.period.key,
                    )
                    db.add(row)
                    created += 1
                else:
                    updated += 1
                row.value = record.value
                row.period_month = record.period.month_key
                row.resolution = record.resolution
                row.observed_at = record.observed_at

            db.commit()
            log.debug(f"Upserted metrics for {client_id}: created={created} updated={updated}")
            return {"created": created, "updated": updated}
        except SQLAlchemyError as e:
            db.rollback()
            log.error(f"Failed to upsert {len(batch)} metrics for {client_id}: {e}")
            raise StorageError(f"Upsert failed for {client_id}: {e}") from e
        finally:
            db.close()

    def delete_daily_records(self, client_id: str, period: Period, metric_names: Optional[List[str]] = None) -> int:
        """Delete the daily rows of ``period``'s month. Returns rows deleted."""
        return self.delete_records(client_id, period, DAILY, metric_names)

    def delete_records(
        self,
        client_id: str,
        period: Period,
        resolution: str,
        metric_names: Optional[List[str]] = None,
    ) -> int:
        """Delete rows of one resolution in ``period``'s month, optionally only some metrics."""
        db = self.session_factory()
        try:
            query = db.query(ClientMetric).filter(
                ClientMetric.client_id == client_id,
                ClientMetric.period_month == period.month_key,
                ClientMetric.resolution == resolution,
            )
            if metric_names:
                query = query.filter(ClientMetric.metric_name.in_(metric_names))
            deleted = query.delete(synchronize_session=False)
            db.commit()
            return deleted
        except SQLAlchemyError as e:
            db.rollback()
            log.error(f"Failed to delete {resolution} rows for {client_id} {period.month_key}: {e}")
            raise StorageError(f"Delete failed for {client_id} {period.month_key}: {e}") from e
        finally:
            db.close()

    # ── Reads ────────────────────────────────────────────

    def get_existing_status(self, client_id: str, periods: Iterable[Period]) -> Dict[str, PeriodStatus]:
        """
        Summarize stored data per month.

        A month holding any daily rows reports daily resolution; months
        with nothing stored report resolution None.
        """
        month_keys = sorted({p.month_key for p in periods})
        status = {key: PeriodStatus(period=key) for key in month_keys}
        if not month_keys:
            return status

        db = self.session_factory()
        try:
            rows = (
                db.query(
                    ClientMetric.period_month,
                    ClientMetric.resolution,
                    ClientMetric.metric_name,
                    func.count(ClientMetric.id),
                    func.max(ClientMetric.observed_at),
                )
                .filter(
                    ClientMetric.client_id == client_id,
                    ClientMetric.period_month.in_(month_keys),
                )
                .group_by(ClientMetric.period_month, ClientMetric.resolution, ClientMetric.metric_name)
                .all()
            )
        except SQLAlchemyError as e:
            log.error(f"Failed to read data status for {client_id}: {e}")
            raise StorageError(f"Status lookup failed for {client_id}: {e}") from e
        finally:
            db.close()

        for month_key, resolution, metric_name, count, last_observed in rows:
            entry = status[month_key]
            entry.record_count += count
            if metric_name not in entry.metric_names:
                entry.metric_names.append(metric_name)
            if resolution == DAILY:
                entry.resolution = DAILY
            elif entry.resolution is None:
                entry.resolution = MONTHLY
            if last_observed and (entry.last_observed_at is None or last_observed > entry.last_observed_at):
                entry.last_observed_at = last_observed

        return status

    def get_records(
        self,
        client_id: str,
        period_months: Iterable[str],
        resolution: Optional[str] = None,
        metric_names: Optional[List[str]] = None,
        source_types: Optional[List[str]] = None,
    ) -> List[MetricRecord]:
        """Load records for the given months, optionally narrowed by resolution, metric and source."""
        month_keys = list(set(period_months))
        if not month_keys:
            return []

        db = self.session_factory()
        try:
            query = db.query(ClientMetric).filter(
                ClientMetric.client_id == client_id,
                ClientMetric.period_month.in_(month_keys),
            )
            if resolution:
                query = query.filter(ClientMetric.resolution == resolution)
            if metric_names:
                query = query.filter(ClientMetric.metric_name.in_(metric_names))
            if source_types:
                query = query.filter(ClientMetric.source_type.in_(source_types))
            rows = query.order_by(ClientMetric.time_period, ClientMetric.metric_name).all()
            return [self._to_record(row) for row in rows]
        except SQLAlchemyError as e:
            log.error(f"Failed to load metrics for {client_id}: {e}")
            raise StorageError(f"Read failed for {client_id}: {e}") from e
        finally:
            db.close()

    def get_daily_records(self, client_id: str, period: Period) -> List[MetricRecord]:
        return self.get_records(client_id, [period.month_key], resolution=DAILY)

    def count_records(self, client_id: str, period: Period, resolution: Optional[str] = None) -> int:
        db = self.session_factory()
        try:
            query = db.query(func.count(ClientMetric.id)).filter(
                ClientMetric.client_id == client_id,
                ClientMetric.period_month == period.month_key,
            )
            if resolution:
                query = query.filter(ClientMetric.resolution == resolution)
            return query.scalar() or 0
        finally:
            db.close()

    # ── Client registry ──────────────────────────────────

    def get_property_id(self, client_id: str) -> Optional[str]:
        db = self.session_factory()
        try:
            row = db.query(ClientGA4Property).filter(ClientGA4Property.client_id == client_id).first()
            return row.property_id if row else None
        finally:
            db.close()

    def register_client(self, client_id: str, property_id: str) -> None:
        """Create or update the GA4 property mapping for a client."""
        db = self.session_factory()
        try:
            row = db.query(ClientGA4Property).filter(ClientGA4Property.client_id == client_id).first()
            if row is None:
                row = ClientGA4Property(client_id=client_id, property_id=property_id)
                db.add(row)
            else:
                row.property_id = property_id
                row.updated_at = datetime.utcnow()
            db.commit()
            log.info(f"Registered GA4 property {property_id} for client {client_id}")
        except SQLAlchemyError as e:
            db.rollback()
            raise StorageError(f"Could not register client {client_id}: {e}") from e
        finally:
            db.close()

    def list_clients(self) -> List[str]:
        db = self.session_factory()
        try:
            return [row.client_id for row in db.query(ClientGA4Property).order_by(ClientGA4Property.client_id)]
        finally:
            db.close()

    @staticmethod
    def _to_record(row: ClientMetric) -> MetricRecord:
        return MetricRecord(
            owner_id=row.owner_id,
            metric_name=row.metric_name,
            source_type=row.source_type,
            period=parse_period(row.time_period, row.resolution),
            value=row.value,
            resolution=row.resolution,
            observed_at=row.observed_at,
        )
