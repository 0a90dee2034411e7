"""
Aggregation Service

Rolls stored MetricRecords up into larger periods. The same roll-up
backs two callers:

- the storage optimizer, turning a month of daily rows into monthly rows
- the dashboard, combining several months into one figure per metric

Roll-up rules by metric kind:
- additive (sessions, users): summed
- rate (bounce rate, duration, ...): weighted by the matching additive
  metric of the same period, plain mean when no weights are stored
- distribution (channels, devices): sessions summed per category and
  percentages recomputed
"""
from collections import defaultdict
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from pulse_sync.models.records import (
    ADDITIVE,
    DISTRIBUTION,
    METRICS,
    MONTHLY,
    MetricRecord,
    MetricValue,
    Period,
    metric_kind,
)
from pulse_sync.services.ga4_fetch_service import build_distribution
from pulse_sync.services.metric_store import MetricStore
from pulse_sync.utils.logger import log

# (owner_id, source_type, metric_name)
RollupKey = Tuple[str, str, str]


def _weighted_mean(pairs: List[Tuple[float, Optional[float]]]) -> float:
    weights = [w for _, w in pairs]
    total_weight = sum(w for w in weights if w)
    if total_weight > 0 and all(w is not None for w in weights):
        return sum(v * w for v, w in pairs) / total_weight
    return sum(v for v, _ in pairs) / len(pairs)


def _merge_distributions(values: Iterable[list]) -> List[Dict]:
    pairs = []
    for value in values:
        for item in value or []:
            pairs.append((item["category"], item.get("sessions", 0)))
    return build_distribution(pairs)


def rollup(records: Iterable[MetricRecord]) -> Dict[RollupKey, MetricValue]:
    """
    Combine records of several periods into one value per
    (owner, source type, metric).
    """
    records = list(records)
    groups: Dict[RollupKey, List[MetricRecord]] = defaultdict(list)
    additive_by_period: Dict[Tuple[str, str, str, str], float] = {}

    for record in records:
        groups[(record.owner_id, record.source_type, record.metric_name)].append(record)
        if metric_kind(record.metric_name) == ADDITIVE:
            key = (record.owner_id, record.source_type, record.metric_name, record.period.key)
            additive_by_period[key] = float(record.value)

    result: Dict[RollupKey, MetricValue] = {}
    for (owner_id, source_type, metric_name), items in groups.items():
        kind = metric_kind(metric_name)
        if kind == ADDITIVE:
            result[(owner_id, source_type, metric_name)] = float(sum(float(r.value) for r in items))
        elif kind == DISTRIBUTION:
            result[(owner_id, source_type, metric_name)] = _merge_distributions(r.value for r in items)
        else:
            definition = METRICS.get(metric_name)
            weight_metric = definition.weight_metric if definition else None
            pairs = [
                (
                    float(r.value),
                    additive_by_period.get((owner_id, source_type, weight_metric, r.period.key))
                    if weight_metric else None,
                )
                for r in items
            ]
            result[(owner_id, source_type, metric_name)] = round(_weighted_mean(pairs), 6)
    return result


def monthly_view(records: Iterable[MetricRecord]) -> List[MetricRecord]:
    """
    One monthly record per (owner, source type, metric, month).

    A stored monthly record wins; otherwise the month's daily rows are
    rolled up.
    """
    by_month: Dict[str, List[MetricRecord]] = defaultdict(list)
    for record in records:
        by_month[record.period.month_key].append(record)

    view: List[MetricRecord] = []
    for month_key in sorted(by_month):
        month_records = by_month[month_key]
        monthly = {
            (r.owner_id, r.source_type, r.metric_name): r
            for r in month_records if r.resolution == MONTHLY
        }
        daily = [
            r for r in month_records
            if r.resolution != MONTHLY and (r.owner_id, r.source_type, r.metric_name) not in monthly
        ]
        view.extend(monthly.values())

        if daily:
            month = daily[0].period.month_period()
            observed = {}
            for r in daily:
                key = (r.owner_id, r.source_type, r.metric_name)
                observed[key] = max(observed.get(key, r.observed_at), r.observed_at)
            for (owner_id, source_type, metric_name), value in rollup(daily).items():
                view.append(MetricRecord(
                    owner_id=owner_id,
                    metric_name=metric_name,
                    source_type=source_type,
                    period=Period(month.year, month.month, resolution=MONTHLY),
                    value=value,
                    resolution=MONTHLY,
                    observed_at=observed[(owner_id, source_type, metric_name)],
                ))
    return view


class AggregationService:
    """Builds dashboard aggregates from stored records only."""

    def __init__(self, store: MetricStore):
        self.store = store

    def aggregate(self, client_id: str, period_months: List[str], filters: Optional[dict] = None) -> dict:
        filters = filters or {}
        # Rates need their weight metrics, so metric filtering happens after the roll-up
        wanted = set(filters.get("metric_names") or [])
        records = self.store.get_records(client_id, period_months, source_types=filters.get("source_types"))
        months = monthly_view(records)

        metrics: Dict[str, Dict[str, MetricValue]] = defaultdict(dict)
        for (owner_id, source_type, metric_name), value in rollup(months).items():
            if wanted and metric_name not in wanted:
                continue
            metrics[metric_name][self._series_label(client_id, owner_id, source_type)] = value

        series: Dict[str, Dict[str, list]] = defaultdict(lambda: defaultdict(list))
        for record in sorted(months, key=lambda r: r.period.key):
            if wanted and record.metric_name not in wanted:
                continue
            label = self._series_label(client_id, record.owner_id, record.source_type)
            series[record.metric_name][label].append({
                "period": record.period.month_key,
                "value": record.value,
            })

        log.debug(f"Aggregated {len(records)} records into {len(metrics)} metrics for {client_id}")
        return {
            "client_id": client_id,
            "periods": sorted(set(period_months)),
            "periods_with_data": sorted({r.period.month_key for r in months}),
            "metrics": dict(metrics),
            "series": {name: dict(by_label) for name, by_label in series.items()},
            "record_count": len(records),
            "generated_at": datetime.utcnow().isoformat(),
        }

    @staticmethod
    def _series_label(client_id: str, owner_id: str, source_type: str) -> str:
        # Competitors are stored under their own owner id
        if owner_id == client_id:
            return source_type
        return f"{source_type}:{owner_id}"
