"""
Dashboard aggregate endpoint
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from typing import List, Optional

from pulse_sync.api.sync import get_engine
from pulse_sync.exceptions import StorageError
from pulse_sync.services.sync_engine import SyncEngine
from pulse_sync.utils.logger import log

router = APIRouter(prefix="/dashboard", tags=["dashboard"])


@router.get("/{client_id}")
async def get_dashboard(
    client_id: str,
    period: Optional[List[str]] = Query(None, description="Months as YYYY-MM; defaults to the rolling window"),
    metric: Optional[List[str]] = Query(None, description="Restrict to these metric names"),
    source_type: Optional[List[str]] = Query(None, description="Restrict to these source types"),
    engine: SyncEngine = Depends(get_engine),
):
    """
    Aggregated metrics for a client, built only from stored records.

    Example: GET /dashboard/acme?period=2025-01&period=2025-02&metric=Total%20Sessions
    """
    filters = {}
    if metric:
        filters["metric_names"] = sorted(metric)
    if source_type:
        filters["source_types"] = sorted(source_type)

    try:
        return engine.get_dashboard_aggregate(client_id, period, filters or None)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        log.error(f"Dashboard aggregate error for {client_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
