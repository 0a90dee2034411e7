"""
Data synchronization endpoints

Thin trigger surface over the sync engine: no business logic lives here.
"""
from fastapi import APIRouter, Depends, HTTPException, Query
from typing import Any, Dict, Optional
from pydantic import BaseModel

from pulse_sync.exceptions import QueueFullError, StorageError
from pulse_sync.services.job_queue import Job
from pulse_sync.services.sync_engine import SyncEngine
from pulse_sync.utils.logger import log

router = APIRouter(prefix="/sync", tags=["sync"])

# Lazy-init so importing the router does not build the GA4 client
_engine: Optional[SyncEngine] = None


def get_engine() -> SyncEngine:
    global _engine
    if _engine is None:
        from pulse_sync.services.sync_engine import build_engine
        _engine = build_engine()
    return _engine


class EnqueueJobRequest(BaseModel):
    job_type: str
    payload: Dict[str, Any] = {}
    priority: int = 0
    max_attempts: Optional[int] = None


class RegisterClientRequest(BaseModel):
    property_id: str


@router.post("/ga4/{client_id}")
async def sync_ga4(
    client_id: str,
    force: bool = Query(False, description="Refetch every period regardless of stored data"),
    timeout: Optional[float] = Query(None, description="Seconds after which no new period starts"),
    engine: SyncEngine = Depends(get_engine),
):
    """
    Sync the rolling 15-month GA4 window for one client.

    Example: POST /sync/ga4/acme?force=true
    """
    try:
        result = await engine.synchronize(client_id, force=force, timeout=timeout)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return result.to_dict()


@router.post("/ga4/{client_id}/current")
async def refresh_current_period(client_id: str, engine: SyncEngine = Depends(get_engine)):
    """Force-refetch the current month only"""
    try:
        result = await engine.refresh_current_period(client_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return result.to_dict()


@router.get("/ga4/{client_id}/validate")
async def validate_client_access(client_id: str, engine: SyncEngine = Depends(get_engine)):
    """Check the client's GA4 property answers a minimal report"""
    try:
        ok = await engine.validate_client_access(client_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"client_id": client_id, "valid": ok}


@router.get("/ga4/{client_id}/status")
async def get_fetch_status(client_id: str, engine: SyncEngine = Depends(get_engine)):
    """Per-period stored data, in-flight fetches and last errors for one client"""
    try:
        return engine.get_fetch_status(client_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        log.error(f"Fetch status error for {client_id}: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))


@router.put("/clients/{client_id}")
async def register_client(
    client_id: str,
    request: RegisterClientRequest,
    engine: SyncEngine = Depends(get_engine),
):
    """Create or update the GA4 property mapping for a client"""
    try:
        engine.check_client_id(client_id)
        engine.store.register_client(client_id, request.property_id)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except StorageError as e:
        log.error(f"Client registration error: {str(e)}")
        raise HTTPException(status_code=500, detail=str(e))
    return {"client_id": client_id, "property_id": request.property_id}


@router.get("/clients")
async def list_clients(engine: SyncEngine = Depends(get_engine)):
    return {"clients": engine.store.list_clients()}


@router.get("/jobs")
async def get_jobs(engine: SyncEngine = Depends(get_engine)):
    """Background job queue snapshot"""
    return {
        "stats": engine.queue.stats(),
        "jobs": engine.queue.snapshot(),
    }


@router.post("/jobs")
async def enqueue_job(request: EnqueueJobRequest, engine: SyncEngine = Depends(get_engine)):
    """
    Queue a background job.

    Example: POST /sync/jobs {"job_type": "compact", "payload": {"client_id": "acme"}}
    """
    if request.job_type not in engine.queue.job_types:
        raise HTTPException(status_code=400, detail=f"Unknown job type: {request.job_type}")

    job = Job(
        request.job_type,
        dict(request.payload),
        priority=request.priority,
        max_attempts=request.max_attempts or engine.settings.job_max_attempts,
    )
    try:
        engine.enqueue_background_job(job)
    except QueueFullError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return job.to_dict()


@router.get("/cache")
async def get_cache_stats(engine: SyncEngine = Depends(get_engine)):
    return engine.cache.stats()


@router.delete("/cache/{client_id}")
async def invalidate_client_cache(client_id: str, engine: SyncEngine = Depends(get_engine)):
    removed = engine.cache.invalidate_client(client_id)
    return {"client_id": client_id, "entries_removed": removed}
