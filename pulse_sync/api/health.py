"""
Health check and status endpoints
"""
from fastapi import APIRouter, Depends
from datetime import datetime
from pulse_sync.config import get_settings
from pulse_sync import __version__
from pulse_sync.api.sync import get_engine
from pulse_sync.services.sync_engine import SyncEngine

settings = get_settings()

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.utcnow().isoformat(),
        "version": __version__
    }


@router.get("/status")
async def get_status(engine: SyncEngine = Depends(get_engine)):
    """Engine configuration plus live lock, cache, queue and scheduler state"""
    from pulse_sync.scheduler import get_scheduled_jobs

    config = engine.settings
    return {
        "app_name": settings.app_name,
        "version": __version__,
        "environment": settings.environment,
        "sync": {
            "history_months": config.history_months,
            "daily_retention_months": config.daily_retention_months,
            "mutable_window_months": config.mutable_window_months,
            "period_fan_out": config.period_fan_out,
        },
        "locks_held": engine.locks.active_keys(),
        "cache": engine.cache.stats(),
        "jobs": engine.queue.stats(),
        "scheduled_jobs": get_scheduled_jobs(),
        "timestamp": datetime.utcnow().isoformat()
    }
