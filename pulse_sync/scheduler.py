"""
Scheduler for automated GA4 syncs

Uses APScheduler to sync every registered client nightly and to queue
compaction for each client afterwards.
"""
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from zoneinfo import ZoneInfo
import time
from typing import Optional

from pulse_sync.config import get_settings
from pulse_sync.exceptions import QueueFullError
from pulse_sync.services.job_queue import Job
from pulse_sync.services.sync_engine import JOB_COMPACT, SyncEngine
from pulse_sync.utils.logger import log

settings = get_settings()
scheduler = AsyncIOScheduler(timezone=ZoneInfo(settings.timezone))

# Set by start_scheduler(); jobs run against the app's engine
_engine: Optional[SyncEngine] = None


# Scheduled jobs

async def sync_all_ga4():
    """Sync the rolling GA4 window for every registered client"""
    start = time.time()
    log.info("Starting scheduled GA4 sync...")
    results = await _engine.sync_all_clients()
    errors = sum(len(r.errors) for r in results)
    fatal = [r.client_id for r in results if r.fatal_error]
    log.info(
        f"Scheduled GA4 sync completed: {len(results)} clients, {errors} period errors, "
        f"{len(fatal)} fatal in {time.time() - start:.1f}s"
    )
    if fatal:
        log.error(f"GA4 sync fatal for clients: {', '.join(fatal)}")


def enqueue_compaction():
    """Queue a low-priority compaction job per client"""
    queued = 0
    for client_id in _engine.store.list_clients():
        try:
            _engine.enqueue_background_job(
                Job(JOB_COMPACT, {"client_id": client_id}, priority=-1, max_attempts=settings.job_max_attempts)
            )
            queued += 1
        except QueueFullError as e:
            log.warning(f"Compaction not queued for {client_id}: {e}")
    log.info(f"Queued compaction for {queued} clients")


def setup_scheduler():
    """Register all scheduled jobs"""
    scheduler.add_job(
        sync_all_ga4,
        trigger=CronTrigger.from_crontab(settings.sync_ga4_schedule, timezone=ZoneInfo(settings.timezone)),
        id="ga4_sync",
        name="GA4 Sync (all clients)",
        replace_existing=True,
        max_instances=1,
        coalesce=True,
    )
    scheduler.add_job(
        enqueue_compaction,
        trigger=CronTrigger.from_crontab(settings.compaction_schedule, timezone=ZoneInfo(settings.timezone)),
        id="compaction",
        name="Storage compaction (all clients)",
        replace_existing=True,
    )
    log.info(f"Scheduled GA4 sync '{settings.sync_ga4_schedule}', compaction '{settings.compaction_schedule}'")


def start_scheduler(engine: SyncEngine):
    """Start the scheduler"""
    global _engine
    _engine = engine
    setup_scheduler()
    scheduler.start()
    log.info("Scheduler started")


def stop_scheduler():
    """Stop the scheduler"""
    if scheduler.running:
        scheduler.shutdown(wait=False)
    log.info("Scheduler stopped")


def get_scheduled_jobs() -> list:
    """
    Get list of all scheduled jobs

    Returns:
        List of job info dicts
    """
    jobs = []

    for job in scheduler.get_jobs():
        next_run = job.next_run_time

        jobs.append({
            'id': job.id,
            'name': job.name,
            'next_run': next_run.isoformat() if next_run else None,
            'trigger': str(job.trigger)
        })

    return jobs
