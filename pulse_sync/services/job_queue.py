"""
Background Job Queue

Runs derived work (cache warm-up, deferred compaction) off the sync path.

- at most ``max_concurrent`` jobs run at once
- highest priority first, FIFO within a priority
- a failed job goes to a separate retry lane with exponential backoff;
  the primary lane is served first so retries never starve new work, but a
  ready retry is taken after every ``retry_every`` primary dispatches so a
  steady stream of new jobs cannot hold retries back forever
- after ``max_attempts`` the job is dropped and handed to the error sink,
  never raised into the caller

Usage:
    queue = BackgroundJobQueue(max_concurrent=3)
    queue.register("compact", handle_compact)
    queue.start()                       # inside a running event loop
    queue.enqueue(Job("compact", {"client_id": "acme"}, priority=5))
"""
import asyncio
import heapq
import itertools
import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

from pulse_sync.exceptions import QueueFullError
from pulse_sync.utils.logger import log
from pulse_sync.utils.retry import calculate_backoff

PRIMARY_LANE = "primary"
RETRY_LANE = "retry"
ACTIVE = "active"


@dataclass
class Job:
    job_type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    priority: int = 0  # higher runs first
    attempts: int = 0
    max_attempts: int = 3
    job_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    enqueued_at: datetime = field(default_factory=datetime.utcnow)
    last_error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "job_id": self.job_id,
            "job_type": self.job_type,
            "payload": dict(self.payload),
            "priority": self.priority,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "enqueued_at": self.enqueued_at.isoformat(),
            "last_error": self.last_error,
        }


def _log_dropped_job(job: Job, message: str) -> None:
    log.error(f"Job {job.job_id} ({job.job_type}) dropped after {job.attempts} attempts: {message}")


class BackgroundJobQueue:
    """Priority job queue with a bounded worker count and a retry lane."""

    def __init__(
        self,
        max_concurrent: int = 3,
        max_queue_size: int = 100,
        retry_base_delay: float = 2.0,
        retry_max_delay: float = 120.0,
        retry_every: int = 5,
        error_sink: Optional[Callable[[Job, str], None]] = None,
    ):
        self.max_concurrent = max_concurrent
        self.max_queue_size = max_queue_size
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self.retry_every = max(1, retry_every)
        self.error_sink = error_sink or _log_dropped_job

        self._mutex = threading.Lock()
        self._seq = itertools.count()
        self._primary: List[Tuple[int, int, Job]] = []  # (-priority, seq, job)
        self._retry: List[Tuple[float, int, Job]] = []  # (ready_at, seq, job)
        self._active: Dict[str, Job] = {}
        self._handlers: Dict[str, Callable] = {}
        self._primary_streak = 0  # primary dispatches since the last retry

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._wakeup: Optional[asyncio.Event] = None
        self._dispatcher: Optional[asyncio.Task] = None
        self._tasks: set = set()
        self._running = False

        self.completed = 0
        self.failed_attempts = 0
        self.dropped = 0

    # ── Setup ────────────────────────────────────────────

    def register(self, job_type: str, handler: Callable) -> None:
        """Register a sync or async ``handler(job)`` for ``job_type``."""
        self._handlers[job_type] = handler

    @property
    def job_types(self) -> List[str]:
        return sorted(self._handlers)

    @property
    def is_running(self) -> bool:
        return self._running

    def start(self) -> None:
        """Start dispatching in the running event loop."""
        if self._running:
            return
        self._bind_loop()
        self._running = True
        self._dispatcher = self._loop.create_task(self._dispatch(until_idle=False))
        log.info(f"Job queue started (max_concurrent={self.max_concurrent})")

    async def stop(self) -> None:
        """Stop dispatching and wait for running jobs. Pending jobs stay queued."""
        if not self._running:
            return
        self._running = False
        self._notify()
        if self._dispatcher:
            await self._dispatcher
            self._dispatcher = None
        if self._tasks:
            await asyncio.gather(*list(self._tasks))
        log.info("Job queue stopped")

    async def drain(self) -> None:
        """Run until both lanes are empty and no job is active, retries included."""
        self._bind_loop()
        await self._dispatch(until_idle=True)

    # ── Mutation ─────────────────────────────────────────

    def enqueue(self, job: Job) -> Job:
        with self._mutex:
            size = len(self._primary) + len(self._retry)
            if size >= self.max_queue_size:
                raise QueueFullError(f"Job queue is full ({size}/{self.max_queue_size})")
            heapq.heappush(self._primary, (-job.priority, next(self._seq), job))
        log.debug(f"Enqueued job {job.job_id} ({job.job_type}, priority {job.priority})")
        self._notify()
        return job

    # ── Inspection ───────────────────────────────────────

    def snapshot(self) -> List[dict]:
        """Point-in-time copy of every queued and running job, in dispatch order per lane."""
        with self._mutex:
            primary = sorted(self._primary)
            retry = sorted(self._retry)
            active = list(self._active.values())
        now = time.monotonic()

        jobs = []
        for _, _, job in primary:
            jobs.append({**job.to_dict(), "lane": PRIMARY_LANE})
        for ready_at, _, job in retry:
            jobs.append({**job.to_dict(), "lane": RETRY_LANE, "ready_in": round(max(0.0, ready_at - now), 3)})
        for job in active:
            jobs.append({**job.to_dict(), "lane": ACTIVE})
        return jobs

    def stats(self) -> dict:
        with self._mutex:
            return {
                "running": self._running,
                "pending": len(self._primary),
                "retrying": len(self._retry),
                "active": len(self._active),
                "completed": self.completed,
                "failed_attempts": self.failed_attempts,
                "dropped": self.dropped,
                "max_concurrent": self.max_concurrent,
                "max_queue_size": self.max_queue_size,
                "retry_every": self.retry_every,
            }

    def __len__(self) -> int:
        with self._mutex:
            return len(self._primary) + len(self._retry)

    # ── Dispatch ─────────────────────────────────────────

    def _bind_loop(self) -> None:
        loop = asyncio.get_running_loop()
        if self._loop is not loop:
            self._loop = loop
            self._wakeup = asyncio.Event()

    def _notify(self) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        try:
            current = asyncio.get_running_loop()
        except RuntimeError:
            current = None
        if current is loop:
            self._wakeup.set()
        else:
            loop.call_soon_threadsafe(self._wakeup.set)

    def _pop_next(self) -> Optional[Job]:
        # caller holds _mutex
        retry_ready = bool(self._retry) and self._retry[0][0] <= time.monotonic()
        if self._primary and not (retry_ready and self._primary_streak >= self.retry_every):
            self._primary_streak += 1
            return heapq.heappop(self._primary)[2]
        if retry_ready:
            self._primary_streak = 0
            return heapq.heappop(self._retry)[2]
        return None

    def _launch_ready(self) -> None:
        while True:
            with self._mutex:
                if len(self._active) >= self.max_concurrent:
                    return
                job = self._pop_next()
                if job is None:
                    return
                job.attempts += 1
                self._active[job.job_id] = job
            task = self._loop.create_task(self._run_job(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

    async def _dispatch(self, until_idle: bool) -> None:
        while True:
            self._wakeup.clear()
            if self._running or until_idle:
                self._launch_ready()

            with self._mutex:
                idle = not self._primary and not self._retry and not self._active
                slots_free = len(self._active) < self.max_concurrent
                next_retry = self._retry[0][0] if self._retry else None

            if until_idle and idle:
                return
            if not until_idle and not self._running:
                return

            timeout = None
            if slots_free and next_retry is not None:
                timeout = max(0.0, next_retry - time.monotonic())
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout)
            except asyncio.TimeoutError:
                continue

    async def _run_job(self, job: Job) -> None:
        handler = self._handlers.get(job.job_type)
        try:
            if handler is None:
                job.last_error = f"No handler registered for job type {job.job_type!r}"
                job.attempts = job.max_attempts
                self._drop(job)
                return
            result = handler(job)
            if asyncio.iscoroutine(result):
                await result
            with self._mutex:
                self.completed += 1
            log.debug(f"Job {job.job_id} ({job.job_type}) completed on attempt {job.attempts}")
        except Exception as e:
            job.last_error = f"{type(e).__name__}: {e}"
            self._handle_failure(job)
        finally:
            with self._mutex:
                self._active.pop(job.job_id, None)
            self._wakeup.set()

    def _handle_failure(self, job: Job) -> None:
        with self._mutex:
            self.failed_attempts += 1
        if job.attempts >= job.max_attempts:
            self._drop(job)
            return

        delay = calculate_backoff(job.attempts, base_delay=self.retry_base_delay, max_delay=self.retry_max_delay)
        with self._mutex:
            heapq.heappush(self._retry, (time.monotonic() + delay, next(self._seq), job))
        log.warning(
            f"Job {job.job_id} ({job.job_type}) attempt {job.attempts}/{job.max_attempts} failed: "
            f"{job.last_error}. Retrying in {delay:.1f}s"
        )

    def _drop(self, job: Job) -> None:
        with self._mutex:
            self.dropped += 1
        try:
            self.error_sink(job, job.last_error or "unknown error")
        except Exception as e:
            log.error(f"Error sink failed for job {job.job_id}: {e}")
