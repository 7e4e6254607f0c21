"""
Background worker for pipeline jobs.
Polls the job queue and runs one stage at a time.
"""

import asyncio
import time
from datetime import datetime, timedelta
from enum import Enum
from typing import Optional

import aiosqlite
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from novelforge.jobs.database import JobDatabase
from novelforge.jobs.errors import (
    UnknownJobTypeError,
    is_rate_limit_error,
    is_retryable,
    rate_limit_reset,
)
from novelforge.jobs.models import Job
from novelforge.jobs.progress import ProgressStore
from novelforge.jobs.recovery import StaleJobRecovery
from novelforge.pipeline.orchestrator import PipelineOrchestrator
from novelforge.pipeline.registry import JobContext, JobTypeRegistry
from novelforge.utils.logging import job_logger as logger


class WorkerState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


class PipelineWorker:
    """
    Background worker that processes pipeline jobs.

    The scheduler calls process_jobs() every poll interval. Each call drains
    the queue one job at a time and stops early after a requeue, so a retry
    always waits for a later poll and its backoff delay. A rate limit pauses
    polling altogether until the provider's reset time.
    """

    def __init__(
        self,
        jobs: JobDatabase,
        registry: JobTypeRegistry,
        orchestrator: PipelineOrchestrator,
        recovery: StaleJobRecovery,
        progress: Optional[ProgressStore] = None,
        poll_interval_seconds: float = 1.0,
        max_attempts: int = 3,
        store_error_backoff_seconds: float = 5.0,
        progress_purge_interval_seconds: float = 60.0,
        retry_backoff_seconds: float = 30.0,
        retry_backoff_max_seconds: float = 600.0,
        rate_limit_fallback: timedelta = timedelta(minutes=30)
    ):
        self.jobs = jobs
        self.registry = registry
        self.orchestrator = orchestrator
        self.recovery = recovery
        self.progress = progress
        self.poll_interval = poll_interval_seconds
        self.max_attempts = max_attempts
        self.store_error_backoff = store_error_backoff_seconds
        self.progress_purge_interval = progress_purge_interval_seconds
        self.retry_backoff = retry_backoff_seconds
        self.retry_backoff_max = retry_backoff_max_seconds
        self.rate_limit_fallback = rate_limit_fallback

        self.scheduler = AsyncIOScheduler()
        self.state = WorkerState.STOPPED

        self._is_processing = False  # Prevent concurrent job processing
        self._current_job_id: str | None = None
        self._current_task: asyncio.Task | None = None
        self._idle = asyncio.Event()
        self._idle.set()
        self._backoff_until = 0.0
        self._paused_until: Optional[datetime] = None

        self.jobs_completed = 0
        self.jobs_failed = 0
        self.jobs_retried = 0
        self.jobs_rate_limited = 0

    async def start(self):
        """Recover stale jobs, then start polling."""
        if self.state != WorkerState.STOPPED:
            return

        self.state = WorkerState.STARTING
        try:
            await self.recovery.recover()
        except Exception:
            self.state = WorkerState.STOPPED
            raise

        self.scheduler.add_job(
            self.process_jobs,
            trigger=IntervalTrigger(seconds=self.poll_interval),
            id="pipeline_worker",
            name="Process pipeline jobs",
            replace_existing=True,
            max_instances=1  # Prevent overlapping runs
        )
        if self.progress is not None:
            self.scheduler.add_job(
                self._purge_progress,
                trigger=IntervalTrigger(seconds=self.progress_purge_interval),
                id="progress_purge",
                name="Purge expired progress snapshots",
                replace_existing=True,
                max_instances=1
            )

        self.scheduler.start()
        self.state = WorkerState.RUNNING
        print(f"  Pipeline worker started (polling every {self.poll_interval}s)")
        logger.info(
            "Pipeline worker started",
            poll_interval=self.poll_interval,
            max_attempts=self.max_attempts,
            recovered=self.recovery.recovered,
        )

    async def stop(self, timeout: float = 120.0):
        """
        Stop polling and wait up to `timeout` seconds for the job in flight.

        A job still running after the timeout is cancelled and left in
        'running'; the next startup's recovery puts it back in the queue.
        """
        if self.state in (WorkerState.STOPPED, WorkerState.STOPPING):
            return

        self.state = WorkerState.STOPPING
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        if self._is_processing:
            logger.info("Waiting for in-flight job", job_id=self._current_job_id, timeout=timeout)
            try:
                await asyncio.wait_for(self._idle.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                task = self._current_task
                if task is not None and not task.done():
                    logger.warning(
                        "Shutdown timeout reached; abandoning job for recovery",
                        job_id=self._current_job_id,
                    )
                    task.cancel()
                    await asyncio.wait({task})
                await self._idle.wait()

        self.state = WorkerState.STOPPED
        print("  Pipeline worker stopped")
        logger.info(
            "Pipeline worker stopped",
            completed=self.jobs_completed,
            failed=self.jobs_failed,
            retried=self.jobs_retried,
            rate_limited=self.jobs_rate_limited,
        )

    async def process_jobs(self) -> int:
        """
        Main job processing loop.
        Called by scheduler every poll_interval seconds.

        Returns the number of jobs processed.
        """
        # Skip if already processing a job
        if self._is_processing or self.state == WorkerState.STOPPING:
            return 0
        if time.monotonic() < self._backoff_until:
            return 0
        if self._paused_until is not None:
            if self.jobs.clock() < self._paused_until:
                return 0
            logger.info("Rate limit pause over; resuming queue", resumed_at=self._paused_until.isoformat())
            self._paused_until = None

        self._is_processing = True
        self._idle.clear()
        processed = 0

        try:
            while self.state != WorkerState.STOPPING:
                job = await self.jobs.claim_next()
                if job is None:
                    break

                self._current_job_id = job.job_id
                self._current_task = asyncio.create_task(self._process_single_job(job))
                try:
                    keep_draining = await self._current_task
                except asyncio.CancelledError:
                    if self.state != WorkerState.STOPPING:
                        raise
                    break
                finally:
                    self._current_job_id = None
                    self._current_task = None
                processed += 1
                if not keep_draining:
                    break

        except aiosqlite.Error as e:
            self._backoff_until = time.monotonic() + self.store_error_backoff
            logger.error(
                "Job store error; backing off",
                error=str(e),
                backoff_seconds=self.store_error_backoff,
            )
        finally:
            self._is_processing = False
            self._idle.set()

        return processed

    async def _process_single_job(self, job: Job) -> bool:
        """
        Run one claimed job and record its outcome.

        Returns False when the job went back to the queue, which ends the
        current drain.
        """
        logger.info(
            f"Processing {job.type}",
            job_id=job.job_id,
            target_id=job.target_id,
            job_type=job.type,
            attempt=job.attempts,
        )
        start_time = time.time()

        try:
            handler = self.registry.get(job.type)
            result = await handler(
                JobContext(job.target_id, job=job, jobs=self.jobs, progress=self.progress)
            )
        except UnknownJobTypeError as e:
            return not await self._handle_failure(job, str(e), retryable=False)
        except Exception as e:
            retryable = is_retryable(e)
            if retryable and is_rate_limit_error(e):
                await self._handle_rate_limit(job, e)
                return False
            logger.exception(
                f"{job.type} failed",
                job_id=job.job_id,
                target_id=job.target_id,
                error=str(e),
            )
            return not await self._handle_failure(job, str(e) or type(e).__name__, retryable=retryable)

        if not result.success:
            return not await self._handle_failure(
                job, result.error or "Stage reported failure", retryable=result.retryable
            )

        if not await self.jobs.mark_completed(job.job_id):
            logger.warning(
                "Job finished but is no longer running (cancelled); not chaining",
                job_id=job.job_id,
                target_id=job.target_id,
            )
            return True

        self.jobs_completed += 1
        logger.info(
            f"Completed {job.type}",
            job_id=job.job_id,
            target_id=job.target_id,
            job_type=job.type,
            seconds=round(time.time() - start_time, 1),
        )
        await self.orchestrator.on_job_completed(job, result)
        return True

    def retry_delay(self, counted_attempts: int) -> timedelta:
        """Backoff before the next try: doubles per attempt, capped."""
        if self.retry_backoff <= 0:
            return timedelta(0)
        seconds = self.retry_backoff * 2 ** max(counted_attempts - 1, 0)
        return timedelta(seconds=min(seconds, self.retry_backoff_max))

    async def _handle_failure(self, job: Job, error: str, retryable: bool) -> bool:
        """Requeue or fail the job. Returns True if it went back to pending."""
        if retryable and job.counted_attempts < self.max_attempts:
            delay = self.retry_delay(job.counted_attempts)
            available_at = self.jobs.clock() + delay if delay else None
            requeued = await self.jobs.requeue(job.job_id, error, available_at=available_at)
            if requeued:
                self.jobs_retried += 1
                logger.warning(
                    f"Job failed, will retry (attempt {job.counted_attempts}/{self.max_attempts})",
                    job_id=job.job_id,
                    target_id=job.target_id,
                    error=error,
                    retry_in_seconds=delay.total_seconds(),
                )
            return requeued

        if retryable:
            error = f"Max attempts ({self.max_attempts}) exceeded: {error}"

        if await self.jobs.mark_failed(job.job_id, error):
            self.jobs_failed += 1
            logger.error(
                "Job failed permanently",
                job_id=job.job_id,
                target_id=job.target_id,
                job_type=job.type,
                error=error,
            )
            await self.orchestrator.on_job_failed(job, error)
        return False

    async def _handle_rate_limit(self, job: Job, error: BaseException):
        """Put the job back without spending an attempt and pause polling until the limit resets."""
        now = self.jobs.clock()
        resume_at = max(rate_limit_reset(error, now) or now + self.rate_limit_fallback, now)

        if await self.jobs.requeue(
            job.job_id,
            f"Rate limited: {str(error) or type(error).__name__}",
            available_at=resume_at,
            rate_limited=True,
        ):
            self.jobs_rate_limited += 1
        self._paused_until = resume_at
        logger.warning(
            "Rate limit hit; pausing queue",
            job_id=job.job_id,
            target_id=job.target_id,
            resume_at=resume_at.isoformat(),
        )

    async def _purge_progress(self):
        self.progress.purge_expired()

    @property
    def is_processing(self) -> bool:
        """Check if worker is currently processing a job"""
        return self._is_processing

    @property
    def current_job(self) -> str | None:
        """Get the ID of the currently processing job"""
        return self._current_job_id

    @property
    def paused_until(self) -> Optional[datetime]:
        """End of the current rate limit pause, if the queue is paused."""
        if self._paused_until is not None and self.jobs.clock() < self._paused_until:
            return self._paused_until
        return None
