"""
Stale-job recovery.

A job left 'running' by a crashed or killed process would never be
claimed again. Before the worker starts polling, every running job older
than the threshold goes back to 'pending'. With the default threshold of
zero that is every running job, which is only safe while a single worker
process owns the queue.
"""

from datetime import timedelta
from typing import Optional

from novelforge.jobs.database import JobDatabase
from novelforge.utils.logging import job_logger as logger


class StaleJobRecovery:
    """Runs `reclaim_stale` once per process."""

    def __init__(
        self,
        jobs: JobDatabase,
        threshold: timedelta = timedelta(0),
        max_attempts: Optional[int] = None
    ):
        self.jobs = jobs
        self.threshold = threshold
        self.max_attempts = max_attempts
        self._has_run = False
        self.recovered = 0

    @property
    def has_run(self) -> bool:
        return self._has_run

    async def recover(self) -> int:
        """Returns the number of jobs put back to pending (0 on repeat calls)."""
        if self._has_run:
            logger.info("Stale job recovery already ran in this process; skipping")
            return 0

        self.recovered = await self.jobs.reclaim_stale(self.threshold, self.max_attempts)
        self._has_run = True

        if self.recovered:
            logger.warning(
                "Recovered stale running jobs",
                count=self.recovered,
                threshold_minutes=self.threshold.total_seconds() / 60,
            )
        else:
            logger.info("No stale jobs to recover")
        return self.recovered
