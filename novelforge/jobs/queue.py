"""
Pipeline job queue manager.
Provides the high-level interface routes use to create and inspect jobs.
"""

import uuid
from typing import Dict, Any, List, Optional

from novelforge.jobs.database import JobDatabase
from novelforge.jobs.models import Job, JobStatus, JobType
from novelforge.utils.logging import job_logger as logger


# Display labels for job types (progress views and the admin dashboard)
JOB_TYPE_LABELS = {
    JobType.GENERATE_CHAPTER.value: "Writing chapter",
    JobType.DEV_EDIT.value: "Developmental editing",
    JobType.LINE_EDIT.value: "Line editing",
    JobType.CONTINUITY_CHECK.value: "Continuity check",
    JobType.COPY_EDIT.value: "Copy editing",
    JobType.GENERATE_SUMMARY.value: "Generating summary",
    JobType.UPDATE_STATES.value: "Updating character states",
    JobType.GENERATE_OUTLINE.value: "Generating outline",
}


def outline_checkpoint(
    book_id: str,
    concept: Any = None,
    structure_type: str = "three_act",
    target_word_count: int = 80000
) -> Dict[str, Any]:
    """
    Initial checkpoint of a generate_outline job.

    The outline id is fixed here so every incremental save and every retry
    of the job writes the same outline row.
    """
    return {
        "step": "queued",
        "data": {
            "outline_id": str(uuid.uuid4()),
            "request": {
                "book_id": book_id,
                "concept": concept,
                "structure_type": structure_type,
                "target_word_count": target_word_count,
            },
        },
        "completed_steps": [],
    }


class JobQueue:
    """
    High-level interface for the pipeline job queue.

    Usage:
        queue = JobQueue(jobs)

        # Queue a stage
        job_id = await queue.create_job(JobType.DEV_EDIT, chapter_id)

        # Check status
        status = await queue.get_status(job_id)
    """

    def __init__(self, jobs: JobDatabase):
        self.jobs = jobs

    async def create_job(self, job_type: JobType | str, target_id: str) -> str:
        """
        Queue a single job. Returns immediately; the worker runs it later.

        Raises ValueError for an unknown job type.
        """
        job_type = JobType(job_type)
        job_id = await self.jobs.create_job(job_type, target_id)
        logger.info("Job queued", job_id=job_id, target_id=target_id, job_type=job_type.value)
        return job_id

    async def get_status(self, job_id: str) -> Optional[Dict[str, Any]]:
        """
        Get the current status of a job.

        Returns:
            Dict with status info or None if job not found
        """
        job = await self.jobs.get_job(job_id)
        if not job:
            return None
        return self._describe(job)

    async def get_jobs_for_target(self, target_id: str) -> List[Dict[str, Any]]:
        return [self._describe(job) for job in await self.jobs.get_jobs_for_target(target_id)]

    async def retry_job(self, job_id: str) -> bool:
        """Put a failed job back in the queue. False if it is not failed."""
        reset = await self.jobs.reset_job(job_id)
        if reset:
            logger.info("Failed job reset for retry", job_id=job_id)
        return reset

    async def get_queue_stats(self) -> Dict[str, int]:
        return await self.jobs.get_queue_stats()

    async def get_recent_jobs(
        self,
        limit: int = 20,
        status: Optional[JobStatus] = None
    ) -> List[Dict[str, Any]]:
        """Get recent jobs for display; with a status, the oldest jobs in it first."""
        if status is not None:
            jobs = await self.jobs.get_jobs_by_status(status, limit=limit)
        else:
            jobs = await self.jobs.get_recent_jobs(limit=limit)
        return [self._describe(job) for job in jobs]

    async def queue_outline_generation(
        self,
        book_id: str,
        concept: Any = None,
        structure_type: str = "three_act",
        target_word_count: int = 80000
    ) -> Dict[str, str]:
        """
        Queue outline generation for a book, unless one is already queued.

        Returns {"job_id", "outline_id"}.
        """
        existing = await self.jobs.get_active_job(book_id, JobType.GENERATE_OUTLINE)
        if existing is not None:
            data = (existing.checkpoint or {}).get("data") or {}
            return {"job_id": existing.job_id, "outline_id": data.get("outline_id")}

        checkpoint = outline_checkpoint(book_id, concept, structure_type, target_word_count)
        job_id = await self.jobs.create_job(JobType.GENERATE_OUTLINE, book_id, checkpoint=checkpoint)
        outline_id = checkpoint["data"]["outline_id"]
        logger.info("Outline generation queued", job_id=job_id, target_id=book_id, outline_id=outline_id)
        return {"job_id": job_id, "outline_id": outline_id}

    @staticmethod
    def _describe(job: Job) -> Dict[str, Any]:
        status = job.to_dict()
        status["label"] = JOB_TYPE_LABELS.get(job.type, job.type)
        checkpoint = job.checkpoint or {}
        status["current_step"] = checkpoint.get("step")
        return status
