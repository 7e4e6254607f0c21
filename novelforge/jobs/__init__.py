"""
Pipeline job queue.

Components:
- JobDatabase: SQLite-backed job storage
- JobQueue: High-level queue interface used by routes
- ProgressStore: live progress snapshots for long-running stages
- PipelineWorker (novelforge.jobs.worker): background worker that processes jobs

Usage:
    # In API endpoint - queue a job
    job_id = await services.queue.create_job(JobType.GENERATE_CHAPTER, chapter_id)

    # Check job status
    status = await services.queue.get_status(job_id)
"""

from novelforge.jobs.database import JobDatabase
from novelforge.jobs.errors import (
    PipelineError,
    StageError,
    RetryableStageError,
    PermanentStageError,
    TargetNotFoundError,
    MissingInputError,
    UnknownJobTypeError,
    is_retryable,
)
from novelforge.jobs.models import Job, JobStatus, JobType
from novelforge.jobs.progress import ProgressSnapshot, ProgressStore, ProgressView, get_progress
from novelforge.jobs.queue import JobQueue

__all__ = [
    # Database
    "JobDatabase",
    "Job",
    "JobStatus",
    "JobType",

    # Errors
    "PipelineError",
    "StageError",
    "RetryableStageError",
    "PermanentStageError",
    "TargetNotFoundError",
    "MissingInputError",
    "UnknownJobTypeError",
    "is_retryable",

    # Progress
    "ProgressSnapshot",
    "ProgressStore",
    "ProgressView",
    "get_progress",

    # Queue
    "JobQueue",
]
