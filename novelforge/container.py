"""
Service container.

Builds every collaborator from one AppConfig and hands them out
explicitly. The web app keeps one on `app.state.services`, the standalone
worker builds its own, and tests build isolated ones against a temp file.
"""

from dataclasses import dataclass
from typing import Optional

from novelforge.config import AppConfig, config
from novelforge.database.chapters import ChapterStore
from novelforge.database.connection import Database
from novelforge.database.outlines import OutlineStore
from novelforge.jobs.database import JobDatabase
from novelforge.jobs.progress import ProgressStore, ProgressView, get_progress
from novelforge.jobs.queue import JobQueue
from novelforge.jobs.recovery import StaleJobRecovery
from novelforge.jobs.worker import PipelineWorker
from novelforge.pipeline.orchestrator import PipelineOrchestrator
from novelforge.pipeline.registry import JobTypeRegistry
from novelforge.pipeline.stages import StageHandlers, build_default_registry


@dataclass
class ServiceContainer:
    settings: AppConfig
    db: Database
    jobs: JobDatabase
    chapters: ChapterStore
    outlines: OutlineStore
    progress: ProgressStore
    handlers: StageHandlers
    registry: JobTypeRegistry
    orchestrator: PipelineOrchestrator
    queue: JobQueue
    recovery: StaleJobRecovery
    worker: PipelineWorker

    async def get_progress(self, target_id: str) -> ProgressView:
        return await get_progress(target_id, self.progress, self.outlines, jobs=self.jobs)

    async def close(self):
        await self.db.close()


def create_services(
    settings: AppConfig = config,
    progress: Optional[ProgressStore] = None,
    **agents
) -> ServiceContainer:
    """
    Wire the services without touching the database.

    `agents` are passed to StageHandlers (writer, summarizer, state_tracker,
    outliner, editors); tests use them to swap in fake chat models.
    """
    db = Database(settings.job_db_path)
    jobs = JobDatabase(db)
    chapters = ChapterStore(db)
    outlines = OutlineStore(db)
    if progress is None:
        progress = ProgressStore(retention=settings.progress_retention)

    handlers = StageHandlers(chapters, outlines, settings=settings, **agents)
    registry = build_default_registry(handlers)
    orchestrator = PipelineOrchestrator(
        db, jobs, chapters, registry, outlines=outlines, progress=progress
    )
    recovery = StaleJobRecovery(
        jobs,
        threshold=settings.stale_job_threshold,
        max_attempts=settings.JOB_MAX_ATTEMPTS,
    )
    worker = PipelineWorker(
        jobs,
        registry,
        orchestrator,
        recovery,
        progress=progress,
        poll_interval_seconds=settings.WORKER_POLL_INTERVAL_SECONDS,
        max_attempts=settings.JOB_MAX_ATTEMPTS,
        store_error_backoff_seconds=settings.STORE_ERROR_BACKOFF_SECONDS,
        retry_backoff_seconds=settings.JOB_RETRY_BACKOFF_SECONDS,
        retry_backoff_max_seconds=settings.JOB_RETRY_BACKOFF_MAX_SECONDS,
        rate_limit_fallback=settings.rate_limit_fallback,
    )

    return ServiceContainer(
        settings=settings,
        db=db,
        jobs=jobs,
        chapters=chapters,
        outlines=outlines,
        progress=progress,
        handlers=handlers,
        registry=registry,
        orchestrator=orchestrator,
        queue=JobQueue(jobs),
        recovery=recovery,
        worker=worker,
    )


async def build_services(settings: AppConfig = config, **kwargs) -> ServiceContainer:
    """Create the services and connect the database (creating tables)."""
    services = create_services(settings, **kwargs)
    await services.db.connect()
    return services
