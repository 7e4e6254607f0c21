"""
Pipeline orchestrator: sequences the chapter stages.

  generate_chapter -> dev_edit -> line_edit -> continuity_check
    -> copy_edit -> generate_summary -> update_states

Two ways into the pipeline:
- regenerate_chapter() queues all seven stages at once (the chain). The
  worker runs them in creation order.
- queue_chapter_workflow() queues only the first stage; every completion
  then queues the next one.

on_job_completed() handles both: it never duplicates a stage that is
already pending or running for the chapter.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from novelforge.database.chapters import ChapterStore
from novelforge.database.connection import Database
from novelforge.database.outlines import OutlineStore
from novelforge.jobs.database import JobDatabase
from novelforge.jobs.errors import TargetNotFoundError, UnknownJobTypeError
from novelforge.jobs.models import Job, JobType
from novelforge.jobs.progress import ProgressStore
from novelforge.pipeline.registry import JobContext, JobTypeRegistry, StageResult
from novelforge.utils.logging import pipeline_logger as logger


CHAPTER_PIPELINE = (
    JobType.GENERATE_CHAPTER,
    JobType.DEV_EDIT,
    JobType.LINE_EDIT,
    JobType.CONTINUITY_CHECK,
    JobType.COPY_EDIT,
    JobType.GENERATE_SUMMARY,
    JobType.UPDATE_STATES,
)

# Names accepted by the manual run-editor endpoint
EDITOR_STAGES = {
    "developmental": JobType.DEV_EDIT,
    "line": JobType.LINE_EDIT,
    "continuity": JobType.CONTINUITY_CHECK,
    "copy": JobType.COPY_EDIT,
}

REGENERATION_REASON = "Cancelled for regeneration"


def resolve_stage(stage: str) -> JobType:
    """Map an editor name or a pipeline job type to its JobType."""
    if stage in EDITOR_STAGES:
        return EDITOR_STAGES[stage]
    try:
        job_type = JobType(stage)
    except ValueError:
        raise UnknownJobTypeError(stage) from None
    if job_type not in CHAPTER_PIPELINE:
        raise UnknownJobTypeError(stage)
    return job_type


def next_stage(job_type: JobType | str) -> Optional[JobType]:
    try:
        index = CHAPTER_PIPELINE.index(JobType(job_type))
    except ValueError:
        return None
    if index + 1 < len(CHAPTER_PIPELINE):
        return CHAPTER_PIPELINE[index + 1]
    return None


@dataclass
class StageRunResult:
    """Outcome of a manual single-stage run."""
    success: bool
    stage: str
    suggestions_count: int = 0
    flags_count: int = 0
    approved: Optional[bool] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "stage": self.stage,
            "suggestions_count": self.suggestions_count,
            "flags_count": self.flags_count,
            "approved": self.approved,
            "error": self.error,
        }


class PipelineOrchestrator:
    def __init__(
        self,
        db: Database,
        jobs: JobDatabase,
        chapters: ChapterStore,
        registry: JobTypeRegistry,
        outlines: Optional[OutlineStore] = None,
        progress: Optional[ProgressStore] = None
    ):
        self.db = db
        self.jobs = jobs
        self.chapters = chapters
        self.outlines = outlines
        self.registry = registry
        self.progress = progress

    # =========================================================================
    # Queuing
    # =========================================================================

    async def regenerate_chapter(self, chapter_id: str) -> Dict[str, str]:
        """
        Cancel a chapter's outstanding work, reset it and queue the full chain.

        All of it happens in one transaction. Returns {job_type: job_id}.
        """
        async with self.db.transaction() as conn:
            chapter = await self.chapters.get_chapter(chapter_id, conn=conn)
            if chapter is None:
                raise TargetNotFoundError(chapter_id)

            cancelled = await self.jobs.cancel_pending_or_running_for(
                chapter_id, REGENERATION_REASON, conn=conn
            )
            await self.chapters.reset_chapter(chapter_id, conn=conn)
            created = await self.jobs.create_jobs(CHAPTER_PIPELINE, chapter_id, conn=conn)

        logger.info(
            "Chapter regeneration queued",
            target_id=chapter_id,
            cancelled=cancelled,
            jobs=len(created),
        )
        return created

    async def queue_chapter_workflow(self, chapter_id: str) -> str:
        """Queue only generate_chapter; later stages follow as each one completes."""
        async with self.db.transaction() as conn:
            chapter = await self.chapters.get_chapter(chapter_id, conn=conn)
            if chapter is None:
                raise TargetNotFoundError(chapter_id)
            job_id = await self.jobs.create_job(JobType.GENERATE_CHAPTER, chapter_id, conn=conn)

        logger.info("Chapter workflow queued", target_id=chapter_id, job_id=job_id)
        return job_id

    async def start_book_generation(self, book_id: str) -> Dict[str, Any]:
        """
        Create one chapter per entry of the book's latest complete outline
        and queue generate_chapter for each (auto-chained from there).

        Chapters and jobs left by an earlier start are deleted first so a
        restart never duplicates chapters.
        """
        outline = await self.outlines.get_latest_for_book(book_id) if self.outlines else None
        if outline is None or not outline["is_complete"]:
            raise TargetNotFoundError(book_id, kind="Complete outline for book")

        chapter_ids: List[str] = []
        async with self.db.transaction() as conn:
            old_ids = await self.chapters.delete_book_chapters(book_id, conn=conn)
            await self.jobs.delete_jobs_for_targets(old_ids, conn=conn)

            for act in outline["structure"].get("acts", []):
                for chapter in act.get("chapters") or []:
                    chapter_id = await self.chapters.create_chapter(
                        book_id,
                        chapter["number"],
                        title=chapter.get("title"),
                        scene_cards=chapter.get("scenes") or [],
                        conn=conn,
                    )
                    await self.jobs.create_job(JobType.GENERATE_CHAPTER, chapter_id, conn=conn)
                    chapter_ids.append(chapter_id)

        logger.info(
            "Book generation queued",
            target_id=book_id,
            outline_id=outline["id"],
            chapters=len(chapter_ids),
        )
        return {"outline_id": outline["id"], "chapter_ids": chapter_ids, "jobs_queued": len(chapter_ids)}

    # =========================================================================
    # Worker callbacks
    # =========================================================================

    async def on_job_completed(self, job: Job, result: StageResult) -> Optional[str]:
        """
        Queue the stage after `job`, unless one is already pending or running.

        Returns the new job id, or None when nothing was queued.
        """
        if result.approved is False:
            logger.warning(
                "Stage did not approve the chapter; continuing, flags need review",
                job_id=job.job_id,
                target_id=job.target_id,
                job_type=job.type,
                flags=result.flags_count,
            )

        following = next_stage(job.type)
        if following is None:
            return None

        async with self.db.transaction() as conn:
            existing = await self.jobs.get_active_job(job.target_id, following, conn=conn)
            if existing is not None:
                return None
            job_id = await self.jobs.create_job(following, job.target_id, conn=conn)

        logger.info(
            f"Chained {following.value}",
            job_id=job_id,
            target_id=job.target_id,
            after=job.type,
        )
        return job_id

    async def on_job_failed(self, job: Job, error: str) -> int:
        """Cancel the pending stages after a permanently failed one."""
        following = next_stage(job.type)
        if following is None:
            return 0

        downstream = CHAPTER_PIPELINE[CHAPTER_PIPELINE.index(following):]
        cancelled = await self.jobs.cancel_pending_or_running_for(
            job.target_id,
            f"Cancelled: {job.type} failed ({error})",
            job_types=downstream,
            statuses=("pending",),
        )
        if cancelled:
            logger.warning(
                "Cancelled downstream stages",
                job_id=job.job_id,
                target_id=job.target_id,
                count=cancelled,
            )
        return cancelled

    # =========================================================================
    # Manual single-stage runs
    # =========================================================================

    async def run_stage(self, stage: str, chapter_id: str) -> StageRunResult:
        """
        Run one stage now, outside the queue.

        Raises UnknownJobTypeError for an invalid stage name and
        TargetNotFoundError for a missing chapter; any other handler failure
        comes back as success=False with the error message.
        """
        job_type = resolve_stage(stage)
        handler = self.registry.get(job_type)

        if await self.chapters.get_chapter(chapter_id) is None:
            raise TargetNotFoundError(chapter_id)

        try:
            result = await handler(JobContext(chapter_id, progress=self.progress))
        except Exception as e:
            logger.exception(
                "Manual stage run failed",
                target_id=chapter_id,
                job_type=job_type.value,
                error=str(e),
            )
            return StageRunResult(success=False, stage=stage, error=str(e))

        return StageRunResult(
            success=result.success,
            stage=stage,
            suggestions_count=result.suggestions_count,
            flags_count=result.flags_count,
            approved=result.approved,
            error=result.error,
        )
