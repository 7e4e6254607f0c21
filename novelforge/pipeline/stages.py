"""
Stage handlers: one coroutine per job type.

Handlers are thin glue between the stores and the agents. They raise on
failure (StageError subclasses decide retryability, anything else is
retried) and checkpoint after each meaningful step.
"""

import uuid
from typing import Any, Dict, List, Optional

from novelforge.agents.editor import EditorAgent, EditorType
from novelforge.agents.outline import OutlineAgent
from novelforge.agents.states import StateTrackerAgent
from novelforge.agents.writer import SummaryAgent, WriterAgent
from novelforge.config import AppConfig
from novelforge.database.chapters import ChapterStatus, ChapterStore
from novelforge.database.outlines import OutlineStore
from novelforge.jobs.errors import MissingInputError, TargetNotFoundError
from novelforge.jobs.models import JobType
from novelforge.pipeline.registry import JobContext, JobTypeRegistry, StageResult
from novelforge.utils.logging import pipeline_logger as logger


def character_names(scene_cards: List[Dict[str, Any]]) -> List[str]:
    """Unique character names across scene cards, in order of appearance."""
    names: List[str] = []
    for card in scene_cards:
        for name in card.get("characters") or []:
            if isinstance(name, str) and name and name not in names:
                names.append(name)
    return names


class StageHandlers:
    """Binds the pipeline stages to their stores and agents."""

    def __init__(
        self,
        chapters: ChapterStore,
        outlines: OutlineStore,
        writer: Optional[WriterAgent] = None,
        summarizer: Optional[SummaryAgent] = None,
        state_tracker: Optional[StateTrackerAgent] = None,
        outliner: Optional[OutlineAgent] = None,
        editors: Optional[Dict[EditorType, EditorAgent]] = None,
        settings: Optional[AppConfig] = None
    ):
        self.chapters = chapters
        self.outlines = outlines
        self.writer = writer or WriterAgent(settings=settings)
        self.summarizer = summarizer or SummaryAgent(settings=settings)
        self.state_tracker = state_tracker or StateTrackerAgent(settings=settings)
        self.outliner = outliner or OutlineAgent(settings=settings)
        self.editors = dict(editors or {})
        for editor_type in EditorType:
            if editor_type not in self.editors:
                self.editors[editor_type] = EditorAgent(editor_type, settings=settings)

    def register(self, registry: JobTypeRegistry) -> JobTypeRegistry:
        registry.register(JobType.GENERATE_CHAPTER, self.generate_chapter)
        registry.register(JobType.DEV_EDIT, self.dev_edit)
        registry.register(JobType.LINE_EDIT, self.line_edit)
        registry.register(JobType.CONTINUITY_CHECK, self.continuity_check)
        registry.register(JobType.COPY_EDIT, self.copy_edit)
        registry.register(JobType.GENERATE_SUMMARY, self.generate_summary)
        registry.register(JobType.UPDATE_STATES, self.update_states)
        registry.register(JobType.GENERATE_OUTLINE, self.generate_outline)
        return registry

    async def _require_chapter(self, chapter_id: str) -> Dict[str, Any]:
        chapter = await self.chapters.get_chapter(chapter_id)
        if chapter is None:
            raise TargetNotFoundError(chapter_id)
        return chapter

    async def _require_content(self, chapter_id: str) -> Dict[str, Any]:
        chapter = await self._require_chapter(chapter_id)
        if not chapter.get("content"):
            raise MissingInputError(f"Chapter {chapter_id} has no content")
        return chapter

    # =========================================================================
    # Generation
    # =========================================================================

    async def generate_chapter(self, ctx: JobContext) -> StageResult:
        chapter = await self._require_chapter(ctx.target_id)
        await ctx.checkpoint("started")
        await self.chapters.update_status(ctx.target_id, ChapterStatus.WRITING)

        try:
            summaries = await self.chapters.get_previous_summaries(
                chapter["book_id"], chapter["chapter_number"]
            )
            await ctx.checkpoint("context_assembled", previous_chapters=len(summaries))

            content = await self.writer.write_chapter(
                title=chapter.get("title"),
                chapter_number=chapter["chapter_number"],
                scene_cards=chapter["scene_cards"],
                previous_summaries=summaries,
            )
            if not content:
                raise MissingInputError("Writer returned an empty chapter")

            await self.chapters.save_content(ctx.target_id, content, status=ChapterStatus.EDITING)
            word_count = len(content.split())
            await ctx.checkpoint("content_generated", word_count=word_count)
        except Exception:
            await self.chapters.update_status(ctx.target_id, ChapterStatus.PENDING)
            raise

        await ctx.checkpoint("completed", word_count=word_count)
        logger.info("Chapter generated", target_id=ctx.target_id, word_count=word_count)
        return StageResult(details={"word_count": word_count})

    # =========================================================================
    # Editing passes
    # =========================================================================

    async def run_editor(self, ctx: JobContext, editor_type: EditorType) -> StageResult:
        chapter = await self._require_content(ctx.target_id)

        previous_summaries = None
        character_states = None
        if editor_type == EditorType.CONTINUITY:
            previous_summaries = await self.chapters.get_previous_summaries(
                chapter["book_id"], chapter["chapter_number"]
            )
            character_states = await self.chapters.get_character_states(chapter["book_id"])

        result = await self.editors[editor_type].edit(
            chapter["content"],
            title=chapter.get("title"),
            previous_summaries=previous_summaries,
            character_states=character_states,
        )

        if result.revised_content:
            await self.chapters.save_content(ctx.target_id, result.revised_content)
        stored_flags = await self.chapters.add_flags(ctx.target_id, editor_type.value, result.flags)

        await ctx.checkpoint(
            "edited",
            editor_type=editor_type.value,
            approved=result.approved,
            revised=result.revised_content is not None,
        )

        if result.error:
            logger.warning(
                "Editor output could not be parsed; treated as approved",
                target_id=ctx.target_id,
                editor_type=editor_type.value,
                error=result.error,
            )

        return StageResult(
            approved=result.approved,
            suggestions_count=len(result.suggestions),
            flags_count=len(stored_flags),
            details={
                "editor_type": editor_type.value,
                "notes": result.notes,
                "suggestions": result.suggestions,
                "parse_error": result.error,
            },
        )

    async def dev_edit(self, ctx: JobContext) -> StageResult:
        return await self.run_editor(ctx, EditorType.DEVELOPMENTAL)

    async def line_edit(self, ctx: JobContext) -> StageResult:
        return await self.run_editor(ctx, EditorType.LINE)

    async def continuity_check(self, ctx: JobContext) -> StageResult:
        return await self.run_editor(ctx, EditorType.CONTINUITY)

    async def copy_edit(self, ctx: JobContext) -> StageResult:
        return await self.run_editor(ctx, EditorType.COPY)

    # =========================================================================
    # Summary & character states
    # =========================================================================

    async def generate_summary(self, ctx: JobContext) -> StageResult:
        chapter = await self._require_content(ctx.target_id)
        summary = await self.summarizer.summarize(chapter["content"])
        if not summary:
            raise MissingInputError("Summary model returned nothing")

        await self.chapters.save_summary(ctx.target_id, summary)
        await ctx.checkpoint("summary_saved", length=len(summary))
        return StageResult(details={"summary_length": len(summary)})

    async def update_states(self, ctx: JobContext) -> StageResult:
        chapter = await self._require_content(ctx.target_id)
        names = character_names(chapter["scene_cards"])

        updated = 0
        if names:
            states = await self.state_tracker.analyze(chapter["content"], names)
            if states:
                updated = await self.chapters.save_character_states(
                    chapter["book_id"], states, source_chapter_id=ctx.target_id
                )
        else:
            logger.info("No characters in scene cards; skipping state update", target_id=ctx.target_id)

        await self.chapters.update_status(ctx.target_id, ChapterStatus.COMPLETED)
        await ctx.checkpoint("states_updated", characters_updated=updated)
        return StageResult(details={"characters_updated": updated})

    # =========================================================================
    # Outline
    # =========================================================================

    async def generate_outline(self, ctx: JobContext) -> StageResult:
        """
        Build a book outline (target = book id).

        The partial outline is upserted after every act under the outline id
        fixed at queue time, so a retry resumes from the saved acts.
        """
        saved = (ctx.saved_checkpoint or {}).get("data") or {}
        request = saved.get("request")
        if not request:
            raise MissingInputError(f"Outline job for {ctx.target_id} has no request")

        book_id = ctx.target_id
        outline_id = saved.get("outline_id") or str(uuid.uuid4())
        structure_type = request.get("structure_type", "three_act")
        target_word_count = int(request.get("target_word_count", 80000))

        existing_acts = None
        outline = await self.outlines.get_outline(outline_id)
        if outline and not outline["is_complete"] and outline["structure"].get("acts"):
            existing_acts = outline["structure"]["acts"]

        async def save_partial(structure: Dict[str, Any]):
            total = await self.outlines.upsert_outline(
                outline_id,
                book_id,
                structure,
                structure_type=structure_type,
                target_word_count=target_word_count,
            )
            await ctx.checkpoint(
                "act_saved",
                request=request,
                outline_id=outline_id,
                chapters_saved=total,
            )
            logger.info("Incremental outline save", target_id=book_id, outline_id=outline_id, chapters=total)

        try:
            structure = await self.outliner.generate(
                request,
                on_progress=lambda snapshot: ctx.report_progress(snapshot, output_id=outline_id),
                on_incremental_save=save_partial,
                existing_acts=existing_acts,
            )
            total_chapters = await self.outlines.upsert_outline(
                outline_id,
                book_id,
                structure,
                structure_type=structure_type,
                target_word_count=target_word_count,
                complete=True,
            )
        finally:
            ctx.clear_progress()

        await ctx.checkpoint("completed", request=request, outline_id=outline_id, total_chapters=total_chapters)
        return StageResult(details={"outline_id": outline_id, "total_chapters": total_chapters})


def build_default_registry(handlers: StageHandlers) -> JobTypeRegistry:
    return handlers.register(JobTypeRegistry())
