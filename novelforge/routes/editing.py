"""
Editing API Routes

Endpoints for regenerating a chapter through the full pipeline, running a
single editor pass on demand, and reviewing editor flags.
"""

from typing import Optional, List, Dict, Any

from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel

from novelforge.container import ServiceContainer
from novelforge.jobs.errors import TargetNotFoundError, UnknownJobTypeError
from novelforge.pipeline.orchestrator import EDITOR_STAGES
from novelforge.routes import get_services
from novelforge.utils.logging import api_logger as logger


router = APIRouter(prefix="/api/editing", tags=["editing"])


# =============================================================================
# Response Models
# =============================================================================

class RegenerateResponse(BaseModel):
    """Jobs queued for a chapter regeneration, keyed by stage."""
    success: bool
    message: str
    jobs: Dict[str, str]


class RunEditorResponse(BaseModel):
    """Outcome of a manual editor pass."""
    success: bool
    editor_type: str
    suggestions_count: int
    flags_count: int
    approved: Optional[bool] = None
    error: Optional[str] = None


class FlagsResponse(BaseModel):
    chapter_id: str
    flags: List[Dict[str, Any]]
    unresolved: int


# =============================================================================
# Pipeline Routes
# =============================================================================

@router.post("/chapters/{chapter_id}/regenerate-with-edits", response_model=RegenerateResponse)
async def regenerate_with_edits(
    chapter_id: str,
    services: ServiceContainer = Depends(get_services)
):
    """
    Regenerate a chapter and re-run the full editing pipeline.

    Outstanding jobs for the chapter are cancelled first; the latest
    request wins.
    """
    try:
        jobs = await services.orchestrator.regenerate_chapter(chapter_id)
    except TargetNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return RegenerateResponse(
        success=True,
        message="Chapter regeneration queued",
        jobs=jobs,
    )


@router.post("/chapters/{chapter_id}/run-editor/{editor_type}", response_model=RunEditorResponse)
async def run_editor(
    chapter_id: str,
    editor_type: str,
    services: ServiceContainer = Depends(get_services)
):
    """Run one editor on a chapter now, bypassing the queue."""
    if editor_type not in EDITOR_STAGES:
        raise HTTPException(
            status_code=400,
            detail=f"Invalid editor type. Must be one of: {', '.join(EDITOR_STAGES)}"
        )

    try:
        result = await services.orchestrator.run_stage(editor_type, chapter_id)
    except TargetNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    except UnknownJobTypeError as e:
        raise HTTPException(status_code=400, detail=str(e))

    if not result.success:
        logger.warning(
            "Manual editor run failed",
            target_id=chapter_id,
            editor_type=editor_type,
            error=result.error,
        )

    return RunEditorResponse(
        success=result.success,
        editor_type=editor_type,
        suggestions_count=result.suggestions_count,
        flags_count=result.flags_count,
        approved=result.approved,
        error=result.error,
    )


# =============================================================================
# Flag Routes
# =============================================================================

@router.get("/chapters/{chapter_id}/flags", response_model=FlagsResponse)
async def get_flags(
    chapter_id: str,
    services: ServiceContainer = Depends(get_services)
):
    flags = await services.chapters.get_flags(chapter_id)
    if flags is None:
        raise HTTPException(status_code=404, detail=f"Chapter not found: {chapter_id}")

    return FlagsResponse(
        chapter_id=chapter_id,
        flags=flags,
        unresolved=sum(1 for f in flags if not f.get("resolved")),
    )


@router.post("/chapters/{chapter_id}/flags/{flag_id}/resolve")
async def resolve_flag(
    chapter_id: str,
    flag_id: str,
    services: ServiceContainer = Depends(get_services)
):
    flag = await services.chapters.resolve_flag(chapter_id, flag_id)
    if flag is None:
        raise HTTPException(status_code=404, detail="Flag not found")

    logger.info("Flag resolved", target_id=chapter_id, flag_id=flag_id)
    return {"success": True, "flag": flag}
