"""
Outline API Routes

Outline generation runs as a queued job; clients poll the progress
endpoint, which always answers with a well-formed body.
"""

from typing import Optional, Dict, Any, List

from fastapi import APIRouter, HTTPException, Depends
from pydantic import BaseModel, Field

from novelforge.container import ServiceContainer
from novelforge.jobs.errors import TargetNotFoundError
from novelforge.routes import get_services


router = APIRouter(prefix="/api/outlines", tags=["outlines"])


# =============================================================================
# Request/Response Models
# =============================================================================

class GenerateOutlineRequest(BaseModel):
    """Request to generate a book outline."""
    concept: Optional[Dict[str, Any]] = None
    structure_type: str = "three_act"
    target_word_count: int = Field(default=80000, ge=1000, le=500000)


class GenerateOutlineResponse(BaseModel):
    job_id: str
    outline_id: Optional[str] = None
    status: str


class OutlineProgressResponse(BaseModel):
    in_progress: bool
    complete: bool
    outline_id: Optional[str] = None
    progress: Optional[Dict[str, Any]] = None


class StartGenerationResponse(BaseModel):
    success: bool
    outline_id: str
    chapter_ids: List[str]
    jobs_queued: int


# =============================================================================
# Routes
# =============================================================================

@router.post("/{book_id}/generate", response_model=GenerateOutlineResponse, status_code=202)
async def generate_outline(
    book_id: str,
    request: GenerateOutlineRequest,
    services: ServiceContainer = Depends(get_services)
):
    """Queue outline generation. Returns the already-queued job if there is one."""
    queued = await services.queue.queue_outline_generation(
        book_id,
        concept=request.concept,
        structure_type=request.structure_type,
        target_word_count=request.target_word_count,
    )
    return GenerateOutlineResponse(
        job_id=queued["job_id"],
        outline_id=queued["outline_id"],
        status="queued",
    )


@router.get("/progress/{book_id}", response_model=OutlineProgressResponse)
async def get_outline_progress(
    book_id: str,
    services: ServiceContainer = Depends(get_services)
):
    """Poll outline generation progress."""
    view = await services.get_progress(book_id)
    return OutlineProgressResponse(**view.to_dict())


@router.get("/{book_id}")
async def get_latest_outline(
    book_id: str,
    services: ServiceContainer = Depends(get_services)
):
    outline = await services.outlines.get_latest_for_book(book_id)
    if outline is None:
        raise HTTPException(status_code=404, detail="Outline not found")
    return outline


@router.post("/{book_id}/start-generation", response_model=StartGenerationResponse)
async def start_generation(
    book_id: str,
    services: ServiceContainer = Depends(get_services)
):
    """Create the book's chapters from its outline and queue their generation."""
    try:
        started = await services.orchestrator.start_book_generation(book_id)
    except TargetNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))

    return StartGenerationResponse(success=True, **started)
