"""Job type registry, stage handlers and the chapter pipeline orchestrator."""

from novelforge.pipeline.orchestrator import (
    CHAPTER_PIPELINE,
    EDITOR_STAGES,
    PipelineOrchestrator,
    StageRunResult,
    next_stage,
    resolve_stage,
)
from novelforge.pipeline.registry import JobContext, JobTypeRegistry, StageResult
from novelforge.pipeline.stages import StageHandlers, build_default_registry

__all__ = [
    "CHAPTER_PIPELINE",
    "EDITOR_STAGES",
    "PipelineOrchestrator",
    "StageRunResult",
    "next_stage",
    "resolve_stage",
    "JobContext",
    "JobTypeRegistry",
    "StageResult",
    "StageHandlers",
    "build_default_registry",
]
