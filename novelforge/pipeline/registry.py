"""
Job type registry.

Maps each job type tag to the coroutine that performs the stage. The
worker and the manual single-stage API both dispatch through it, so an
unknown tag fails the same way everywhere (permanently).
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from novelforge.jobs.database import JobDatabase
from novelforge.jobs.errors import UnknownJobTypeError
from novelforge.jobs.models import Job, JobType
from novelforge.jobs.progress import ProgressSnapshot, ProgressStore


@dataclass
class StageResult:
    """What a handler reports back. `approved` is advisory and never gates chaining."""
    success: bool = True
    approved: Optional[bool] = None
    suggestions_count: int = 0
    flags_count: int = 0
    details: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None
    retryable: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "approved": self.approved,
            "suggestions_count": self.suggestions_count,
            "flags_count": self.flags_count,
            "details": self.details,
            "error": self.error,
        }


class JobContext:
    """
    Everything a handler gets besides its target id.

    `job` is None when a stage runs outside the queue (manual run-editor);
    checkpoints are then dropped.
    """

    def __init__(
        self,
        target_id: str,
        job: Optional[Job] = None,
        jobs: Optional[JobDatabase] = None,
        progress: Optional[ProgressStore] = None
    ):
        self.target_id = target_id
        self.job = job
        self._jobs = jobs
        self._progress = progress

    @property
    def job_id(self) -> Optional[str]:
        return self.job.job_id if self.job else None

    @property
    def saved_checkpoint(self) -> Optional[Dict[str, Any]]:
        """Checkpoint stored on the job when it was claimed."""
        return self.job.checkpoint if self.job else None

    async def checkpoint(self, step: str, **data):
        if self.job is None or self._jobs is None:
            return
        await self._jobs.save_checkpoint(self.job.job_id, step, data)

    def report_progress(self, snapshot: ProgressSnapshot, output_id: Optional[str] = None):
        if self._progress is not None:
            self._progress.publish(self.target_id, snapshot, output_id=output_id)

    def clear_progress(self):
        if self._progress is not None:
            self._progress.clear(self.target_id)


StageHandler = Callable[[JobContext], Awaitable[StageResult]]


class JobTypeRegistry:
    """job type tag -> handler"""

    def __init__(self):
        self._handlers: Dict[str, StageHandler] = {}

    def register(self, job_type: JobType | str, handler: StageHandler):
        self._handlers[JobType(job_type).value] = handler

    def handles(self, job_type: JobType | str):
        """Decorator form of `register`."""
        def decorator(handler: StageHandler) -> StageHandler:
            self.register(job_type, handler)
            return handler
        return decorator

    def get(self, job_type: JobType | str) -> StageHandler:
        key = job_type.value if isinstance(job_type, JobType) else str(job_type)
        handler = self._handlers.get(key)
        if handler is None:
            raise UnknownJobTypeError(key)
        return handler

    def __contains__(self, job_type: object) -> bool:
        key = job_type.value if isinstance(job_type, JobType) else str(job_type)
        return key in self._handlers

    @property
    def job_types(self):
        return list(self._handlers)
