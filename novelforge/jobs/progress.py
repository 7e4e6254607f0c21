"""
Progress tracking for long-running stages.

`ProgressStore` keeps the latest snapshot per target (book or chapter) in
memory with a retention window. It is a polling convenience and is lost on
restart; durable partial output lives in the outline store, which
`get_progress` falls back to when no live snapshot exists.
"""

from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from threading import Lock
from typing import Any, Dict, Optional

from novelforge.database.outlines import OutlineStore
from novelforge.jobs.database import JobDatabase
from novelforge.jobs.models import Clock, Job, JobStatus, JobType, utc_now
from novelforge.utils.logging import progress_logger as logger


@dataclass
class ProgressSnapshot:
    phase: str
    message: str
    percent_complete: int = 0
    generated_count: int = 0
    total_count: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ProgressRecord:
    snapshot: ProgressSnapshot
    output_id: Optional[str]
    updated_at: datetime


@dataclass
class ProgressView:
    """What a polling client sees. Always well-formed, never an error."""
    in_progress: bool
    complete: bool
    progress: Optional[Dict[str, Any]] = None
    outline_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "in_progress": self.in_progress,
            "complete": self.complete,
            "outline_id": self.outline_id,
            "progress": self.progress,
        }


class ProgressStore:
    """
    Thread-safe target -> latest snapshot map with TTL eviction.

    Inject one per process (or per test); nothing here is module-global.
    """

    def __init__(
        self,
        retention: timedelta = timedelta(minutes=30),
        clock: Clock = utc_now
    ):
        self.retention = retention
        self._clock = clock
        self._records: Dict[str, ProgressRecord] = {}
        self._lock = Lock()

    def publish(
        self,
        target_id: str,
        snapshot: ProgressSnapshot,
        output_id: Optional[str] = None
    ):
        """Overwrite the target's snapshot."""
        with self._lock:
            previous = self._records.get(target_id)
            if output_id is None and previous is not None:
                output_id = previous.output_id
            self._records[target_id] = ProgressRecord(
                snapshot=snapshot,
                output_id=output_id,
                updated_at=self._clock()
            )

    def get(self, target_id: str) -> Optional[ProgressRecord]:
        """Latest snapshot, or None if absent or older than the retention window."""
        with self._lock:
            record = self._records.get(target_id)
            if record is None:
                return None
            if self._is_expired(record):
                del self._records[target_id]
                return None
            return record

    def clear(self, target_id: str):
        with self._lock:
            self._records.pop(target_id, None)

    def purge_expired(self) -> int:
        """Drop expired snapshots. Durable outlines are never touched."""
        with self._lock:
            expired = [key for key, record in self._records.items() if self._is_expired(record)]
            for key in expired:
                del self._records[key]

        if expired:
            logger.debug("Purged expired progress snapshots", count=len(expired))
        return len(expired)

    def reset(self):
        with self._lock:
            self._records.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)

    def _is_expired(self, record: ProgressRecord) -> bool:
        return record.updated_at < self._clock() - self.retention


def _active_job_view(job: Job, outline: Optional[Dict[str, Any]]) -> ProgressView:
    """An outline job is queued, running before its first snapshot, or waiting to retry."""
    outline_id = ((job.checkpoint or {}).get("data") or {}).get("outline_id")
    saved = outline["total_chapters"] if outline and outline["id"] == outline_id else 0

    if job.status == JobStatus.RUNNING:
        phase, message = "starting", "Starting outline generation..."
    elif job.attempts > 0:
        phase = "retrying"
        message = f"Waiting to retry after: {job.error}"
        if job.available_at:
            message += f" (not before {job.available_at})"
    else:
        phase, message = "queued", "Waiting for the worker to start outline generation"

    return ProgressView(
        in_progress=True,
        complete=False,
        outline_id=outline_id,
        progress={
            "phase": phase,
            "message": message,
            "percent_complete": 0,
            "generated_count": saved,
            "total_count": None,
        },
    )


async def get_progress(
    target_id: str,
    progress_store: ProgressStore,
    outlines: OutlineStore,
    jobs: Optional[JobDatabase] = None
) -> ProgressView:
    """
    Poll generation progress for a book.

    Live snapshot first. Without one, an active generate_outline job means
    generation is queued or waiting to retry. Otherwise infer the state from
    durable storage: a complete outline means done, a partial one means
    generation stopped part way (e.g. the process crashed) and is not complete.
    """
    record = progress_store.get(target_id)
    if record is not None:
        return ProgressView(
            in_progress=True,
            complete=record.snapshot.phase == "complete",
            progress=record.snapshot.to_dict(),
            outline_id=record.output_id,
        )

    outline = await outlines.get_latest_for_book(target_id)
    if jobs is not None:
        active = await jobs.get_active_job(target_id, JobType.GENERATE_OUTLINE)
        if active is not None:
            return _active_job_view(active, outline)

    if outline is None:
        return ProgressView(in_progress=False, complete=False)

    total_chapters = outline["total_chapters"]
    if outline["is_complete"]:
        return ProgressView(
            in_progress=False,
            complete=True,
            outline_id=outline["id"],
            progress={
                "phase": "complete",
                "message": "Outline generation complete!",
                "percent_complete": 100,
                "generated_count": total_chapters,
                "total_count": total_chapters,
            },
        )

    acts_saved = len(outline["structure"].get("acts", []))
    return ProgressView(
        in_progress=False,
        complete=False,
        outline_id=outline["id"],
        progress={
            "phase": "partial",
            "message": f"Partial outline saved ({acts_saved} acts, {total_chapters} chapters)",
            "percent_complete": None,
            "generated_count": total_chapters,
            "total_count": None,
        },
    )
