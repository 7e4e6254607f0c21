"""Job records and the enums that describe them."""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, Optional

import aiosqlite


Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    """Status values for pipeline jobs"""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    """Pipeline stage a job runs. The value is the handler tag stored in the row."""
    GENERATE_CHAPTER = "generate_chapter"
    DEV_EDIT = "dev_edit"
    LINE_EDIT = "line_edit"
    CONTINUITY_CHECK = "continuity_check"
    COPY_EDIT = "copy_edit"
    GENERATE_SUMMARY = "generate_summary"
    UPDATE_STATES = "update_states"
    GENERATE_OUTLINE = "generate_outline"


ACTIVE_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value)


@dataclass
class Job:
    """One row of the jobs table."""
    job_id: str
    type: str
    target_id: str
    status: JobStatus
    attempts: int = 0
    checkpoint: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    available_at: Optional[str] = None
    rate_limit_waits: int = 0
    created_at: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    updated_at: Optional[str] = None
    id: Optional[int] = field(default=None, repr=False)

    @property
    def counted_attempts(self) -> int:
        """Attempts that count against the retry cap."""
        return self.attempts - self.rate_limit_waits

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "Job":
        return cls(
            id=row["id"],
            job_id=row["job_id"],
            type=row["type"],
            target_id=row["target_id"],
            status=JobStatus(row["status"]),
            attempts=row["attempts"],
            checkpoint=json.loads(row["checkpoint"]) if row["checkpoint"] else None,
            error=row["error"],
            available_at=row["available_at"],
            rate_limit_waits=row["rate_limit_waits"],
            created_at=row["created_at"],
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            updated_at=row["updated_at"],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "type": self.type,
            "target_id": self.target_id,
            "status": self.status.value,
            "attempts": self.attempts,
            "checkpoint": self.checkpoint,
            "error": self.error,
            "available_at": self.available_at,
            "rate_limit_waits": self.rate_limit_waits,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "updated_at": self.updated_at,
        }
