"""
Database schema and operations for the pipeline job queue.
Uses aiosqlite for async SQLite operations.
"""

import json
import uuid
from datetime import datetime, timedelta
from typing import Optional, Dict, Any, List, Sequence

import aiosqlite

from novelforge.database.connection import Database
from novelforge.jobs.models import ACTIVE_STATUSES, Clock, Job, JobStatus, JobType, utc_now


# Columns added after the first release; older databases get them on connect.
ADDED_COLUMNS = (
    ("available_at", "TEXT"),
    ("rate_limit_waits", "INTEGER NOT NULL DEFAULT 0"),
)


def _stamp(moment: datetime) -> str:
    return moment.isoformat(timespec="microseconds")


def _type_value(job_type: JobType | str) -> str:
    return job_type.value if isinstance(job_type, JobType) else str(job_type)


class JobDatabase:
    """Handles job queue database operations"""

    def __init__(self, db: Database, clock: Clock = utc_now):
        self.db = db
        self.clock = clock
        db.register_schema(self._create_tables)

    def _now(self) -> str:
        return _stamp(self.clock())

    async def _create_tables(self, conn: aiosqlite.Connection):
        """Create required tables"""
        await conn.execute("""
            CREATE TABLE IF NOT EXISTS jobs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                job_id TEXT UNIQUE NOT NULL,
                type TEXT NOT NULL,
                target_id TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'pending',

                -- Handler-owned resume data (JSON)
                checkpoint TEXT,
                error TEXT,
                attempts INTEGER NOT NULL DEFAULT 0,
                -- Not claimable before this time (retry backoff, rate limits)
                available_at TEXT,
                -- Attempts cut short by a rate limit; not counted against the cap
                rate_limit_waits INTEGER NOT NULL DEFAULT 0,

                -- Timestamps
                created_at TEXT NOT NULL,
                started_at TEXT,
                completed_at TEXT,
                updated_at TEXT NOT NULL
            )
        """)

        cursor = await conn.execute("PRAGMA table_info(jobs)")
        columns = {row["name"] for row in await cursor.fetchall()}
        for name, ddl in ADDED_COLUMNS:
            if name not in columns:
                await conn.execute(f"ALTER TABLE jobs ADD COLUMN {name} {ddl}")

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_status
            ON jobs(status, created_at, id)
        """)

        await conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_jobs_target
            ON jobs(target_id, status)
        """)

    # =========================================================================
    # Job Creation
    # =========================================================================

    async def _insert(
        self,
        conn: aiosqlite.Connection,
        job_type: JobType | str,
        target_id: str,
        checkpoint: Optional[Dict[str, Any]] = None
    ) -> str:
        job_id = str(uuid.uuid4())
        now = self._now()
        await conn.execute("""
            INSERT INTO jobs
            (job_id, type, target_id, status, checkpoint, attempts, created_at, updated_at)
            VALUES (?, ?, ?, 'pending', ?, 0, ?, ?)
        """, (
            job_id,
            _type_value(job_type),
            target_id,
            json.dumps(checkpoint) if checkpoint else None,
            now,
            now
        ))
        return job_id

    async def create_job(
        self,
        job_type: JobType | str,
        target_id: str,
        checkpoint: Optional[Dict[str, Any]] = None,
        conn: Optional[aiosqlite.Connection] = None
    ) -> str:
        """
        Create a new pending job.

        Returns the job's id.
        """
        async with self.db.transaction(conn) as c:
            return await self._insert(c, job_type, target_id, checkpoint)

    async def create_jobs(
        self,
        job_types: Sequence[JobType | str],
        target_id: str,
        conn: Optional[aiosqlite.Connection] = None
    ) -> Dict[str, str]:
        """
        Create one pending job per type, in order, in a single transaction.

        Returns {job_type: job_id}.
        """
        created: Dict[str, str] = {}
        async with self.db.transaction(conn) as c:
            for job_type in job_types:
                created[_type_value(job_type)] = await self._insert(c, job_type, target_id)
        return created

    # =========================================================================
    # Claiming
    # =========================================================================

    async def claim_next(self) -> Optional[Job]:
        """
        Claim the oldest pending job (FIFO) and mark it running.

        Only the oldest pending job of each target is eligible, and only
        once its `available_at` has passed, so a later stage never overtakes
        an earlier one that is waiting out a retry delay.

        The UPDATE only succeeds while the row is still pending, so two
        claimers racing for the same row cannot both win.
        """
        async with self.db.transaction() as conn:
            while True:
                cursor = await conn.execute("""
                    SELECT j.id FROM jobs j
                    WHERE j.status = 'pending'
                    AND (j.available_at IS NULL OR j.available_at <= ?)
                    AND NOT EXISTS (
                        SELECT 1 FROM jobs earlier
                        WHERE earlier.target_id = j.target_id
                        AND earlier.status = 'pending'
                        AND (earlier.created_at < j.created_at
                             OR (earlier.created_at = j.created_at AND earlier.id < j.id))
                    )
                    ORDER BY j.created_at ASC, j.id ASC
                    LIMIT 1
                """, (self._now(),))
                row = await cursor.fetchone()
                if not row:
                    return None

                now = self._now()
                cursor = await conn.execute("""
                    UPDATE jobs
                    SET status = 'running',
                        attempts = attempts + 1,
                        started_at = ?,
                        updated_at = ?
                    WHERE id = ? AND status = 'pending'
                """, (now, now, row["id"]))

                if cursor.rowcount == 1:
                    cursor = await conn.execute("SELECT * FROM jobs WHERE id = ?", (row["id"],))
                    return Job.from_row(await cursor.fetchone())

    # =========================================================================
    # Job Retrieval
    # =========================================================================

    async def get_job(self, job_id: str) -> Optional[Job]:
        """Get a job by its job_id"""
        cursor = await self.db.conn.execute(
            "SELECT * FROM jobs WHERE job_id = ?", (job_id,)
        )
        row = await cursor.fetchone()
        return Job.from_row(row) if row else None

    async def get_jobs_for_target(self, target_id: str) -> List[Job]:
        """All jobs for a chapter/book in creation order."""
        cursor = await self.db.conn.execute("""
            SELECT * FROM jobs
            WHERE target_id = ?
            ORDER BY created_at ASC, id ASC
        """, (target_id,))
        return [Job.from_row(row) for row in await cursor.fetchall()]

    async def get_active_job(
        self,
        target_id: str,
        job_type: JobType | str,
        conn: Optional[aiosqlite.Connection] = None
    ) -> Optional[Job]:
        """The oldest pending/running job of a type for a target, if any."""
        cursor = await (conn or self.db.conn).execute("""
            SELECT * FROM jobs
            WHERE target_id = ? AND type = ? AND status IN (?, ?)
            ORDER BY created_at ASC, id ASC
            LIMIT 1
        """, (target_id, _type_value(job_type), *ACTIVE_STATUSES))
        row = await cursor.fetchone()
        return Job.from_row(row) if row else None

    async def get_jobs_by_status(self, status: JobStatus, limit: int = 50) -> List[Job]:
        cursor = await self.db.conn.execute("""
            SELECT * FROM jobs
            WHERE status = ?
            ORDER BY created_at ASC, id ASC
            LIMIT ?
        """, (status.value, limit))
        return [Job.from_row(row) for row in await cursor.fetchall()]

    async def get_recent_jobs(self, limit: int = 20) -> List[Job]:
        cursor = await self.db.conn.execute("""
            SELECT * FROM jobs
            ORDER BY created_at DESC, id DESC
            LIMIT ?
        """, (limit,))
        return [Job.from_row(row) for row in await cursor.fetchall()]

    async def get_queue_stats(self) -> Dict[str, int]:
        """Job counts by status for the admin dashboard."""
        cursor = await self.db.conn.execute("""
            SELECT status, COUNT(*) AS count
            FROM jobs
            GROUP BY status
        """)
        stats = {status.value: 0 for status in JobStatus}
        total = 0
        for row in await cursor.fetchall():
            stats[row["status"]] = row["count"]
            total += row["count"]
        stats["total"] = total
        return stats

    # =========================================================================
    # Job Status Updates
    # =========================================================================

    async def mark_completed(self, job_id: str) -> bool:
        """
        Mark a running job as completed.

        Returns False if the job was no longer running (e.g. cancelled by a
        regeneration request while its handler ran).
        """
        now = self._now()
        async with self.db.transaction() as conn:
            cursor = await conn.execute("""
                UPDATE jobs
                SET status = 'completed',
                    completed_at = ?,
                    updated_at = ?
                WHERE job_id = ? AND status = 'running'
            """, (now, now, job_id))
            return cursor.rowcount == 1

    async def mark_failed(self, job_id: str, error: str) -> bool:
        """Mark a running job as permanently failed."""
        now = self._now()
        async with self.db.transaction() as conn:
            cursor = await conn.execute("""
                UPDATE jobs
                SET status = 'failed',
                    error = ?,
                    completed_at = ?,
                    updated_at = ?
                WHERE job_id = ? AND status = 'running'
            """, (error, now, now, job_id))
            return cursor.rowcount == 1

    async def requeue(
        self,
        job_id: str,
        error: str,
        available_at: Optional[datetime] = None,
        rate_limited: bool = False
    ) -> bool:
        """
        Put a running job back to pending after a retryable failure.

        The attempt counter was already bumped when the job was claimed and
        is never lowered; a rate-limited attempt is recorded in
        `rate_limit_waits` instead so it does not count against the cap.
        The job cannot be claimed again before `available_at`.
        """
        async with self.db.transaction() as conn:
            cursor = await conn.execute("""
                UPDATE jobs
                SET status = 'pending',
                    error = ?,
                    available_at = ?,
                    rate_limit_waits = rate_limit_waits + ?,
                    started_at = NULL,
                    updated_at = ?
                WHERE job_id = ? AND status = 'running'
            """, (
                error,
                _stamp(available_at) if available_at else None,
                1 if rate_limited else 0,
                self._now(),
                job_id
            ))
            return cursor.rowcount == 1

    async def reset_job(self, job_id: str) -> bool:
        """
        Manually move a failed job back to pending (explicit operator action).

        Attempts are kept; only fresh jobs start from zero.
        """
        async with self.db.transaction() as conn:
            cursor = await conn.execute("""
                UPDATE jobs
                SET status = 'pending',
                    available_at = NULL,
                    started_at = NULL,
                    completed_at = NULL,
                    updated_at = ?
                WHERE job_id = ? AND status = 'failed'
            """, (self._now(), job_id))
            return cursor.rowcount == 1

    async def cancel_pending_or_running_for(
        self,
        target_id: str,
        reason: str,
        job_types: Optional[Sequence[JobType | str]] = None,
        statuses: Sequence[str] = ACTIVE_STATUSES,
        conn: Optional[aiosqlite.Connection] = None
    ) -> int:
        """
        Fail every non-terminal job of a target with `reason`.

        A handler that is already executing is not interrupted; its job row
        simply stays failed when the worker later tries to complete it.
        Returns the number of cancelled jobs.
        """
        now = self._now()
        params: List[Any] = [reason, now, now, target_id, *statuses]
        query = f"""
            UPDATE jobs
            SET status = 'failed',
                error = ?,
                completed_at = ?,
                updated_at = ?
            WHERE target_id = ?
            AND status IN ({', '.join('?' for _ in statuses)})
        """
        if job_types:
            query += f" AND type IN ({', '.join('?' for _ in job_types)})"
            params.extend(_type_value(t) for t in job_types)

        async with self.db.transaction(conn) as c:
            cursor = await c.execute(query, params)
            return cursor.rowcount

    # =========================================================================
    # Checkpoints
    # =========================================================================

    async def save_checkpoint(self, job_id: str, step: str, data: Optional[Dict[str, Any]] = None):
        """Record the step a handler just finished, keeping the step history."""
        async with self.db.transaction() as conn:
            cursor = await conn.execute(
                "SELECT checkpoint FROM jobs WHERE job_id = ?", (job_id,)
            )
            row = await cursor.fetchone()
            if not row:
                return

            previous = json.loads(row["checkpoint"]) if row["checkpoint"] else {}
            completed_steps = list(previous.get("completed_steps", []))
            if previous.get("step") and previous["step"] not in completed_steps:
                completed_steps.append(previous["step"])

            checkpoint = {
                "job_id": job_id,
                "step": step,
                "data": data or {},
                "completed_steps": completed_steps,
                "timestamp": self._now(),
            }
            await conn.execute("""
                UPDATE jobs
                SET checkpoint = ?, updated_at = ?
                WHERE job_id = ?
            """, (json.dumps(checkpoint), checkpoint["timestamp"], job_id))

    async def get_checkpoint(self, job_id: str) -> Optional[Dict[str, Any]]:
        job = await self.get_job(job_id)
        return job.checkpoint if job else None

    # =========================================================================
    # Job Recovery
    # =========================================================================

    async def reclaim_stale(
        self,
        threshold: timedelta,
        max_attempts: Optional[int] = None
    ) -> int:
        """
        Recover jobs stuck in 'running' status (e.g., after worker crash).

        Jobs started more than `threshold` ago go back to 'pending'. With
        `max_attempts`, jobs that already used every attempt are failed
        instead so a job that kills the worker cannot loop forever.

        Returns the number of jobs put back to pending.
        """
        cutoff = _stamp(self.clock() - threshold)
        now = self._now()

        async with self.db.transaction() as conn:
            if max_attempts is not None:
                await conn.execute("""
                    UPDATE jobs
                    SET status = 'failed',
                        error = 'Max attempts exceeded after stale recovery',
                        completed_at = ?,
                        updated_at = ?
                    WHERE status = 'running'
                    AND started_at <= ?
                    AND attempts - rate_limit_waits >= ?
                """, (now, now, cutoff, max_attempts))

            cursor = await conn.execute("""
                UPDATE jobs
                SET status = 'pending',
                    error = 'Recovered from stale running state (worker crash/timeout)',
                    started_at = NULL,
                    updated_at = ?
                WHERE status = 'running'
                AND (started_at IS NULL OR started_at <= ?)
            """, (now, cutoff))
            return cursor.rowcount

    # =========================================================================
    # Cleanup
    # =========================================================================

    async def delete_jobs_for_targets(
        self,
        target_ids: Sequence[str],
        conn: Optional[aiosqlite.Connection] = None
    ) -> int:
        """Remove every job of the given targets (used when their chapters are recreated)."""
        if not target_ids:
            return 0
        async with self.db.transaction(conn) as c:
            cursor = await c.execute(
                f"DELETE FROM jobs WHERE target_id IN ({', '.join('?' for _ in target_ids)})",
                list(target_ids)
            )
            return cursor.rowcount
