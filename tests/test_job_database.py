import asyncio
from datetime import timedelta

import pytest

from novelforge.jobs.models import JobStatus, JobType

from tests.conftest import FakeClock


@pytest.mark.asyncio
async def test_create_job_is_pending_with_zero_attempts(services):
    job_id = await services.jobs.create_job(JobType.GENERATE_CHAPTER, "chapter-1")

    job = await services.jobs.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 0
    assert job.type == "generate_chapter"
    assert job.target_id == "chapter-1"
    assert job.started_at is None


@pytest.mark.asyncio
async def test_claim_next_is_fifo_and_marks_running(services):
    first = await services.jobs.create_job(JobType.GENERATE_CHAPTER, "chapter-1")
    second = await services.jobs.create_job(JobType.GENERATE_CHAPTER, "chapter-2")

    claimed = await services.jobs.claim_next()
    assert claimed.job_id == first
    assert claimed.status == JobStatus.RUNNING
    assert claimed.attempts == 1
    assert claimed.started_at is not None

    claimed = await services.jobs.claim_next()
    assert claimed.job_id == second

    assert await services.jobs.claim_next() is None


@pytest.mark.asyncio
async def test_concurrent_claims_never_share_a_job(services):
    created = {
        await services.jobs.create_job(JobType.DEV_EDIT, f"chapter-{i}")
        for i in range(5)
    }

    results = await asyncio.gather(*[services.jobs.claim_next() for _ in range(12)])
    claimed = [job.job_id for job in results if job is not None]

    assert len(claimed) == 5
    assert set(claimed) == created


@pytest.mark.asyncio
async def test_status_updates_only_apply_to_running_jobs(services):
    job_id = await services.jobs.create_job(JobType.DEV_EDIT, "chapter-1")

    assert await services.jobs.mark_completed(job_id) is False
    assert await services.jobs.mark_failed(job_id, "nope") is False
    assert await services.jobs.requeue(job_id, "nope") is False
    assert (await services.jobs.get_job(job_id)).status == JobStatus.PENDING

    await services.jobs.claim_next()
    assert await services.jobs.mark_completed(job_id) is True
    job = await services.jobs.get_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.completed_at is not None


@pytest.mark.asyncio
async def test_cancelled_running_job_stays_failed(services):
    job_id = await services.jobs.create_job(JobType.GENERATE_CHAPTER, "chapter-1")
    await services.jobs.claim_next()

    cancelled = await services.jobs.cancel_pending_or_running_for("chapter-1", "Cancelled for regeneration")
    assert cancelled == 1

    assert await services.jobs.mark_completed(job_id) is False
    job = await services.jobs.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert "Cancelled" in job.error


@pytest.mark.asyncio
async def test_cancel_can_be_limited_to_job_types(services):
    await services.jobs.create_jobs([JobType.DEV_EDIT, JobType.LINE_EDIT, JobType.COPY_EDIT], "chapter-1")

    cancelled = await services.jobs.cancel_pending_or_running_for(
        "chapter-1", "stop", job_types=[JobType.LINE_EDIT, JobType.COPY_EDIT]
    )

    assert cancelled == 2
    statuses = {job.type: job.status for job in await services.jobs.get_jobs_for_target("chapter-1")}
    assert statuses == {
        "dev_edit": JobStatus.PENDING,
        "line_edit": JobStatus.FAILED,
        "copy_edit": JobStatus.FAILED,
    }


@pytest.mark.asyncio
async def test_attempts_never_decrease_across_retries(services):
    job_id = await services.jobs.create_job(JobType.DEV_EDIT, "chapter-1")
    seen = []

    for _ in range(3):
        job = await services.jobs.claim_next()
        seen.append(job.attempts)
        await services.jobs.requeue(job.job_id, "timeout")

    job = await services.jobs.get_job(job_id)
    assert seen == [1, 2, 3]
    assert job.attempts == 3
    assert job.status == JobStatus.PENDING
    assert job.error == "timeout"

    fresh_id = await services.jobs.create_job(JobType.DEV_EDIT, "chapter-1")
    assert (await services.jobs.get_job(fresh_id)).attempts == 0


@pytest.mark.asyncio
async def test_requeued_job_keeps_its_place_in_line(services):
    first = await services.jobs.create_job(JobType.DEV_EDIT, "chapter-1")
    await services.jobs.create_job(JobType.LINE_EDIT, "chapter-1")

    job = await services.jobs.claim_next()
    await services.jobs.requeue(job.job_id, "rate limit")

    assert (await services.jobs.claim_next()).job_id == first


@pytest.mark.asyncio
async def test_reclaim_stale_requeues_running_jobs_and_is_idempotent(services):
    job_id = await services.jobs.create_job(JobType.GENERATE_CHAPTER, "chapter-1")
    await services.jobs.claim_next()

    assert await services.jobs.reclaim_stale(timedelta(0)) == 1
    job = await services.jobs.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 1
    assert "stale" in job.error

    assert await services.jobs.reclaim_stale(timedelta(0)) == 0
    assert (await services.jobs.get_job(job_id)).status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_reclaim_stale_respects_threshold(services):
    job_id = await services.jobs.create_job(JobType.GENERATE_CHAPTER, "chapter-1")
    await services.jobs.claim_next()

    assert await services.jobs.reclaim_stale(timedelta(hours=1)) == 0
    assert (await services.jobs.get_job(job_id)).status == JobStatus.RUNNING


@pytest.mark.asyncio
async def test_reclaim_stale_fails_jobs_out_of_attempts(services):
    job_id = await services.jobs.create_job(JobType.GENERATE_CHAPTER, "chapter-1")
    for _ in range(2):
        job = await services.jobs.claim_next()
        await services.jobs.requeue(job.job_id, "timeout")
    await services.jobs.claim_next()

    assert await services.jobs.reclaim_stale(timedelta(0), max_attempts=3) == 0
    job = await services.jobs.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.error == "Max attempts exceeded after stale recovery"


@pytest.mark.asyncio
async def test_reset_job_only_moves_failed_jobs(services):
    job_id = await services.jobs.create_job(JobType.COPY_EDIT, "chapter-1")
    assert await services.jobs.reset_job(job_id) is False

    await services.jobs.claim_next()
    await services.jobs.mark_failed(job_id, "bad input")
    assert await services.jobs.reset_job(job_id) is True

    job = await services.jobs.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 1


@pytest.mark.asyncio
async def test_checkpoint_keeps_step_history(services):
    job_id = await services.jobs.create_job(JobType.GENERATE_CHAPTER, "chapter-1")

    await services.jobs.save_checkpoint(job_id, "started", {})
    await services.jobs.save_checkpoint(job_id, "content_generated", {"word_count": 120})

    checkpoint = await services.jobs.get_checkpoint(job_id)
    assert checkpoint["step"] == "content_generated"
    assert checkpoint["data"] == {"word_count": 120}
    assert checkpoint["completed_steps"] == ["started"]
    assert checkpoint["timestamp"]


@pytest.mark.asyncio
async def test_create_jobs_preserves_order(services):
    types = [JobType.GENERATE_CHAPTER, JobType.DEV_EDIT, JobType.LINE_EDIT]
    created = await services.jobs.create_jobs(types, "chapter-1")

    assert list(created) == [t.value for t in types]
    jobs = await services.jobs.get_jobs_for_target("chapter-1")
    assert [job.job_id for job in jobs] == list(created.values())


@pytest.mark.asyncio
async def test_queue_stats_counts_by_status(services):
    await services.jobs.create_job(JobType.DEV_EDIT, "chapter-1")
    await services.jobs.create_job(JobType.DEV_EDIT, "chapter-2")
    job = await services.jobs.claim_next()
    await services.jobs.mark_failed(job.job_id, "boom")

    stats = await services.jobs.get_queue_stats()
    assert stats == {"pending": 1, "running": 0, "completed": 0, "failed": 1, "total": 2}


@pytest.mark.asyncio
async def test_requeued_job_is_not_claimable_before_available_at(services):
    clock = FakeClock()
    services.jobs.clock = clock
    job_id = await services.jobs.create_job(JobType.DEV_EDIT, "chapter-1")

    job = await services.jobs.claim_next()
    assert await services.jobs.requeue(job.job_id, "timeout", available_at=clock() + timedelta(seconds=30))

    assert await services.jobs.claim_next() is None
    clock.advance(seconds=30)
    assert (await services.jobs.claim_next()).job_id == job_id


@pytest.mark.asyncio
async def test_later_stage_is_not_claimed_while_earlier_stage_waits(services):
    clock = FakeClock()
    services.jobs.clock = clock
    created = await services.jobs.create_jobs([JobType.DEV_EDIT, JobType.LINE_EDIT], "chapter-1")
    other = await services.jobs.create_job(JobType.LINE_EDIT, "chapter-2")

    job = await services.jobs.claim_next()
    assert job.job_id == created["dev_edit"]
    await services.jobs.requeue(job.job_id, "timeout", available_at=clock() + timedelta(minutes=1))

    assert (await services.jobs.claim_next()).job_id == other
    assert await services.jobs.claim_next() is None

    clock.advance(minutes=1)
    assert (await services.jobs.claim_next()).job_id == created["dev_edit"]


@pytest.mark.asyncio
async def test_rate_limited_requeue_keeps_attempts_but_not_counted(services):
    job_id = await services.jobs.create_job(JobType.DEV_EDIT, "chapter-1")

    job = await services.jobs.claim_next()
    await services.jobs.requeue(job.job_id, "Rate limited: 429", rate_limited=True)
    job = await services.jobs.claim_next()
    await services.jobs.requeue(job.job_id, "timeout")

    job = await services.jobs.get_job(job_id)
    assert job.attempts == 2
    assert job.rate_limit_waits == 1
    assert job.counted_attempts == 1
    assert job.available_at is None


@pytest.mark.asyncio
async def test_reclaim_stale_ignores_rate_limited_attempts(services):
    job_id = await services.jobs.create_job(JobType.GENERATE_CHAPTER, "chapter-1")
    for _ in range(2):
        job = await services.jobs.claim_next()
        await services.jobs.requeue(job.job_id, "Rate limited: 429", rate_limited=True)
    await services.jobs.claim_next()

    assert await services.jobs.reclaim_stale(timedelta(0), max_attempts=3) == 1
    job = await services.jobs.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 3
