import asyncio
from datetime import timedelta

import aiosqlite
import pytest

from novelforge.jobs.errors import PermanentStageError, RateLimitError, RetryableStageError
from novelforge.jobs.models import JobStatus, JobType
from novelforge.jobs.recovery import StaleJobRecovery
from novelforge.jobs.worker import WorkerState
from novelforge.pipeline.registry import StageResult

from tests.conftest import FakeClock, run_until_idle


async def wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.01)


@pytest.mark.asyncio
async def test_retryable_failure_is_requeued_then_completes(services):
    calls = []

    async def flaky(ctx):
        calls.append(ctx.job.attempts)
        if len(calls) < 3:
            raise RetryableStageError("model overloaded")
        return StageResult()

    services.registry.register(JobType.UPDATE_STATES, flaky)
    job_id = await services.jobs.create_job(JobType.UPDATE_STATES, "chapter-x")

    assert await services.worker.process_jobs() == 1
    processed = 1 + await run_until_idle(services.worker)

    job = await services.jobs.get_job(job_id)
    assert processed == 3
    assert calls == [1, 2, 3]
    assert job.status == JobStatus.COMPLETED
    assert job.attempts == 3
    assert services.worker.jobs_retried == 2
    assert services.worker.jobs_completed == 1


@pytest.mark.asyncio
async def test_attempt_cap_fails_job_with_last_error(services):
    async def always_down(ctx):
        raise ConnectionError("model unavailable")

    services.registry.register(JobType.UPDATE_STATES, always_down)
    job_id = await services.jobs.create_job(JobType.UPDATE_STATES, "chapter-x")

    await run_until_idle(services.worker)

    job = await services.jobs.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 3
    assert job.error == "Max attempts (3) exceeded: model unavailable"
    assert services.worker.jobs_failed == 1


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried(services):
    async def broken(ctx):
        raise PermanentStageError("chapter is malformed")

    services.registry.register(JobType.UPDATE_STATES, broken)
    job_id = await services.jobs.create_job(JobType.UPDATE_STATES, "chapter-x")

    await services.worker.process_jobs()

    job = await services.jobs.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 1
    assert job.error == "chapter is malformed"


@pytest.mark.asyncio
async def test_unsuccessful_result_uses_its_retry_flag(services):
    async def refuses(ctx):
        return StageResult(success=False, error="nothing to edit", retryable=False)

    services.registry.register(JobType.UPDATE_STATES, refuses)
    job_id = await services.jobs.create_job(JobType.UPDATE_STATES, "chapter-x")

    await services.worker.process_jobs()

    job = await services.jobs.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 1
    assert job.error == "nothing to edit"


@pytest.mark.asyncio
async def test_unknown_job_type_fails_permanently(services):
    job_id = await services.jobs.create_job("translate_chapter", "chapter-x")

    await services.worker.process_jobs()

    job = await services.jobs.get_job(job_id)
    assert job.status == JobStatus.FAILED
    assert job.attempts == 1
    assert job.error == "Unknown job type: translate_chapter"


@pytest.mark.asyncio
async def test_job_cancelled_while_running_is_not_completed_or_chained(services):
    async def cancelled_midway(ctx):
        await services.jobs.cancel_pending_or_running_for(ctx.target_id, "Cancelled for regeneration")
        return StageResult()

    services.registry.register(JobType.GENERATE_CHAPTER, cancelled_midway)
    job_id = await services.jobs.create_job(JobType.GENERATE_CHAPTER, "chapter-x")

    await services.worker.process_jobs()

    jobs = await services.jobs.get_jobs_for_target("chapter-x")
    assert [job.job_id for job in jobs] == [job_id]
    assert jobs[0].status == JobStatus.FAILED
    assert jobs[0].error == "Cancelled for regeneration"
    assert services.worker.jobs_completed == 0


@pytest.mark.asyncio
async def test_store_error_backs_off_without_raising(services, monkeypatch):
    calls = 0

    async def unavailable():
        nonlocal calls
        calls += 1
        raise aiosqlite.OperationalError("database is locked")

    monkeypatch.setattr(services.jobs, "claim_next", unavailable)
    services.worker.store_error_backoff = 30

    assert await services.worker.process_jobs() == 0
    assert await services.worker.process_jobs() == 0
    assert calls == 1
    assert not services.worker.is_processing


@pytest.mark.asyncio
async def test_start_recovers_stale_jobs_once(services):
    job_id = await services.jobs.create_job(JobType.GENERATE_CHAPTER, "chapter-x")
    await services.jobs.claim_next()

    await services.worker.start()
    try:
        assert services.worker.state == WorkerState.RUNNING
        assert services.recovery.has_run
        assert services.recovery.recovered == 1
        assert (await services.jobs.get_job(job_id)).status == JobStatus.PENDING
        assert await services.recovery.recover() == 0
    finally:
        await services.worker.stop(timeout=1)

    assert services.worker.state == WorkerState.STOPPED


@pytest.mark.asyncio
async def test_stop_waits_for_in_flight_job(services):
    release = asyncio.Event()

    async def slow(ctx):
        await release.wait()
        return StageResult()

    services.registry.register(JobType.UPDATE_STATES, slow)
    job_id = await services.jobs.create_job(JobType.UPDATE_STATES, "chapter-x")

    await services.worker.start()
    task = asyncio.create_task(services.worker.process_jobs())
    await wait_until(lambda: services.worker.current_job == job_id)

    stopping = asyncio.create_task(services.worker.stop(timeout=5))
    await asyncio.sleep(0.05)
    assert services.worker.state == WorkerState.STOPPING
    release.set()
    await stopping

    assert await task == 1
    assert services.worker.state == WorkerState.STOPPED
    assert (await services.jobs.get_job(job_id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_stop_timeout_leaves_job_running_for_recovery(services):
    async def hangs(ctx):
        await asyncio.sleep(60)
        return StageResult()

    services.registry.register(JobType.UPDATE_STATES, hangs)
    job_id = await services.jobs.create_job(JobType.UPDATE_STATES, "chapter-x")

    await services.worker.start()
    task = asyncio.create_task(services.worker.process_jobs())
    await wait_until(lambda: services.worker.current_job == job_id)

    await services.worker.stop(timeout=0.1)

    assert await task == 0
    assert services.worker.state == WorkerState.STOPPED
    assert (await services.jobs.get_job(job_id)).status == JobStatus.RUNNING

    recovered = await StaleJobRecovery(services.jobs, max_attempts=3).recover()
    assert recovered == 1
    job = await services.jobs.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 1


@pytest.mark.asyncio
async def test_process_jobs_is_skipped_while_stopping(services):
    await services.jobs.create_job(JobType.UPDATE_STATES, "chapter-x")
    services.worker.state = WorkerState.STOPPING

    assert await services.worker.process_jobs() == 0
    assert (await services.jobs.get_queue_stats())["pending"] == 1
    services.worker.state = WorkerState.STOPPED


@pytest.mark.asyncio
async def test_retry_waits_for_backoff(services):
    clock = FakeClock()
    services.jobs.clock = clock
    services.worker.retry_backoff = 30
    calls = []

    async def flaky(ctx):
        calls.append(clock())
        if len(calls) == 1:
            raise RetryableStageError("model overloaded")
        return StageResult()

    services.registry.register(JobType.UPDATE_STATES, flaky)
    job_id = await services.jobs.create_job(JobType.UPDATE_STATES, "chapter-x")

    assert await services.worker.process_jobs() == 1
    job = await services.jobs.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.available_at is not None

    assert await services.worker.process_jobs() == 0
    clock.advance(seconds=29)
    assert await services.worker.process_jobs() == 0
    assert len(calls) == 1

    clock.advance(seconds=2)
    assert await services.worker.process_jobs() == 1
    assert calls[1] - calls[0] >= timedelta(seconds=30)
    assert (await services.jobs.get_job(job_id)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_retry_delay_doubles_up_to_cap(services):
    worker = services.worker
    worker.retry_backoff = 30
    worker.retry_backoff_max = 100

    assert worker.retry_delay(1) == timedelta(seconds=30)
    assert worker.retry_delay(2) == timedelta(seconds=60)
    assert worker.retry_delay(3) == timedelta(seconds=100)

    worker.retry_backoff = 0
    assert worker.retry_delay(3) == timedelta(0)


@pytest.mark.asyncio
async def test_later_stage_waits_behind_retrying_stage(services):
    clock = FakeClock()
    services.jobs.clock = clock
    services.worker.retry_backoff = 30
    order = []

    async def summary(ctx):
        order.append(("generate_summary", ctx.target_id))
        if len(order) == 1:
            raise ConnectionError("model unavailable")
        return StageResult()

    async def states(ctx):
        order.append(("update_states", ctx.target_id))
        return StageResult()

    services.registry.register(JobType.GENERATE_SUMMARY, summary)
    services.registry.register(JobType.UPDATE_STATES, states)
    await services.jobs.create_jobs([JobType.GENERATE_SUMMARY, JobType.UPDATE_STATES], "chapter-x")
    await services.jobs.create_job(JobType.UPDATE_STATES, "chapter-y")

    assert await services.worker.process_jobs() == 1
    # chapter-x's update_states stays behind its summary; other chapters keep moving.
    assert await services.worker.process_jobs() == 1
    assert order == [("generate_summary", "chapter-x"), ("update_states", "chapter-y")]

    clock.advance(seconds=31)
    assert await run_until_idle(services.worker) == 2
    assert order[2:] == [("generate_summary", "chapter-x"), ("update_states", "chapter-x")]
    assert (await services.jobs.get_queue_stats())["completed"] == 3


@pytest.mark.asyncio
async def test_rate_limit_pauses_queue_without_spending_attempt(services):
    clock = FakeClock()
    services.jobs.clock = clock
    resume_at = clock() + timedelta(minutes=10)
    calls = []

    async def throttled(ctx):
        calls.append(ctx.target_id)
        if len(calls) == 1:
            raise RateLimitError("429 Too Many Requests", reset_at=resume_at)
        return StageResult()

    services.registry.register(JobType.UPDATE_STATES, throttled)
    job_id = await services.jobs.create_job(JobType.UPDATE_STATES, "chapter-x")
    other_id = await services.jobs.create_job(JobType.UPDATE_STATES, "chapter-y")

    assert await services.worker.process_jobs() == 1

    job = await services.jobs.get_job(job_id)
    assert job.status == JobStatus.PENDING
    assert job.attempts == 1
    assert job.rate_limit_waits == 1
    assert job.counted_attempts == 0
    assert job.error.startswith("Rate limited:")
    assert services.worker.paused_until == resume_at
    assert services.worker.jobs_rate_limited == 1
    assert services.worker.jobs_retried == 0

    clock.advance(minutes=9)
    assert await services.worker.process_jobs() == 0
    assert (await services.jobs.get_job(other_id)).status == JobStatus.PENDING

    clock.advance(minutes=2)
    assert services.worker.paused_until is None
    assert await run_until_idle(services.worker) == 2
    assert calls == ["chapter-x", "chapter-x", "chapter-y"]
    job = await services.jobs.get_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.attempts == 2


class ThrottledError(Exception):
    status_code = 429


@pytest.mark.asyncio
async def test_rate_limit_without_reset_uses_fallback_and_never_exhausts_attempts(services):
    clock = FakeClock()
    services.jobs.clock = clock
    calls = 0

    async def throttled(ctx):
        nonlocal calls
        calls += 1
        if calls <= 4:
            raise ThrottledError("Too Many Requests")
        return StageResult()

    services.registry.register(JobType.UPDATE_STATES, throttled)
    job_id = await services.jobs.create_job(JobType.UPDATE_STATES, "chapter-x")

    for _ in range(4):
        paused_at = clock()
        assert await services.worker.process_jobs() == 1
        assert services.worker.paused_until == paused_at + timedelta(minutes=30)
        clock.advance(minutes=31)

    assert await services.worker.process_jobs() == 1
    job = await services.jobs.get_job(job_id)
    assert job.status == JobStatus.COMPLETED
    assert job.attempts == 5
    assert job.rate_limit_waits == 4
    assert services.worker.jobs_failed == 0
