from datetime import timedelta

import pytest

from novelforge.agents import OutlineAgent
from novelforge.jobs.errors import MissingInputError, RetryableStageError
from novelforge.jobs.models import JobStatus, JobType
from novelforge.jobs.progress import ProgressSnapshot, ProgressStore, get_progress
from novelforge.pipeline.registry import JobContext

from tests.conftest import FakeClock, fake_llm, run_until_idle


ACTS = {
    "acts": [
        {"number": 1, "name": "Setup", "description": "Mara returns", "chapterCount": 2},
        {"number": 2, "name": "Resolution", "description": "The letter's author", "chapterCount": 1},
    ]
}

ACT_ONE_CHAPTERS = {
    "chapters": [
        {"number": 1, "title": "The Harbor", "summary": "Mara arrives", "scenes": []},
        {"number": 2, "title": "The Letter", "summary": "The letter resurfaces", "scenes": []},
    ]
}

ACT_TWO_CHAPTERS = {
    "chapters": [
        {"number": 3, "title": "The Lighthouse", "summary": "Tomas confesses", "scenes": []},
    ]
}


def snapshot(phase="chapters", percent=40):
    return ProgressSnapshot(phase=phase, message="Generating chapters for Act 2...", percent_complete=percent)


def test_publish_overwrites_and_keeps_output_id():
    store = ProgressStore()

    store.publish("book-1", snapshot(percent=20), output_id="outline-1")
    store.publish("book-1", snapshot(percent=40))

    record = store.get("book-1")
    assert record.snapshot.percent_complete == 40
    assert record.output_id == "outline-1"
    assert len(store) == 1


def test_snapshots_expire_after_retention():
    clock = FakeClock()
    store = ProgressStore(retention=timedelta(minutes=30), clock=clock)
    store.publish("book-1", snapshot())
    store.publish("book-2", snapshot())

    clock.advance(minutes=29)
    assert store.get("book-1") is not None

    clock.advance(minutes=2)
    assert store.purge_expired() == 2
    assert store.get("book-1") is None
    assert len(store) == 0


def test_clear_removes_one_target():
    store = ProgressStore()
    store.publish("book-1", snapshot())
    store.publish("book-2", snapshot())

    store.clear("book-1")

    assert store.get("book-1") is None
    assert store.get("book-2") is not None


@pytest.mark.asyncio
async def test_unknown_book_has_no_progress(services):
    view = await get_progress("book-unknown", services.progress, services.outlines)

    assert view.to_dict() == {
        "in_progress": False,
        "complete": False,
        "outline_id": None,
        "progress": None,
    }


@pytest.mark.asyncio
async def test_live_snapshot_wins(services):
    services.progress.publish("book-1", snapshot(), output_id="outline-1")

    view = await services.get_progress("book-1")

    assert view.in_progress is True
    assert view.complete is False
    assert view.outline_id == "outline-1"
    assert view.progress["percent_complete"] == 40


@pytest.mark.asyncio
async def test_restart_falls_back_to_partial_outline(services):
    structure = {"type": "three_act", "acts": [dict(ACTS["acts"][0], chapters=ACT_ONE_CHAPTERS["chapters"])]}
    await services.outlines.upsert_outline("outline-1", "book-1", structure)
    services.progress.publish("book-1", snapshot(phase="acts"), output_id="outline-1")

    fresh_store = ProgressStore()
    view = await get_progress("book-1", fresh_store, services.outlines)

    assert view.in_progress is False
    assert view.complete is False
    assert view.outline_id == "outline-1"
    assert view.progress["phase"] == "partial"
    assert view.progress["generated_count"] == 2


@pytest.mark.asyncio
async def test_purge_never_touches_saved_outline(settings, services):
    clock = FakeClock()
    store = ProgressStore(retention=settings.progress_retention, clock=clock)
    await services.outlines.upsert_outline("outline-1", "book-1", {"acts": [dict(ACT_ONE_CHAPTERS)]})
    store.publish("book-1", snapshot(), output_id="outline-1")

    clock.advance(minutes=45)
    store.purge_expired()

    view = await get_progress("book-1", store, services.outlines)
    assert view.progress["phase"] == "partial"
    assert (await services.outlines.get_outline("outline-1"))["total_chapters"] == 2


@pytest.mark.asyncio
async def test_complete_outline_reports_complete(services):
    structure = {"acts": [dict(ACT_ONE_CHAPTERS)]}
    await services.outlines.upsert_outline("outline-1", "book-1", structure, complete=True)

    view = await services.get_progress("book-1")

    assert view.complete is True
    assert view.in_progress is False
    assert view.progress["percent_complete"] == 100
    assert view.progress["total_count"] == 2


@pytest.mark.asyncio
async def test_queue_outline_generation_is_idempotent_while_active(services):
    first = await services.queue.queue_outline_generation("book-1", concept="A lighthouse mystery")
    second = await services.queue.queue_outline_generation("book-1", concept="Something else")

    assert second == first
    job = await services.jobs.get_job(first["job_id"])
    assert job.type == JobType.GENERATE_OUTLINE.value
    assert job.checkpoint["data"]["outline_id"] == first["outline_id"]
    assert job.checkpoint["data"]["request"]["concept"] == "A lighthouse mystery"


@pytest.mark.asyncio
async def test_outline_job_saves_each_act_and_resumes_after_failure(services, monkeypatch):
    published = []
    real_publish = services.progress.publish

    def record(target_id, snap, output_id=None):
        published.append((snap.phase, snap.percent_complete, output_id))
        real_publish(target_id, snap, output_id=output_id)

    monkeypatch.setattr(services.progress, "publish", record)

    queued = await services.queue.queue_outline_generation("book-1", concept="A lighthouse mystery")
    outline_id = queued["outline_id"]
    services.handlers.outliner = OutlineAgent(llm=fake_llm(ACTS, ACT_ONE_CHAPTERS, "the model rambled"))

    job = await services.jobs.claim_next()
    ctx = JobContext("book-1", job=job, jobs=services.jobs, progress=services.progress)
    with pytest.raises(RetryableStageError):
        await services.handlers.generate_outline(ctx)

    assert [phase for phase, _, _ in published] == ["acts", "acts", "chapters", "chapters"]
    assert all(oid == outline_id for _, _, oid in published)
    assert services.progress.get("book-1") is None

    partial = await services.outlines.get_outline(outline_id)
    assert partial["is_complete"] is False
    assert partial["total_chapters"] == 2
    view = await get_progress("book-1", ProgressStore(), services.outlines)
    assert view.complete is False
    assert view.outline_id == outline_id

    # Only the missing act is requested on the next attempt.
    services.handlers.outliner = OutlineAgent(llm=fake_llm(ACT_TWO_CHAPTERS))
    await services.jobs.requeue(job.job_id, "parse failure")
    job = await services.jobs.claim_next()
    assert job.checkpoint["step"] == "act_saved"

    result = await services.handlers.generate_outline(
        JobContext("book-1", job=job, jobs=services.jobs, progress=services.progress)
    )

    assert result.details == {"outline_id": outline_id, "total_chapters": 3}
    outline = await services.outlines.get_outline(outline_id)
    assert outline["is_complete"] is True
    titles = [c["title"] for act in outline["structure"]["acts"] for c in act["chapters"]]
    assert titles == ["The Harbor", "The Letter", "The Lighthouse"]
    assert [c["number"] for act in outline["structure"]["acts"] for c in act["chapters"]] == [1, 2, 3]

    view = await services.get_progress("book-1")
    assert view.complete is True
    assert view.outline_id == outline_id


@pytest.mark.asyncio
async def test_outline_job_runs_through_worker(services):
    services.handlers.outliner = OutlineAgent(llm=fake_llm(ACTS, ACT_ONE_CHAPTERS, ACT_TWO_CHAPTERS))
    queued = await services.queue.queue_outline_generation("book-1", concept="A lighthouse mystery")

    await services.worker.process_jobs()

    job = await services.jobs.get_job(queued["job_id"])
    assert job.status == JobStatus.COMPLETED
    assert (await services.jobs.get_queue_stats())["total"] == 1
    assert (await services.get_progress("book-1")).complete is True


@pytest.mark.asyncio
async def test_outline_job_without_request_fails(services):
    job_id = await services.jobs.create_job(JobType.GENERATE_OUTLINE, "book-1")
    job = await services.jobs.claim_next()
    assert job.job_id == job_id

    with pytest.raises(MissingInputError):
        await services.handlers.generate_outline(
            JobContext("book-1", job=job, jobs=services.jobs, progress=services.progress)
        )


@pytest.mark.asyncio
async def test_queued_outline_reports_in_progress_before_worker_starts(services):
    queued = await services.queue.queue_outline_generation("book-9", concept="A lighthouse mystery")

    view = await services.get_progress("book-9")

    assert view.in_progress is True
    assert view.complete is False
    assert view.outline_id == queued["outline_id"]
    assert view.progress["phase"] == "queued"
    assert view.progress["generated_count"] == 0

    assert (await services.get_progress("book-unknown")).in_progress is False


@pytest.mark.asyncio
async def test_outline_waiting_to_retry_reports_retrying(services):
    clock = FakeClock()
    services.jobs.clock = clock
    services.worker.retry_backoff = 30
    services.handlers.outliner = OutlineAgent(
        llm=fake_llm(ACTS, ACT_ONE_CHAPTERS, "the model rambled", ACT_TWO_CHAPTERS)
    )
    queued = await services.queue.queue_outline_generation("book-1", concept="A lighthouse mystery")

    assert await services.worker.process_jobs() == 1

    view = await services.get_progress("book-1")
    assert view.in_progress is True
    assert view.complete is False
    assert view.outline_id == queued["outline_id"]
    assert view.progress["phase"] == "retrying"
    assert view.progress["generated_count"] == 2
    assert "not before" in view.progress["message"]

    clock.advance(seconds=31)
    assert await run_until_idle(services.worker) == 1

    view = await services.get_progress("book-1")
    assert view.complete is True
    assert view.in_progress is False
