import pytest

from repose.core.errors import NotFound
from repose.services import pipeline_jobs


async def test_job_lifecycle(db):
    job = await pipeline_jobs.create_job(db, "OTHER", "Import", total=10, supports_retry=True)
    assert job.status == "RUNNING"
    assert job.started_at is not None

    await pipeline_jobs.update_progress(db, job.id, done_delta=3, failed_delta=1)
    await pipeline_jobs.update_progress(db, job.id, done=5, done_delta=100, message="halfway")
    assert (job.progress_done, job.progress_failed, job.progress_message) == (5, 1, "halfway")

    await pipeline_jobs.set_status(db, job.id, "PAUSED")
    assert job.completed_at is None
    await pipeline_jobs.set_status(db, job.id, "COMPLETED", "done")
    assert job.completed_at is not None
    assert job.progress_message == "done"


async def test_active_jobs_filter(db):
    running = await pipeline_jobs.create_job(db, "OTHER", "A", total=1)
    finished = await pipeline_jobs.create_job(db, "OTHER", "B", total=1)
    await pipeline_jobs.set_status(db, finished.id, "FAILED")

    active = await pipeline_jobs.list_jobs(db, active_only=True)
    assert [j.id for j in active] == [running.id]
    assert len(await pipeline_jobs.list_jobs(db)) == 2


async def test_events(db):
    job = await pipeline_jobs.create_job(db, "OTHER", "A", total=1)
    await pipeline_jobs.add_event(db, job.id, "started")
    await pipeline_jobs.add_event(db, job.id, "oops", level="warn", metadata={"url": "x"})

    events = await pipeline_jobs.list_events(db, job.id)
    assert {e.message for e in events} == {"started", "oops"}
    assert next(e for e in events if e.level == "warn").event_metadata == {"url": "x"}


async def test_unknown_job(db):
    with pytest.raises(NotFound):
        await pipeline_jobs.get_job(db, "nope")
