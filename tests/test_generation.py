import asyncio
from datetime import timedelta

import pytest

from repose.core.errors import Conflict, NothingToGenerate
from repose.models import PipelineJob, ReposeBatch, ReposeOutput
from repose.models.base import utcnow
from repose.services import batches, generation
from repose.services.ai_gateway import GatewayError, GeneratedImage, RateLimited

from conftest import seed_batch, seed_outputs

PNG = GeneratedImage(data=b"\x89PNG fake", format="png")


async def no_sleep(seconds):
    return None


def gateway_returning(image=PNG):
    calls = []

    async def gateway(source_url, pose_url, model=None, image_size=None):
        calls.append((source_url, pose_url, model, image_size))
        return image

    gateway.calls = calls
    return gateway


def gateway_raising(error):
    async def gateway(*args, **kwargs):
        raise error
    return gateway


def generate_with(gateway, storage):
    async def generate(output_id, image_size=None, model=None, *, session_factory=None):
        return await generation.generate_output(
            output_id, image_size, model,
            session_factory=session_factory, gateway=gateway, storage=storage,
        )
    return generate


async def _start(db, batch_id):
    job, queued = await generation.start_generation(db, batch_id, created_by="tester")
    await db.commit()
    return job, queued


async def _reload(session_factory, model, key):
    async with session_factory() as session:
        return await session.get(model, key)


# ── Single output ────────────────────────────────────────────────────

async def test_render_output_stores_image(db, session_factory, storage):
    batch = await seed_batch(db)
    [output] = await seed_outputs(db, batch.id, 1)
    await db.commit()
    gateway = gateway_returning()

    url = await generation.render_output(
        output.id, session_factory=session_factory, gateway=gateway, storage=storage,
    )

    assert url.startswith(f"/v1/files/repose/{batch.id}/{output.id}_1K_")
    assert url.endswith(".png")
    assert await storage.read(url.removeprefix("/v1/files/")) == PNG.data
    saved = await _reload(session_factory, ReposeOutput, output.id)
    assert saved.status == "complete"
    assert saved.result_url == url
    assert saved.requested_resolution == "1K"
    assert gateway.calls[0][:2] == ("https://cdn.test/src/a.jpg", "https://cdn.test/poses/0.png")


async def test_high_resolution_is_saved_as_jpeg(db, session_factory, storage):
    batch = await seed_batch(db)
    [output] = await seed_outputs(db, batch.id, 1)
    await db.commit()

    url = await generation.render_output(
        output.id, "4K",
        session_factory=session_factory,
        gateway=gateway_returning(GeneratedImage(b"jpeg", "jpeg")),
        storage=storage,
    )

    assert "_4K_" in url and url.endswith(".jpg")


async def test_missing_pose_url_fails_output(db, session_factory, storage):
    batch = await seed_batch(db)
    [output] = await seed_outputs(db, batch.id, 1)
    output.pose_url = None
    await db.commit()

    status = await generation.generate_output(
        output.id, session_factory=session_factory, gateway=gateway_returning(), storage=storage,
    )

    assert status == "failed"
    saved = await _reload(session_factory, ReposeOutput, output.id)
    assert saved.error_message == "Missing source or pose URL"


async def test_rate_limit_requeues(db, session_factory, storage):
    batch = await seed_batch(db)
    [output] = await seed_outputs(db, batch.id, 1)
    await db.commit()

    status = await generation.generate_output(
        output.id, session_factory=session_factory,
        gateway=gateway_raising(RateLimited("Rate limited - will retry", status=429)),
        storage=storage,
    )

    assert status == "queued"
    assert (await _reload(session_factory, ReposeOutput, output.id)).status == "queued"


# ── Batch loop ───────────────────────────────────────────────────────

async def test_run_completes_batch(db, session_factory, storage):
    batch = await seed_batch(db, items=[("front", "https://cdn.test/f.jpg"), ("back", "https://cdn.test/b.jpg")])
    await db.commit()
    job, queued = await _start(db, batch.id)
    assert queued == 4
    sleeps = []

    async def record_sleep(seconds):
        sleeps.append(seconds)

    result = await generation.run_generation(
        batch.id, job.id, delay=0.25,
        session_factory=session_factory,
        generate=generate_with(gateway_returning(), storage),
        sleep=record_sleep,
    )

    assert result == {"complete": 4, "failed": 0, "requeued": 0, "stopped": False, "batch_status": "COMPLETE"}
    # Paced between outputs, not after the last one
    assert sleeps == [0.25, 0.25, 0.25]
    assert (await _reload(session_factory, ReposeBatch, batch.id)).status == "COMPLETE"
    saved_job = await _reload(session_factory, PipelineJob, job.id)
    assert saved_job.status == "COMPLETED"
    assert saved_job.progress_done == 4
    assert saved_job.origin_context == {"batch_id": batch.id}


async def test_run_with_every_output_failing_fails_batch(db, session_factory, storage):
    batch = await seed_batch(db)
    await db.commit()
    job, _ = await _start(db, batch.id)

    result = await generation.run_generation(
        batch.id, job.id,
        session_factory=session_factory,
        generate=generate_with(gateway_raising(GatewayError("AI error 500: boom", status=500)), storage),
        sleep=no_sleep,
    )

    assert result["failed"] == 3
    assert result["batch_status"] == "FAILED"
    assert (await _reload(session_factory, PipelineJob, job.id)).status == "FAILED"


async def test_run_with_some_failures_completes(db, session_factory, storage):
    batch = await seed_batch(db, items=[("back", "https://cdn.test/b.jpg")], poses_per_shot_type=2)
    await db.commit()
    job, _ = await _start(db, batch.id)
    seen = []
    good = gateway_returning()

    async def flaky(*args, **kwargs):
        seen.append(args)
        if len(seen) == 1:
            raise GatewayError("AI error 400: bad image", status=400)
        return await good(*args, **kwargs)

    result = await generation.run_generation(
        batch.id, job.id, session_factory=session_factory,
        generate=generate_with(flaky, storage), sleep=no_sleep,
    )

    assert (result["complete"], result["failed"]) == (1, 1)
    assert result["batch_status"] == "COMPLETE"


async def test_rate_limited_outputs_leave_batch_resumable(db, session_factory, storage):
    batch = await seed_batch(db)
    await db.commit()
    job, _ = await _start(db, batch.id)

    result = await generation.run_generation(
        batch.id, job.id, session_factory=session_factory,
        generate=generate_with(gateway_raising(RateLimited("Rate limited - will retry")), storage),
        sleep=no_sleep,
    )

    assert result["requeued"] == 3
    assert result["batch_status"] == "DRAFT"
    assert (await _reload(session_factory, PipelineJob, job.id)).status == "PAUSED"

    # A second start resumes the same rows instead of planning new ones
    async with session_factory() as session:
        _, queued = await generation.start_generation(session, batch.id)
        await session.commit()
        assert queued == 3
        assert await batches.count_outputs(session, batch.id) == 3


async def test_stop_between_outputs(db, session_factory, storage):
    batch = await seed_batch(db, items=[("front", "https://cdn.test/f.jpg")], poses_per_shot_type=2)
    await db.commit()
    job, queued = await _start(db, batch.id)
    assert queued == 6
    gateway = gateway_returning()

    async def generate_then_stop(output_id, image_size=None, model=None, *, session_factory=None):
        status = await generation.generate_output(
            output_id, session_factory=session_factory, gateway=gateway, storage=storage,
        )
        if len(gateway.calls) == 2:
            async with session_factory() as session:
                await generation.stop_generation(session, batch.id, job.id)
                await session.commit()
        return status

    result = await generation.run_generation(
        batch.id, job.id, session_factory=session_factory,
        generate=generate_then_stop, sleep=no_sleep,
    )

    assert result["stopped"]
    assert result["complete"] == 2
    assert "batch_status" not in result
    assert (await _reload(session_factory, ReposeBatch, batch.id)).status == "DRAFT"
    assert (await _reload(session_factory, PipelineJob, job.id)).status == "PAUSED"
    async with session_factory() as session:
        assert len(await batches.list_outputs(session, batch.id, "queued")) == 4


async def test_start_while_running_conflicts(db, session_factory):
    batch = await seed_batch(db)
    await db.commit()
    await _start(db, batch.id)

    with pytest.raises(Conflict):
        await generation.start_generation(db, batch.id)

    async with session_factory() as session:
        assert await batches.count_outputs(session, batch.id) == 3


async def test_overlapping_runs_generate_each_output_once(db, session_factory, storage):
    batch = await seed_batch(db)
    await db.commit()
    job, queued = await _start(db, batch.id)
    assert queued == 3
    gateway = gateway_returning()

    async def slow_gateway(*args, **kwargs):
        await asyncio.sleep(0.01)
        return await gateway(*args, **kwargs)

    generate = generate_with(slow_gateway, storage)
    first, second = await asyncio.gather(
        generation.run_generation(batch.id, job.id, session_factory=session_factory, generate=generate, sleep=no_sleep),
        generation.run_generation(batch.id, job.id, session_factory=session_factory, generate=generate, sleep=no_sleep),
    )

    assert len(gateway.calls) == 3
    assert first["complete"] + second["complete"] == 3
    assert (await _reload(session_factory, ReposeBatch, batch.id)).status == "COMPLETE"


async def test_run_skips_outputs_taken_after_it_started(db, session_factory, storage):
    batch = await seed_batch(db)
    await db.commit()
    job, _ = await _start(db, batch.id)
    async with session_factory() as session:
        last = (await batches.list_outputs(session, batch.id, "queued"))[-1]
    gateway = gateway_returning()
    inner = generate_with(gateway, storage)

    async def generate_and_take_last(output_id, image_size=None, model=None, *, session_factory=None):
        if not gateway.calls:
            # Another worker finishes the last output while this run is busy
            async with session_factory() as session:
                row = await session.get(ReposeOutput, last.id)
                row.status = "complete"
                row.result_url = "https://cdn.test/kept.png"
                await session.commit()
        return await inner(output_id, image_size, model, session_factory=session_factory)

    result = await generation.run_generation(
        batch.id, job.id, session_factory=session_factory,
        generate=generate_and_take_last, sleep=no_sleep,
    )

    assert result["complete"] == 2
    assert len(gateway.calls) == 2
    assert (await _reload(session_factory, ReposeOutput, last.id)).result_url == "https://cdn.test/kept.png"


async def test_failed_plan_marks_batch_failed(db, session_factory):
    batch = await seed_batch(db, items=[("side", "https://cdn.test/s.jpg")])
    await db.commit()

    with pytest.raises(NothingToGenerate):
        await generation.start_generation(db, batch.id)

    assert (await _reload(session_factory, ReposeBatch, batch.id)).status == "FAILED"


# ── Maintenance ──────────────────────────────────────────────────────

async def test_retry_failed_requeues(db):
    batch = await seed_batch(db)
    await seed_outputs(db, batch.id, 2, status="failed", error_message="boom")
    await seed_outputs(db, batch.id, 1, status="complete")

    assert await generation.retry_failed(db, batch.id) == 2
    progress = await batches.batch_progress(db, batch.id)
    assert progress["queued"] == 2
    assert progress["complete"] == 1


async def test_reset_stale_outputs(db, session_factory):
    batch = await seed_batch(db)
    stale, fresh = await seed_outputs(db, batch.id, 2, status="running")
    stale.started_running_at = utcnow() - timedelta(minutes=10)
    fresh.started_running_at = utcnow()
    await db.commit()

    async with session_factory() as session:
        assert await generation.reset_stale_outputs(session, batch.id, threshold_seconds=120) == 1
        await session.commit()

    assert (await _reload(session_factory, ReposeOutput, stale.id)).status == "queued"
    assert (await _reload(session_factory, ReposeOutput, fresh.id)).status == "running"


# ── Regeneration ─────────────────────────────────────────────────────

async def test_regeneration_keeps_original_and_its_rank(db, session_factory, storage):
    batch = await seed_batch(db)
    [original] = await seed_outputs(
        db, batch.id, 1, status="complete", result_url="https://cdn.test/old.png",
        is_favorite=True, favorite_rank=1,
    )
    await db.commit()

    new_id, status = await generation.regenerate_output(
        original.id, session_factory=session_factory, gateway=gateway_returning(), storage=storage,
    )

    assert status == "complete"
    regenerated = await _reload(session_factory, ReposeOutput, new_id)
    assert regenerated.regenerated_from_id == original.id
    assert regenerated.batch_item_id == original.batch_item_id
    assert regenerated.pose_url == original.pose_url
    assert regenerated.attempt_index == 1
    assert regenerated.sequence == 1
    assert not regenerated.is_favorite

    kept = await _reload(session_factory, ReposeOutput, original.id)
    assert kept.result_url == "https://cdn.test/old.png"
    assert kept.favorite_rank == 1
