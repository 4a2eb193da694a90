"""
Repose generation: one output at a time, plus the batch loop that drives it.

The output row's status column is the whole state machine:

    queued → running → complete
                     → failed
                     → queued   (rate limited / truncated, picked up next run)

Workers run outside the request, so every step opens its own short session.
The gateway call itself happens with no session open.
"""

import asyncio
import logging
import time
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..core.config import get_settings
from ..core.database import session_scope
from ..core.errors import Conflict, InvalidRequest, NotFound
from ..core.storage import StorageBackend, get_storage
from ..models.base import utcnow
from ..models.pipeline import JobStatus, JobType, PipelineJob
from ..models.repose import BatchStatus, OutputStatus, ReposeBatchItem, ReposeOutput
from . import batches, pipeline_jobs, realtime
from .ai_gateway import GatewayError, GeneratedImage, generate_repose_image, is_high_resolution

logger = logging.getLogger(__name__)

SessionFactory = async_sessionmaker[AsyncSession]
Gateway = Callable[..., Awaitable[GeneratedImage]]


async def get_output(db: AsyncSession, output_id: str) -> ReposeOutput:
    output = await db.get(ReposeOutput, output_id)
    if not output:
        raise NotFound("Output", output_id)
    return output


# ── Single output ────────────────────────────────────────────────────

async def render_output(
    output_id: str,
    image_size: Optional[str] = None,
    model: Optional[str] = None,
    *,
    session_factory: Optional[SessionFactory] = None,
    gateway: Optional[Gateway] = None,
    storage: Optional[StorageBackend] = None,
) -> str:
    """
    Generate and store the image for one output. Returns the result URL.

    Raises on any failure and leaves the row in running; callers decide
    whether that becomes failed or queued.
    """
    gateway = gateway or generate_repose_image
    storage = storage or get_storage()
    resolution = image_size or "1K"

    async with session_scope(session_factory) as db:
        output = await get_output(db, output_id)
        item = await db.get(ReposeBatchItem, output.batch_item_id)
        output.status = OutputStatus.RUNNING.value
        output.started_running_at = utcnow()
        output.requested_resolution = resolution
        output.error_message = None
        batch_id = output.batch_id
        source_url = item.source_url if item else None
        pose_url = output.pose_url

    await realtime.output_updated(batch_id, output_id, OutputStatus.RUNNING.value)

    if not source_url or not pose_url:
        raise InvalidRequest("Missing source or pose URL")

    image = await gateway(source_url, pose_url, model=model, image_size=image_size)

    ext = "jpg" if is_high_resolution(image_size) else image.extension
    key = f"repose/{batch_id}/{output_id}_{resolution}_{int(time.time() * 1000)}.{ext}"
    content_type = "image/jpeg" if ext == "jpg" else f"image/{ext}"
    result_url = await storage.upload(key, image.data, content_type)

    async with session_scope(session_factory) as db:
        output = await get_output(db, output_id)
        output.status = OutputStatus.COMPLETE.value
        output.result_url = result_url
        output.error_message = None

    await realtime.output_updated(
        batch_id, output_id, OutputStatus.COMPLETE.value, {"result_url": result_url}
    )
    logger.info("Output %s complete (%s): %s", output_id, resolution, result_url)
    return result_url


async def mark_output(
    output_id: str,
    status: OutputStatus,
    error_message: Optional[str] = None,
    session_factory: Optional[SessionFactory] = None,
) -> None:
    async with session_scope(session_factory) as db:
        output = await get_output(db, output_id)
        output.status = OutputStatus(status).value
        output.error_message = error_message
        batch_id = output.batch_id
    await realtime.output_updated(batch_id, output_id, OutputStatus(status).value, {"error": error_message})


async def generate_output(
    output_id: str,
    image_size: Optional[str] = None,
    model: Optional[str] = None,
    *,
    session_factory: Optional[SessionFactory] = None,
    gateway: Optional[Gateway] = None,
    storage: Optional[StorageBackend] = None,
) -> str:
    """Generate one output and write the outcome to its row. Returns the final status."""
    try:
        await render_output(
            output_id, image_size, model,
            session_factory=session_factory, gateway=gateway, storage=storage,
        )
        return OutputStatus.COMPLETE.value
    except NotFound:
        raise
    except GatewayError as e:
        if e.retry_later:
            logger.warning("Output %s requeued: %s", output_id, e)
            await mark_output(output_id, OutputStatus.QUEUED, str(e), session_factory)
            return OutputStatus.QUEUED.value
        logger.error("Output %s failed: %s", output_id, e)
        await mark_output(output_id, OutputStatus.FAILED, str(e), session_factory)
        return OutputStatus.FAILED.value
    except Exception as e:
        logger.exception("Output %s failed unexpectedly", output_id)
        await mark_output(output_id, OutputStatus.FAILED, str(e) or e.__class__.__name__, session_factory)
        return OutputStatus.FAILED.value


# ── Batch loop ───────────────────────────────────────────────────────

async def start_generation(
    db: AsyncSession,
    batch_id: str,
    created_by: Optional[str] = None,
) -> tuple[PipelineJob, int]:
    """Mark the batch running, plan its outputs and open a tracking job."""
    batch = await batches.get_batch(db, batch_id)
    if batch.status == BatchStatus.RUNNING.value:
        raise Conflict(f"Batch {batch_id} is already generating")
    batch = await batches.set_batch_status(db, batch_id, BatchStatus.RUNNING)
    try:
        await batches.plan_outputs(db, batch_id)
    except Exception:
        await db.rollback()
        batch = await batches.get_batch(db, batch_id)
        batch.status = BatchStatus.FAILED.value
        # Committed here: the request session rolls back once the error propagates
        await db.commit()
        await realtime.batch_status(batch_id, batch.status)
        raise

    queued = len(await batches.list_outputs(db, batch_id, OutputStatus.QUEUED))
    job = await pipeline_jobs.create_job(
        db,
        job_type=JobType.REPOSE_GENERATION.value,
        title=f"Repose {batch.name or batch_id[:8]}",
        total=queued,
        origin_route=f"/repose-production/batch/{batch_id}",
        origin_context={"batch_id": batch_id},
        supports_pause=True,
        supports_retry=True,
        created_by=created_by,
    )
    logger.info("Generation started for batch %s: %d queued (job %s)", batch_id, queued, job.id)
    return job, queued


async def stop_generation(db: AsyncSession, batch_id: str, job_id: Optional[str] = None) -> None:
    """The loop checks the batch status between outputs; in-flight calls finish."""
    await batches.set_batch_status(db, batch_id, BatchStatus.DRAFT)
    if job_id:
        await pipeline_jobs.set_status(db, job_id, JobStatus.PAUSED, "Stopped by user")
    logger.info("Generation stop requested for batch %s", batch_id)


async def claim_output(db: AsyncSession, output_id: str) -> bool:
    """Move a queued output to running. False when another run got there first."""
    result = await db.execute(
        update(ReposeOutput)
        .where(ReposeOutput.id == output_id, ReposeOutput.status == OutputStatus.QUEUED.value)
        .values(status=OutputStatus.RUNNING.value, started_running_at=utcnow(), updated_at=utcnow())
    )
    return bool(result.rowcount)


async def run_generation(
    batch_id: str,
    job_id: Optional[str] = None,
    model: Optional[str] = None,
    delay: Optional[float] = None,
    *,
    session_factory: Optional[SessionFactory] = None,
    generate: Optional[Callable[..., Awaitable[str]]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> dict:
    """
    Walk the batch's queued outputs in order, one at a time.

    Stops early when the batch leaves RUNNING. Returns counters for the run.
    """
    generate = generate or generate_output
    if delay is None:
        delay = get_settings().generation_delay_seconds

    async with session_scope(session_factory) as db:
        batch = await batches.get_batch(db, batch_id)
        model = model or (batch.config or {}).get("model")
        output_ids = [o.id for o in await batches.list_outputs(db, batch_id, OutputStatus.QUEUED)]

    logger.info("Batch %s: processing %d queued outputs", batch_id, len(output_ids))
    complete = failed = requeued = 0
    stopped = False

    for index, output_id in enumerate(output_ids):
        claimed = False
        async with session_scope(session_factory) as db:
            batch = await batches.get_batch(db, batch_id)
            if batch.status != BatchStatus.RUNNING.value:
                stopped = True
                if job_id:
                    await pipeline_jobs.set_status(db, job_id, JobStatus.PAUSED, "Stopped by user")
            else:
                claimed = await claim_output(db, output_id)

        if stopped:
            logger.info("Batch %s stopped after %d of %d outputs", batch_id, index, len(output_ids))
            break
        if not claimed:
            logger.info("Output %s already taken by another run, skipping", output_id)
            continue

        status = await generate(output_id, model=model, session_factory=session_factory)
        if status == OutputStatus.COMPLETE.value:
            complete += 1
        elif status == OutputStatus.FAILED.value:
            failed += 1
        else:
            requeued += 1

        if job_id:
            async with session_scope(session_factory) as db:
                await pipeline_jobs.update_progress(
                    db, job_id,
                    done=complete, failed=failed,
                    message=f"{index + 1}/{len(output_ids)} processed",
                )

        if index < len(output_ids) - 1:
            await sleep(delay)

    result = {"complete": complete, "failed": failed, "requeued": requeued, "stopped": stopped}
    if not stopped:
        result["batch_status"] = await _finish_batch(batch_id, job_id, session_factory)
    logger.info("Batch %s run finished: %s", batch_id, result)
    return result


async def _finish_batch(
    batch_id: str, job_id: Optional[str], session_factory: Optional[SessionFactory]
) -> str:
    async with session_scope(session_factory) as db:
        progress = await batches.batch_progress(db, batch_id)
        if progress[OutputStatus.RUNNING.value]:
            # Another run still holds outputs; it settles the batch when it ends
            batch = await batches.get_batch(db, batch_id)
            return batch.status

        pending = progress[OutputStatus.QUEUED.value]
        if pending:
            # Requeued by rate limiting; a new start resumes where this left off
            await batches.set_batch_status(db, batch_id, BatchStatus.DRAFT)
            if job_id:
                await pipeline_jobs.set_status(
                    db, job_id, JobStatus.PAUSED, f"{pending} outputs waiting to retry"
                )
            return BatchStatus.DRAFT.value

        all_failed = progress["total"] > 0 and progress[OutputStatus.FAILED.value] == progress["total"]
        status = BatchStatus.FAILED if all_failed else BatchStatus.COMPLETE
        await batches.set_batch_status(db, batch_id, status)
        if job_id:
            await pipeline_jobs.set_status(
                db, job_id,
                JobStatus.FAILED if all_failed else JobStatus.COMPLETED,
                f"{progress[OutputStatus.COMPLETE.value]} complete, {progress[OutputStatus.FAILED.value]} failed",
            )
        return status.value


# ── Maintenance ──────────────────────────────────────────────────────

async def retry_failed(db: AsyncSession, batch_id: str) -> int:
    await batches.get_batch(db, batch_id)
    result = await db.execute(
        update(ReposeOutput)
        .where(ReposeOutput.batch_id == batch_id, ReposeOutput.status == OutputStatus.FAILED.value)
        .values(status=OutputStatus.QUEUED.value, error_message=None, updated_at=utcnow())
    )
    count = result.rowcount or 0
    if count:
        await realtime.outputs_changed(batch_id, "retry_failed")
    logger.info("Batch %s: %d failed outputs requeued", batch_id, count)
    return count


async def reset_stale_outputs(
    db: AsyncSession, batch_id: str, threshold_seconds: Optional[float] = None
) -> int:
    """Requeue outputs stuck in running (worker died mid-call)."""
    if threshold_seconds is None:
        threshold_seconds = get_settings().stale_output_seconds
    cutoff = utcnow() - timedelta(seconds=threshold_seconds)

    result = await db.execute(
        select(ReposeOutput).where(
            ReposeOutput.batch_id == batch_id,
            ReposeOutput.status == OutputStatus.RUNNING.value,
        )
    )
    stale = [
        o for o in result.scalars().all()
        if o.started_running_at is None or _aware(o.started_running_at) < cutoff
    ]
    for output in stale:
        output.status = OutputStatus.QUEUED.value
        output.error_message = "Reset after stalling in running"
    await db.flush()

    if stale:
        await realtime.outputs_changed(batch_id, "reset_stale")
        logger.warning("Batch %s: %d stale outputs requeued", batch_id, len(stale))
    return len(stale)


def _aware(value):
    # SQLite hands back naive datetimes
    return value if value.tzinfo else value.replace(tzinfo=utcnow().tzinfo)


# ── Regeneration ─────────────────────────────────────────────────────

async def create_regeneration(db: AsyncSession, output_id: str) -> ReposeOutput:
    """New queued output for the same item/pose/shot. The original stays as it is."""
    original = await get_output(db, output_id)
    output = ReposeOutput(
        batch_id=original.batch_id,
        batch_item_id=original.batch_item_id,
        pose_id=original.pose_id,
        pose_url=original.pose_url,
        shot_type=original.shot_type,
        slot=original.slot,
        attempt_index=original.attempt_index + 1,
        sequence=await batches.next_sequence(db, original.batch_id),
        status=OutputStatus.QUEUED.value,
        regenerated_from_id=original.id,
    )
    db.add(output)
    await db.flush()
    return output


async def regenerate_output(
    output_id: str,
    image_size: Optional[str] = None,
    model: Optional[str] = None,
    *,
    session_factory: Optional[SessionFactory] = None,
    gateway: Optional[Gateway] = None,
    storage: Optional[StorageBackend] = None,
) -> tuple[str, str]:
    """Create and generate a regeneration. Returns (new output id, final status)."""
    async with session_scope(session_factory) as db:
        output = await create_regeneration(db, output_id)
        new_id, batch_id = output.id, output.batch_id

    await realtime.outputs_changed(batch_id, "regenerated")
    status = await generate_output(
        new_id, image_size, model,
        session_factory=session_factory, gateway=gateway, storage=storage,
    )
    return new_id, status
