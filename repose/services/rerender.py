"""
Re-render favorites at high resolution (4K by default).

Each favorite gets a fresh output row (same item, pose and shot type) so the
original 1K favorite is never overwritten. Work runs in small concurrent
chunks under a wall-clock budget; when the budget runs out the worker hands a
resume context to `continue_later` and returns, and the next run skips what
was already processed.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from typing import Awaitable, Callable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.database import session_scope
from ..models.base import utcnow
from ..models.pipeline import JobStatus, JobType
from ..models.repose import OutputStatus, ReposeBatchItem, ReposeOutput
from . import batches, generation, pipeline_jobs, realtime

logger = logging.getLogger(__name__)

OUTPUT_CONCURRENCY = 3          # 4K payloads are large; keep fan-out small
MAX_PROCESSING_TIME = 50.0      # seconds per worker run before handing off
MAX_RETRIES = 2
RETRY_DELAY = 2.0               # × attempt number
HEARTBEAT_INTERVAL = 10.0

_TRANSIENT_MARKERS = ("503", "504", "Gateway")


@dataclass
class ResumeContext:
    job_id: Optional[str]
    processed_ids: list[str] = field(default_factory=list)


@dataclass
class RerenderRequest:
    batch_id: str
    look_ids: Optional[list[str]] = None
    shot_types: Optional[list[str]] = None
    image_size: str = "4K"
    resume_context: Optional[ResumeContext] = None


@dataclass
class Favorite:
    id: str
    batch_id: str
    batch_item_id: str
    pose_id: Optional[str]
    pose_url: Optional[str]
    shot_type: str
    slot: Optional[str]


@dataclass
class RerenderPlan:
    job_id: Optional[str]
    total: int
    remaining: list[Favorite]
    processed_ids: list[str]


@dataclass
class RerenderOutcome:
    job_id: Optional[str]
    completed: int
    failed: int
    processed_ids: list[str]
    continued: bool = False


ContinueLater = Callable[[RerenderRequest], Awaitable[None]]


def is_transient(error: Exception) -> bool:
    if getattr(error, "retry_later", False):
        return True
    if getattr(error, "status", None) in (503, 504):
        return True
    text = str(error)
    return any(marker in text for marker in _TRANSIENT_MARKERS)


async def find_favorites(
    db: AsyncSession,
    batch_id: str,
    look_ids: Optional[list[str]] = None,
    shot_types: Optional[list[str]] = None,
) -> list[ReposeOutput]:
    query = (
        select(ReposeOutput)
        .where(
            ReposeOutput.batch_id == batch_id,
            ReposeOutput.is_favorite.is_(True),
            ReposeOutput.result_url.is_not(None),
        )
        .order_by(ReposeOutput.sequence, ReposeOutput.created_at)
    )
    if look_ids:
        item_ids = select(ReposeBatchItem.id).where(
            ReposeBatchItem.batch_id == batch_id,
            ReposeBatchItem.look_id.in_(look_ids),
        )
        query = query.where(ReposeOutput.batch_item_id.in_(item_ids))
    if shot_types:
        query = query.where(ReposeOutput.shot_type.in_(shot_types))
    result = await db.execute(query)
    return list(result.scalars().all())


async def plan_rerender(
    db: AsyncSession, request: RerenderRequest, created_by: Optional[str] = None
) -> RerenderPlan:
    """Resolve favorites and the tracking job. Opens a job only on a fresh start."""
    await batches.get_batch(db, request.batch_id)
    favorites = await find_favorites(db, request.batch_id, request.look_ids, request.shot_types)
    if not favorites:
        return RerenderPlan(job_id=None, total=0, remaining=[], processed_ids=[])

    ctx = request.resume_context
    if ctx is None:
        job = await pipeline_jobs.create_job(
            db,
            job_type=JobType.REPOSE_GENERATION.value,
            title=f"Re-render {len(favorites)} favorites @ {request.image_size}",
            total=len(favorites),
            origin_route=f"/repose-production/batch/{request.batch_id}",
            origin_context={
                "batch_id": request.batch_id,
                "look_ids": request.look_ids,
                "shot_types": request.shot_types,
                "is_rerender": True,
                "image_size": request.image_size,
                "favorite_count": len(favorites),
            },
            supports_restart=True,
        )
        job_id = job.id
    else:
        job_id = ctx.job_id
        logger.info("Resuming re-render job %s with %d already processed", job_id, len(ctx.processed_ids))

    processed = list(ctx.processed_ids) if ctx else []
    done = set(processed)
    remaining = [
        Favorite(
            id=f.id, batch_id=f.batch_id, batch_item_id=f.batch_item_id,
            pose_id=f.pose_id, pose_url=f.pose_url, shot_type=f.shot_type, slot=f.slot,
        )
        for f in favorites if f.id not in done
    ]
    return RerenderPlan(job_id=job_id, total=len(favorites), remaining=remaining, processed_ids=processed)


async def process_rerender(
    request: RerenderRequest,
    plan: RerenderPlan,
    continue_later: Optional[ContinueLater] = None,
    *,
    session_factory=None,
    generate: Optional[Callable[..., Awaitable[object]]] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> RerenderOutcome:
    """
    Work through plan.remaining in chunks of OUTPUT_CONCURRENCY.

    Without a continue_later callback the time budget is not enforced and the
    run goes to completion.
    """
    generate = generate or generation.render_output
    start = last_heartbeat = clock()
    processed = list(plan.processed_ids)
    completed, failed = len(processed), 0

    if request.resume_context and plan.job_id:
        async with session_scope(session_factory) as db:
            job = await pipeline_jobs.get_job(db, plan.job_id)
            completed, failed = job.progress_done, job.progress_failed

    remaining = plan.remaining
    for i in range(0, len(remaining), OUTPUT_CONCURRENCY):
        if continue_later is not None and clock() - start > MAX_PROCESSING_TIME:
            logger.info("Re-render budget used at %d/%d, handing off", i, len(remaining))
            if plan.job_id:
                async with session_scope(session_factory) as db:
                    await pipeline_jobs.update_progress(db, plan.job_id, done=completed, failed=failed)
            await continue_later(replace(
                request, resume_context=ResumeContext(job_id=plan.job_id, processed_ids=processed),
            ))
            return RerenderOutcome(plan.job_id, completed, failed, processed, continued=True)

        chunk = remaining[i:i + OUTPUT_CONCURRENCY]
        output_ids = await _create_rerender_outputs(chunk, request.image_size, session_factory)
        await realtime.outputs_changed(request.batch_id, "rerender")
        results = await asyncio.gather(
            *[
                _rerender_one(fav, output_id, request.image_size, generate, sleep, session_factory)
                for fav, output_id in zip(chunk, output_ids)
            ],
            return_exceptions=True,
        )
        for fav, result in zip(chunk, results):
            if isinstance(result, BaseException):
                failed += 1
                logger.error("Re-render of favorite %s crashed: %s", fav.id, result)
                continue
            processed.append(fav.id)
            if result:
                completed += 1
            else:
                failed += 1

        if plan.job_id and clock() - last_heartbeat > HEARTBEAT_INTERVAL:
            async with session_scope(session_factory) as db:
                await pipeline_jobs.update_progress(db, plan.job_id, done=completed, failed=failed)
            last_heartbeat = clock()
            logger.info("Re-render heartbeat: %d done, %d failed of %d", completed, failed, plan.total)

    if plan.job_id:
        status = JobStatus.FAILED if failed == plan.total else JobStatus.COMPLETED
        async with session_scope(session_factory) as db:
            await pipeline_jobs.update_progress(db, plan.job_id, done=completed, failed=failed)
            await pipeline_jobs.set_status(db, plan.job_id, status)
        logger.info("Re-render job %s %s: %d completed, %d failed", plan.job_id, status.value, completed, failed)

    return RerenderOutcome(plan.job_id, completed, failed, processed)


async def _create_rerender_outputs(chunk: list[Favorite], image_size: str, session_factory) -> list[str]:
    """One running row per favorite, numbered in a single session so sequences stay unique."""
    async with session_scope(session_factory) as db:
        sequence = await batches.next_sequence(db, chunk[0].batch_id)
        outputs = [
            ReposeOutput(
                batch_id=fav.batch_id,
                batch_item_id=fav.batch_item_id,
                pose_id=fav.pose_id,
                pose_url=fav.pose_url,
                shot_type=fav.shot_type,
                slot=fav.slot,
                sequence=sequence + n,
                status=OutputStatus.RUNNING.value,
                requested_resolution=image_size,
                started_running_at=utcnow(),
            )
            for n, fav in enumerate(chunk)
        ]
        db.add_all(outputs)
        await db.flush()
        return [output.id for output in outputs]


async def _rerender_one(
    fav: Favorite,
    output_id: str,
    image_size: str,
    generate,
    sleep,
    session_factory,
) -> bool:
    error = await _generate_with_retry(output_id, image_size, generate, sleep, session_factory)
    if error is None:
        return True

    logger.error("Re-render of favorite %s failed: %s", fav.id, error)
    await generation.mark_output(output_id, OutputStatus.FAILED, error, session_factory)
    return False


async def _generate_with_retry(output_id, image_size, generate, sleep, session_factory) -> Optional[str]:
    """None on success, otherwise the error message to store."""
    for attempt in range(MAX_RETRIES + 1):
        if attempt:
            logger.info("Retry %d/%d for output %s", attempt, MAX_RETRIES, output_id)
            await sleep(RETRY_DELAY * attempt)
        try:
            await generate(output_id, image_size, session_factory=session_factory)
            return None
        except Exception as e:
            if is_transient(e):
                logger.warning("Transient error on output %s (%s), will retry", output_id, e)
                continue
            return str(e) or e.__class__.__name__
    return "Max retries exceeded"
