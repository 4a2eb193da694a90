"""
Generation control: start/stop the batch loop, retries, regeneration and
high-resolution re-renders of favorites.

Long work runs as background tasks after the response is sent; clients follow
progress through the pipeline job or the batch event stream.
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.auth import AuthenticatedUser
from ..core.database import session_scope
from ..core.dependencies import get_db, require_internal
from ..core.errors import InvalidRequest
from ..models.pipeline import JobStatus, JobType, PipelineJob
from ..services import generation, rerender
from ..services.generation import get_output

logger = logging.getLogger(__name__)

generation_router = APIRouter(tags=["generation"])

IMAGE_SIZES = ("1K", "2K", "4K")


class StopRequest(BaseModel):
    job_id: Optional[str] = None


class GenerateRequest(BaseModel):
    image_size: Optional[str] = None
    model: Optional[str] = None


class RerenderBody(BaseModel):
    look_ids: Optional[list[str]] = None
    shot_types: Optional[list[str]] = None
    image_size: str = "4K"


# ── Background runners ───────────────────────────────────────────────

async def _run_generation_task(batch_id: str, job_id: str):
    try:
        await generation.run_generation(batch_id, job_id)
    except Exception:
        logger.exception("Generation loop crashed for batch %s", batch_id)


async def _generate_output_task(output_id: str, image_size: Optional[str], model: Optional[str]):
    try:
        await generation.generate_output(output_id, image_size, model)
    except Exception:
        logger.exception("Generation crashed for output %s", output_id)


async def continue_rerender(request: rerender.RerenderRequest):
    """Self-continuation: plan again with the resume context and keep going."""
    async with session_scope() as db:
        plan = await rerender.plan_rerender(db, request)
    await rerender.process_rerender(request, plan, continue_rerender)


async def _rerender_task(request: rerender.RerenderRequest, plan: rerender.RerenderPlan):
    try:
        await rerender.process_rerender(request, plan, continue_rerender)
    except Exception:
        logger.exception("Re-render crashed for batch %s", request.batch_id)


def _check_size(image_size: Optional[str]):
    if image_size and image_size not in IMAGE_SIZES:
        raise InvalidRequest(f"image_size must be one of {', '.join(IMAGE_SIZES)}")


# ── Batch loop ───────────────────────────────────────────────────────

@generation_router.post("/batches/{batch_id}/generate")
async def start_generation(
    batch_id: str,
    background_tasks: BackgroundTasks,
    user: AuthenticatedUser = Depends(require_internal),
    db: AsyncSession = Depends(get_db),
):
    job, queued = await generation.start_generation(db, batch_id, created_by=user.user_id)
    await db.commit()
    background_tasks.add_task(_run_generation_task, batch_id, job.id)
    return {"success": True, "job_id": job.id, "queued": queued}


@generation_router.post("/batches/{batch_id}/stop")
async def stop_generation(batch_id: str, request: StopRequest, db: AsyncSession = Depends(get_db)):
    job_id = request.job_id or await _active_generation_job(db, batch_id)
    await generation.stop_generation(db, batch_id, job_id)
    return {"success": True, "job_id": job_id}


async def _active_generation_job(db: AsyncSession, batch_id: str) -> Optional[str]:
    result = await db.execute(
        select(PipelineJob)
        .where(PipelineJob.type == JobType.REPOSE_GENERATION.value, PipelineJob.status == JobStatus.RUNNING.value)
        .order_by(PipelineJob.created_at.desc())
    )
    for job in result.scalars().all():
        context = job.origin_context or {}
        if context.get("batch_id") == batch_id and not context.get("is_rerender"):
            return job.id
    return None


@generation_router.post("/batches/{batch_id}/retry-failed")
async def retry_failed(batch_id: str, db: AsyncSession = Depends(get_db)):
    return {"success": True, "requeued": await generation.retry_failed(db, batch_id)}


@generation_router.post("/batches/{batch_id}/reset-stale")
async def reset_stale(batch_id: str, db: AsyncSession = Depends(get_db)):
    return {"success": True, "requeued": await generation.reset_stale_outputs(db, batch_id)}


# ── Single outputs ───────────────────────────────────────────────────

@generation_router.post("/outputs/{output_id}/generate")
async def generate_single(
    output_id: str,
    request: GenerateRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
):
    _check_size(request.image_size)
    await get_output(db, output_id)
    background_tasks.add_task(_generate_output_task, output_id, request.image_size, request.model)
    return {"success": True, "output_id": output_id}


@generation_router.post("/outputs/{output_id}/regenerate")
async def regenerate(
    output_id: str,
    request: GenerateRequest,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
):
    """Queue a fresh attempt beside the original; the original and its rank are kept."""
    _check_size(request.image_size)
    output = await generation.create_regeneration(db, output_id)
    await db.commit()
    background_tasks.add_task(_generate_output_task, output.id, request.image_size, request.model)
    return {"success": True, "output_id": output.id, "regenerated_from_id": output_id}


# ── Re-render favorites ──────────────────────────────────────────────

@generation_router.post("/batches/{batch_id}/rerender")
async def rerender_favorites(
    batch_id: str,
    body: RerenderBody,
    background_tasks: BackgroundTasks,
    user: AuthenticatedUser = Depends(require_internal),
    db: AsyncSession = Depends(get_db),
):
    _check_size(body.image_size)
    request = rerender.RerenderRequest(
        batch_id=batch_id, look_ids=body.look_ids, shot_types=body.shot_types, image_size=body.image_size,
    )
    plan = await rerender.plan_rerender(db, request, created_by=user.user_id)
    if not plan.total:
        return {"success": True, "message": "No favorites to re-render", "count": 0}

    await db.commit()
    background_tasks.add_task(_rerender_task, request, plan)
    return {
        "success": True,
        "message": f"Started re-rendering {len(plan.remaining)} favorites at {body.image_size}",
        "count": len(plan.remaining),
        "total_favorites": plan.total,
        "job_id": plan.job_id,
    }
