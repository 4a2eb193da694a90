"""
Pipeline job tracker. Every long-running operation (generation run, 4K re-render,
brand scrape) gets a row here so the UI can show progress and stalled work.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import NotFound
from ..models.base import utcnow
from ..models.pipeline import (
    JobStatus, PipelineJob, PipelineJobEvent, TERMINAL_JOB_STATUSES,
)
from . import realtime

logger = logging.getLogger(__name__)


async def create_job(
    db: AsyncSession,
    job_type: str,
    title: str,
    total: int,
    origin_route: str = "",
    origin_context: Optional[dict] = None,
    supports_pause: bool = False,
    supports_retry: bool = False,
    supports_restart: bool = False,
    created_by: Optional[str] = None,
) -> PipelineJob:
    job = PipelineJob(
        type=job_type,
        title=title,
        status=JobStatus.RUNNING.value,
        progress_total=total,
        origin_route=origin_route,
        origin_context=origin_context or {},
        supports_pause=supports_pause,
        supports_retry=supports_retry,
        supports_restart=supports_restart,
        started_at=utcnow(),
        created_by=created_by,
    )
    db.add(job)
    await db.flush()
    logger.info("Pipeline job %s created: %s (%d items)", job.id, title, total)
    return job


async def get_job(db: AsyncSession, job_id: str) -> PipelineJob:
    job = await db.get(PipelineJob, job_id)
    if not job:
        raise NotFound("Pipeline job", job_id)
    return job


async def update_progress(
    db: AsyncSession,
    job_id: str,
    done: Optional[int] = None,
    done_delta: int = 0,
    failed: Optional[int] = None,
    failed_delta: int = 0,
    message: Optional[str] = None,
) -> PipelineJob:
    """Absolute values win over deltas when both are given."""
    job = await get_job(db, job_id)
    job.progress_done = done if done is not None else job.progress_done + done_delta
    job.progress_failed = failed if failed is not None else job.progress_failed + failed_delta
    if message is not None:
        job.progress_message = message
    job.updated_at = utcnow()
    await db.flush()

    await realtime.job_progress(job_id, {
        "done": job.progress_done,
        "failed": job.progress_failed,
        "total": job.progress_total,
        "message": job.progress_message,
    })
    return job


async def set_status(
    db: AsyncSession, job_id: str, status: JobStatus, message: Optional[str] = None
) -> PipelineJob:
    job = await get_job(db, job_id)
    status = JobStatus(status)
    job.status = status.value
    if message is not None:
        job.progress_message = message
    if status in TERMINAL_JOB_STATUSES:
        job.completed_at = utcnow()
    await db.flush()
    await realtime.job_status(job_id, status.value)
    logger.info("Pipeline job %s → %s", job_id, status.value)
    return job


async def add_event(
    db: AsyncSession,
    job_id: str,
    message: str,
    level: str = "info",
    metadata: Optional[dict] = None,
) -> PipelineJobEvent:
    event = PipelineJobEvent(job_id=job_id, level=level, message=message, event_metadata=metadata or {})
    db.add(event)
    await db.flush()
    return event


async def list_events(db: AsyncSession, job_id: str, limit: int = 200) -> list[PipelineJobEvent]:
    result = await db.execute(
        select(PipelineJobEvent)
        .where(PipelineJobEvent.job_id == job_id)
        .order_by(PipelineJobEvent.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())


async def list_jobs(
    db: AsyncSession, active_only: bool = False, limit: int = 50
) -> list[PipelineJob]:
    query = select(PipelineJob).order_by(PipelineJob.created_at.desc()).limit(limit)
    if active_only:
        query = query.where(
            PipelineJob.status.in_([JobStatus.QUEUED.value, JobStatus.RUNNING.value, JobStatus.PAUSED.value])
        )
    result = await db.execute(query)
    return list(result.scalars().all())
