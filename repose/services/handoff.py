"""
Send curated favorites to the downstream job board.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import NotFound, NothingToExport
from ..models.handoff import HandoffJob
from . import batches
from .export import build_export_structure

logger = logging.getLogger(__name__)

DEFAULT_HANDOFF_TYPE = "PHOTOSHOP_FACE_APPLY"


async def send_to_job_board(
    db: AsyncSession,
    batch_id: str,
    title: str,
    instructions: Optional[str] = None,
    job_type: str = DEFAULT_HANDOFF_TYPE,
    created_by: Optional[str] = None,
) -> HandoffJob:
    batch = await batches.get_batch(db, batch_id)
    entries = await build_export_structure(db, batch_id)
    if not entries:
        raise NothingToExport("No favorites selected to send")

    job = HandoffJob(
        project_id=batch.project_id,
        batch_id=batch_id,
        type=job_type,
        title=title,
        instructions=instructions,
        status="OPEN",
        assets=[
            {"look_code": e.look_code, "shot_type": e.shot_type, "rank": e.rank, "path": e.path, "url": e.url}
            for e in entries
        ],
        created_by=created_by,
    )
    db.add(job)
    await db.flush()
    logger.info("Hand-off job %s created for batch %s (%d assets)", job.id, batch_id, len(entries))
    return job


async def get_handoff_job(db: AsyncSession, job_id: str) -> HandoffJob:
    job = await db.get(HandoffJob, job_id)
    if not job:
        raise NotFound("Hand-off job", job_id)
    return job


async def list_handoff_jobs(db: AsyncSession, batch_id: Optional[str] = None) -> list[HandoffJob]:
    query = select(HandoffJob).order_by(HandoffJob.created_at.desc())
    if batch_id:
        query = query.where(HandoffJob.batch_id == batch_id)
    result = await db.execute(query)
    return list(result.scalars().all())
