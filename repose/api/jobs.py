"""
Pipeline job tracker endpoints.
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import get_db
from ..services import pipeline_jobs

jobs_router = APIRouter(tags=["jobs"])


def _job(job) -> dict:
    return {
        "id": job.id,
        "type": job.type,
        "title": job.title,
        "status": job.status,
        "progress_total": job.progress_total,
        "progress_done": job.progress_done,
        "progress_failed": job.progress_failed,
        "progress_message": job.progress_message,
        "origin_route": job.origin_route,
        "origin_context": job.origin_context or {},
        "supports_pause": job.supports_pause,
        "supports_retry": job.supports_retry,
        "supports_restart": job.supports_restart,
        "started_at": job.started_at,
        "completed_at": job.completed_at,
        "updated_at": job.updated_at,
    }


@jobs_router.get("/jobs")
async def list_jobs(active: bool = False, limit: int = 50, db: AsyncSession = Depends(get_db)):
    jobs = await pipeline_jobs.list_jobs(db, active_only=active, limit=min(limit, 200))
    return [_job(j) for j in jobs]


@jobs_router.get("/jobs/{job_id}")
async def get_job(job_id: str, db: AsyncSession = Depends(get_db)):
    return _job(await pipeline_jobs.get_job(db, job_id))


@jobs_router.get("/jobs/{job_id}/events")
async def list_events(job_id: str, limit: int = 200, db: AsyncSession = Depends(get_db)):
    await pipeline_jobs.get_job(db, job_id)
    events = await pipeline_jobs.list_events(db, job_id, limit=min(limit, 1000))
    return [
        {
            "id": e.id,
            "level": e.level,
            "message": e.message,
            "metadata": e.event_metadata or {},
            "created_at": e.created_at,
        }
        for e in events
    ]
