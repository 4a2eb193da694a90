"""
Export of favorites: folder preview, ZIP download, contact sheet, job board hand-off.
"""

from dataclasses import asdict
from typing import Optional

from fastapi import APIRouter, Depends
from fastapi.responses import Response
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.auth import AuthenticatedUser
from ..core.dependencies import get_db, get_storage_dep, require_internal
from ..core.storage import StorageBackend
from ..services import export, handoff

export_router = APIRouter(tags=["export"])


class HandoffRequest(BaseModel):
    title: str
    instructions: Optional[str] = None
    type: str = handoff.DEFAULT_HANDOFF_TYPE


@export_router.get("/batches/{batch_id}/export")
async def export_structure(batch_id: str, db: AsyncSession = Depends(get_db)):
    entries = await export.build_export_structure(db, batch_id)
    return {
        "count": len(entries),
        "files": [{**asdict(e), "path": e.path} for e in entries],
    }


@export_router.get("/batches/{batch_id}/export.zip")
async def export_zip(
    batch_id: str,
    db: AsyncSession = Depends(get_db),
    storage: StorageBackend = Depends(get_storage_dep),
):
    data, _ = await export.export_zip(db, batch_id, storage=storage)
    return Response(
        content=data,
        media_type="application/zip",
        headers={"Content-Disposition": f'attachment; filename="repose_{batch_id[:8]}.zip"'},
    )


@export_router.get("/batches/{batch_id}/contact-sheet.png")
async def contact_sheet(
    batch_id: str,
    cols: int = 5,
    db: AsyncSession = Depends(get_db),
    storage: StorageBackend = Depends(get_storage_dep),
):
    data = await export.contact_sheet_for_batch(db, batch_id, storage=storage, cols=max(1, min(cols, 12)))
    return Response(content=data, media_type="image/png")


@export_router.post("/batches/{batch_id}/handoff")
async def send_to_job_board(
    batch_id: str,
    request: HandoffRequest,
    user: AuthenticatedUser = Depends(require_internal),
    db: AsyncSession = Depends(get_db),
):
    job = await handoff.send_to_job_board(
        db, batch_id, request.title,
        instructions=request.instructions, job_type=request.type, created_by=user.user_id,
    )
    return {"success": True, "job_id": job.id, "assets": len(job.assets or [])}


@export_router.get("/handoff-jobs")
async def list_handoff_jobs(batch_id: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    jobs = await handoff.list_handoff_jobs(db, batch_id)
    return [
        {
            "id": j.id, "batch_id": j.batch_id, "type": j.type, "title": j.title,
            "status": j.status, "assets": j.assets or [], "created_at": j.created_at,
        }
        for j in jobs
    ]
