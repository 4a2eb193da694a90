"""
Repose batches: create, items, config, output plan and progress.
"""

from datetime import datetime
from typing import Any, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import get_db
from ..core.errors import InvalidRequest
from ..models.repose import OutputStatus
from ..services import batches
from ..services.shot_types import InputView, calculate_output_plan, parse_view

batches_router = APIRouter(tags=["batches"])


class BatchCreate(BaseModel):
    project_id: Optional[str] = None
    brand_id: Optional[str] = None
    name: Optional[str] = None
    config: dict[str, Any] = {}
    look_ids: list[str] = []


class BatchResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    project_id: Optional[str] = None
    brand_id: Optional[str] = None
    name: Optional[str] = None
    status: str
    config: Optional[dict] = None
    created_at: datetime


class ItemIn(BaseModel):
    view: str
    source_url: str
    look_id: Optional[str] = None


class ItemsCreate(BaseModel):
    items: list[ItemIn] = []
    look_ids: list[str] = []


class ItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    batch_id: str
    look_id: Optional[str] = None
    view: str
    source_url: str


class ConfigUpdate(BaseModel):
    poses_per_shot_type: Optional[int] = Field(default=None, ge=1, le=20)
    attempts_per_pose: Optional[int] = Field(default=None, ge=1, le=10)
    model: Optional[str] = None
    seed: Optional[int] = None


class OutputResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    batch_id: str
    batch_item_id: str
    pose_id: Optional[str] = None
    pose_url: Optional[str] = None
    shot_type: str
    slot: Optional[str] = None
    attempt_index: int
    sequence: int
    status: str
    result_url: Optional[str] = None
    error_message: Optional[str] = None
    requested_resolution: Optional[str] = None
    is_favorite: bool
    favorite_rank: Optional[int] = None
    regenerated_from_id: Optional[str] = None


@batches_router.post("/batches", response_model=BatchResponse)
async def create_batch(request: BatchCreate, db: AsyncSession = Depends(get_db)):
    batch = await batches.create_batch(
        db, project_id=request.project_id, brand_id=request.brand_id,
        name=request.name, config=request.config,
    )
    if request.look_ids:
        await batches.add_items_from_looks(db, batch.id, request.look_ids)
    return BatchResponse.model_validate(batch)


@batches_router.get("/batches", response_model=list[BatchResponse])
async def list_batches(project_id: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    return [BatchResponse.model_validate(b) for b in await batches.list_batches(db, project_id)]


@batches_router.get("/batches/{batch_id}", response_model=BatchResponse)
async def get_batch(batch_id: str, db: AsyncSession = Depends(get_db)):
    return BatchResponse.model_validate(await batches.get_batch(db, batch_id))


@batches_router.delete("/batches/{batch_id}")
async def delete_batch(batch_id: str, db: AsyncSession = Depends(get_db)):
    await batches.delete_batch(db, batch_id)
    return {"success": True, "id": batch_id}


@batches_router.patch("/batches/{batch_id}/config", response_model=BatchResponse)
async def update_config(batch_id: str, request: ConfigUpdate, db: AsyncSession = Depends(get_db)):
    changes = request.model_dump(exclude_none=True)
    if not changes:
        raise InvalidRequest("Nothing to update")
    return BatchResponse.model_validate(await batches.update_batch_config(db, batch_id, changes))


# ── Items ────────────────────────────────────────────────────────────

@batches_router.post("/batches/{batch_id}/items", response_model=list[ItemResponse])
async def add_items(batch_id: str, request: ItemsCreate, db: AsyncSession = Depends(get_db)):
    created = await batches.add_batch_items(db, batch_id, [i.model_dump() for i in request.items])
    created += await batches.add_items_from_looks(db, batch_id, request.look_ids)
    return [ItemResponse.model_validate(i) for i in created]


@batches_router.get("/batches/{batch_id}/items", response_model=list[ItemResponse])
async def list_items(batch_id: str, db: AsyncSession = Depends(get_db)):
    await batches.get_batch(db, batch_id)
    return [ItemResponse.model_validate(i) for i in await batches.list_batch_items(db, batch_id)]


# ── Plan / outputs ───────────────────────────────────────────────────

@batches_router.get("/batches/{batch_id}/output-plan")
async def output_plan(batch_id: str, db: AsyncSession = Depends(get_db)):
    """What each look can produce, given the views it has."""
    await batches.get_batch(db, batch_id)
    views_by_look: dict[str, set[InputView]] = {}
    for item in await batches.list_batch_items(db, batch_id):
        view = parse_view(item.view)
        views = views_by_look.setdefault(item.look_id or item.id, set())
        if view:
            views.add(view)

    return {
        look_id: [
            {
                "shot_type": p.shot_type.value,
                "label": p.label,
                "can_generate": p.can_generate,
                "source_label": p.source_label,
                "is_derived": p.is_derived,
                "missing_reason": p.missing_reason,
            }
            for p in calculate_output_plan(list(views))
        ]
        for look_id, views in views_by_look.items()
    }


@batches_router.post("/batches/{batch_id}/plan")
async def plan_outputs(batch_id: str, db: AsyncSession = Depends(get_db)):
    count = await batches.plan_outputs(db, batch_id)
    return {"success": True, "outputs": count}


@batches_router.delete("/batches/{batch_id}/outputs")
async def clear_outputs(batch_id: str, db: AsyncSession = Depends(get_db)):
    deleted = await batches.clear_outputs(db, batch_id)
    return {"success": True, "deleted": deleted}


@batches_router.get("/batches/{batch_id}/outputs", response_model=list[OutputResponse])
async def list_outputs(batch_id: str, status: Optional[OutputStatus] = None, db: AsyncSession = Depends(get_db)):
    await batches.get_batch(db, batch_id)
    return [OutputResponse.model_validate(o) for o in await batches.list_outputs(db, batch_id, status)]


@batches_router.get("/batches/{batch_id}/progress")
async def progress(batch_id: str, db: AsyncSession = Depends(get_db)):
    return await batches.batch_progress(db, batch_id)
