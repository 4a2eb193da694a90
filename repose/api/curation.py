"""
Favorite selection endpoints.
"""

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.dependencies import get_db
from ..services import curation

curation_router = APIRouter(tags=["curation"])


class RankRequest(BaseModel):
    rank: Optional[int] = Field(default=None, ge=1, le=curation.MAX_FAVORITES_PER_VIEW)


class SwapRequest(BaseModel):
    output_a: str
    output_b: str


class ClearRequest(BaseModel):
    batch_item_id: str
    shot_type: str


def _selection(output) -> dict:
    return {
        "id": output.id,
        "batch_item_id": output.batch_item_id,
        "shot_type": output.shot_type,
        "is_favorite": output.is_favorite,
        "favorite_rank": output.favorite_rank,
        "selected_at": output.selected_at,
    }


@curation_router.put("/outputs/{output_id}/rank")
async def set_rank(output_id: str, request: RankRequest, db: AsyncSession = Depends(get_db)):
    return _selection(await curation.set_favorite_rank(db, output_id, request.rank))


@curation_router.post("/outputs/{output_id}/toggle-favorite")
async def toggle_favorite(output_id: str, db: AsyncSession = Depends(get_db)):
    return _selection(await curation.toggle_favorite(db, output_id))


@curation_router.post("/outputs/swap-ranks")
async def swap_ranks(request: SwapRequest, db: AsyncSession = Depends(get_db)):
    a, b = await curation.swap_ranks(db, request.output_a, request.output_b)
    return [_selection(a), _selection(b)]


@curation_router.post("/curation/clear")
async def clear_view(request: ClearRequest, db: AsyncSession = Depends(get_db)):
    cleared = await curation.clear_view_selections(db, request.batch_item_id, request.shot_type)
    return {"success": True, "cleared": cleared}


@curation_router.get("/batches/{batch_id}/curation")
async def grouped(batch_id: str, db: AsyncSession = Depends(get_db)):
    """Outputs grouped by look and shot type, with selection progress."""
    groups = await curation.group_by_look(db, batch_id)
    for group in groups:
        group["outputs_by_shot_type"] = {
            shot_type: [
                {
                    "id": o.id,
                    "status": o.status,
                    "result_url": o.result_url,
                    "is_favorite": o.is_favorite,
                    "favorite_rank": o.favorite_rank,
                    "requested_resolution": o.requested_resolution,
                }
                for o in outputs
            ]
            for shot_type, outputs in group["outputs_by_shot_type"].items()
        }
    return {
        "looks": groups,
        "total_looks": len(groups),
        "complete_looks": sum(1 for g in groups if g["selection_stats"]["is_all_complete"]),
    }
