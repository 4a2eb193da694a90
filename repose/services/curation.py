"""
Curation: picking favorites among generated outputs.

A "view" here is a (batch item, shot type) pair. Each view holds at most
MAX_FAVORITES_PER_VIEW favorites, ranked 1..3, and no two favorites in a view
share a rank. Both rules are checked before every write.
"""

import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import FavoriteLimitExceeded, InvalidRequest, NotFound, RankTaken
from ..models.base import utcnow
from ..models.project import Look
from ..models.repose import OutputStatus, ReposeBatchItem, ReposeOutput
from . import batches, realtime
from .shot_types import ALL_OUTPUT_SHOT_TYPES, ShotType, resolve_shot_type

logger = logging.getLogger(__name__)

MAX_FAVORITES_PER_VIEW = 3
RANKS = tuple(range(1, MAX_FAVORITES_PER_VIEW + 1))


async def _get_output(db: AsyncSession, output_id: str) -> ReposeOutput:
    output = await db.get(ReposeOutput, output_id)
    if not output:
        raise NotFound("Output", output_id)
    return output


async def view_favorites(
    db: AsyncSession, batch_item_id: str, shot_type: str, exclude_id: Optional[str] = None
) -> list[ReposeOutput]:
    query = select(ReposeOutput).where(
        ReposeOutput.batch_item_id == batch_item_id,
        ReposeOutput.shot_type == shot_type,
        ReposeOutput.is_favorite.is_(True),
    )
    if exclude_id:
        query = query.where(ReposeOutput.id != exclude_id)
    result = await db.execute(query.order_by(ReposeOutput.favorite_rank))
    return list(result.scalars().all())


async def next_available_rank(db: AsyncSession, batch_item_id: str, shot_type: str) -> Optional[int]:
    taken = {o.favorite_rank for o in await view_favorites(db, batch_item_id, shot_type)}
    return next((rank for rank in RANKS if rank not in taken), None)


def _apply_rank(output: ReposeOutput, rank: Optional[int]) -> None:
    output.is_favorite = rank is not None
    output.favorite_rank = rank
    output.selected_at = utcnow() if rank is not None else None


async def set_favorite_rank(db: AsyncSession, output_id: str, rank: Optional[int]) -> ReposeOutput:
    """Set or clear (rank=None) an output's favorite rank."""
    output = await _get_output(db, output_id)

    if rank is not None:
        if rank not in RANKS:
            raise InvalidRequest(f"Rank must be between 1 and {MAX_FAVORITES_PER_VIEW}")
        others = await view_favorites(db, output.batch_item_id, output.shot_type, exclude_id=output.id)
        if any(o.favorite_rank == rank for o in others):
            raise RankTaken(f"Rank {rank} is already used in this view")
        if len(others) >= MAX_FAVORITES_PER_VIEW:
            raise FavoriteLimitExceeded(
                f"A view can have at most {MAX_FAVORITES_PER_VIEW} favorites"
            )

    _apply_rank(output, rank)
    await db.flush()
    await realtime.output_updated(
        output.batch_id, output.id, output.status, {"favorite_rank": rank}
    )
    return output


async def toggle_favorite(db: AsyncSession, output_id: str) -> ReposeOutput:
    """Clear a favorite, or give it the lowest free rank."""
    output = await _get_output(db, output_id)
    if output.is_favorite:
        return await set_favorite_rank(db, output_id, None)

    rank = await next_available_rank(db, output.batch_item_id, output.shot_type)
    if rank is None:
        raise FavoriteLimitExceeded(
            f"A view can have at most {MAX_FAVORITES_PER_VIEW} favorites"
        )
    return await set_favorite_rank(db, output_id, rank)


async def swap_ranks(db: AsyncSession, output_a_id: str, output_b_id: str) -> tuple[ReposeOutput, ReposeOutput]:
    a = await _get_output(db, output_a_id)
    b = await _get_output(db, output_b_id)
    if (a.batch_item_id, a.shot_type) != (b.batch_item_id, b.shot_type):
        raise InvalidRequest("Ranks can only be swapped within the same view")

    rank_a, rank_b = a.favorite_rank, b.favorite_rank
    _apply_rank(a, rank_b)
    _apply_rank(b, rank_a)
    await db.flush()
    await realtime.outputs_changed(a.batch_id, "ranks_swapped")
    return a, b


async def clear_view_selections(db: AsyncSession, batch_item_id: str, shot_type: str) -> int:
    result = await db.execute(
        update(ReposeOutput)
        .where(ReposeOutput.batch_item_id == batch_item_id, ReposeOutput.shot_type == shot_type)
        .values(is_favorite=False, favorite_rank=None, selected_at=None, updated_at=utcnow())
    )
    await db.flush()
    item = await db.get(ReposeBatchItem, batch_item_id)
    if item:
        await realtime.outputs_changed(item.batch_id, "selections_cleared")
    return result.rowcount or 0


# ── Grouping ─────────────────────────────────────────────────────────

def _look_code(look: Optional[Look], fallback_id: str) -> str:
    if look and (look.look_code or look.name):
        return look.look_code or look.name
    return f"Look {fallback_id[:6]}"


async def group_by_look(db: AsyncSession, batch_id: str) -> list[dict]:
    """
    Outputs of a batch grouped look → shot type, with selection stats.

    A view counts toward the stats once it has at least one complete output,
    and is complete when it holds MAX_FAVORITES_PER_VIEW favorites.
    """
    await batches.get_batch(db, batch_id)
    items = await batches.list_batch_items(db, batch_id)
    outputs = await batches.list_outputs(db, batch_id)

    look_ids = {item.look_id for item in items if item.look_id}
    looks = {}
    if look_ids:
        result = await db.execute(select(Look).where(Look.id.in_(look_ids)))
        looks = {look.id: look for look in result.scalars().all()}

    groups: dict[str, dict] = {}
    item_to_group = {}
    for item in items:
        key = item.look_id or item.id
        item_to_group[item.id] = key
        if key not in groups:
            groups[key] = {
                "look_id": key,
                "look_code": _look_code(looks.get(item.look_id), key),
                "batch_item_ids": [],
                "source_url": item.source_url,
                "outputs_by_shot_type": {},
            }
        groups[key]["batch_item_ids"].append(item.id)

    for output in outputs:
        key = item_to_group.get(output.batch_item_id)
        if key is None:
            continue
        shot_type = resolve_shot_type(output.shot_type, output.slot) or ShotType.FRONT_FULL
        groups[key]["outputs_by_shot_type"].setdefault(shot_type.value, []).append(output)

    for group in groups.values():
        by_view = {}
        for shot_type in ALL_OUTPUT_SHOT_TYPES:
            complete = [
                o for o in group["outputs_by_shot_type"].get(shot_type.value, [])
                if o.status == OutputStatus.COMPLETE.value
            ]
            if not complete:
                continue
            selected = sum(1 for o in complete if o.is_favorite)
            by_view[shot_type.value] = {
                "selected": selected,
                "total": len(complete),
                "is_complete": selected >= MAX_FAVORITES_PER_VIEW,
            }
        completed_views = sum(1 for v in by_view.values() if v["is_complete"])
        group["selection_stats"] = {
            "by_shot_type": by_view,
            "total_views": len(by_view),
            "completed_views": completed_views,
            "is_all_complete": bool(by_view) and completed_views == len(by_view),
        }

    return list(groups.values())


async def favorites_for_export(db: AsyncSession, batch_id: str) -> list[ReposeOutput]:
    """Ranked favorites that have an image, ordered by rank."""
    result = await db.execute(
        select(ReposeOutput)
        .where(
            ReposeOutput.batch_id == batch_id,
            ReposeOutput.is_favorite.is_(True),
            ReposeOutput.favorite_rank.is_not(None),
            ReposeOutput.result_url.is_not(None),
        )
        .order_by(ReposeOutput.favorite_rank, ReposeOutput.sequence)
    )
    return list(result.scalars().all())
