"""
Repose batches: items (one source photo each), config, and the output plan.

Planning turns (batch items × allowed shot types × random clay poses × attempts)
into queued ReposeOutput rows. Generation then walks those rows in order.
"""

import logging
import random
from collections import defaultdict
from typing import Iterable, Optional

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import NotFound, NothingToGenerate
from ..models.catalog import ClayPose
from ..models.project import LookSourceImage
from ..models.repose import (
    BatchStatus, DEFAULT_BATCH_CONFIG, OutputStatus, ReposeBatch, ReposeBatchItem, ReposeOutput,
)
from . import realtime
from .shot_types import (
    ALL_OUTPUT_SHOT_TYPES, ShotType, allowed_outputs_for_input, parse_view, resolve_shot_type,
    shot_type_to_slot,
)

logger = logging.getLogger(__name__)


# ── Batches ──────────────────────────────────────────────────────────

async def create_batch(
    db: AsyncSession,
    project_id: Optional[str] = None,
    brand_id: Optional[str] = None,
    name: Optional[str] = None,
    config: Optional[dict] = None,
) -> ReposeBatch:
    batch = ReposeBatch(
        project_id=project_id,
        brand_id=brand_id,
        name=name,
        status=BatchStatus.DRAFT.value,
        config={**DEFAULT_BATCH_CONFIG, **(config or {})},
    )
    db.add(batch)
    await db.flush()
    logger.info("Batch %s created (brand=%s)", batch.id, brand_id)
    return batch


async def get_batch(db: AsyncSession, batch_id: str) -> ReposeBatch:
    batch = await db.get(ReposeBatch, batch_id)
    if not batch:
        raise NotFound("Batch", batch_id)
    return batch


async def list_batches(db: AsyncSession, project_id: Optional[str] = None) -> list[ReposeBatch]:
    query = select(ReposeBatch).order_by(ReposeBatch.created_at.desc())
    if project_id:
        query = query.where(ReposeBatch.project_id == project_id)
    result = await db.execute(query)
    return list(result.scalars().all())


async def set_batch_status(db: AsyncSession, batch_id: str, status: BatchStatus) -> ReposeBatch:
    batch = await get_batch(db, batch_id)
    batch.status = BatchStatus(status).value
    await db.flush()
    await realtime.batch_status(batch_id, batch.status)
    return batch


async def update_batch_config(db: AsyncSession, batch_id: str, config: dict) -> ReposeBatch:
    """Shallow-merge into the existing config."""
    batch = await get_batch(db, batch_id)
    # New dict so the JSON column registers the change
    batch.config = {**DEFAULT_BATCH_CONFIG, **(batch.config or {}), **config}
    await db.flush()
    return batch


async def delete_batch(db: AsyncSession, batch_id: str) -> None:
    batch = await get_batch(db, batch_id)
    await db.execute(delete(ReposeOutput).where(ReposeOutput.batch_id == batch_id))
    await db.execute(delete(ReposeBatchItem).where(ReposeBatchItem.batch_id == batch_id))
    await db.delete(batch)
    await db.flush()


# ── Items ────────────────────────────────────────────────────────────

async def add_batch_items(db: AsyncSession, batch_id: str, items: Iterable[dict]) -> list[ReposeBatchItem]:
    """items: dicts with view, source_url and optionally look_id."""
    await get_batch(db, batch_id)
    created = []
    for item in items:
        row = ReposeBatchItem(
            batch_id=batch_id,
            look_id=item.get("look_id"),
            view=item["view"],
            source_url=item["source_url"],
        )
        db.add(row)
        created.append(row)
    await db.flush()
    return created


async def add_items_from_looks(db: AsyncSession, batch_id: str, look_ids: list[str]) -> list[ReposeBatchItem]:
    """One batch item per stored source image of each look."""
    if not look_ids:
        return []
    result = await db.execute(
        select(LookSourceImage)
        .where(LookSourceImage.look_id.in_(look_ids))
        .order_by(LookSourceImage.look_id, LookSourceImage.created_at)
    )
    images = result.scalars().all()
    return await add_batch_items(db, batch_id, [
        {"look_id": img.look_id, "view": img.view, "source_url": img.source_url}
        for img in images
    ])


async def list_batch_items(db: AsyncSession, batch_id: str) -> list[ReposeBatchItem]:
    result = await db.execute(
        select(ReposeBatchItem)
        .where(ReposeBatchItem.batch_id == batch_id)
        .order_by(ReposeBatchItem.created_at)
    )
    return list(result.scalars().all())


# ── Outputs ──────────────────────────────────────────────────────────

async def list_outputs(
    db: AsyncSession, batch_id: str, status: Optional[OutputStatus] = None
) -> list[ReposeOutput]:
    query = (
        select(ReposeOutput)
        .where(ReposeOutput.batch_id == batch_id)
        .order_by(ReposeOutput.sequence, ReposeOutput.created_at)
    )
    if status is not None:
        query = query.where(ReposeOutput.status == OutputStatus(status).value)
    result = await db.execute(query)
    return list(result.scalars().all())


async def count_outputs(db: AsyncSession, batch_id: str) -> int:
    result = await db.execute(
        select(func.count()).select_from(ReposeOutput).where(ReposeOutput.batch_id == batch_id)
    )
    return result.scalar_one()


async def next_sequence(db: AsyncSession, batch_id: str) -> int:
    result = await db.execute(
        select(func.max(ReposeOutput.sequence)).where(ReposeOutput.batch_id == batch_id)
    )
    current = result.scalar_one_or_none()
    return 0 if current is None else current + 1


async def _poses_by_shot_type(db: AsyncSession, brand_id: Optional[str]) -> dict[ShotType, list[ClayPose]]:
    grouped: dict[ShotType, list[ClayPose]] = defaultdict(list)
    if not brand_id:
        return grouped
    result = await db.execute(
        select(ClayPose).where(ClayPose.brand_id == brand_id).order_by(ClayPose.created_at)
    )
    for pose in result.scalars().all():
        shot_type = resolve_shot_type(pose.shot_type, pose.slot)
        if shot_type:
            grouped[shot_type].append(pose)
    return grouped


async def plan_outputs(db: AsyncSession, batch_id: str, rng: Optional[random.Random] = None) -> int:
    """
    Create the queued output rows for a batch. Returns how many exist.

    Idempotent: a batch that already has outputs is being resumed, so the
    existing rows are kept and counted.
    """
    batch = await get_batch(db, batch_id)
    existing = await count_outputs(db, batch_id)
    if existing:
        logger.info("Batch %s already planned (%d outputs), resuming", batch_id, existing)
        return existing

    config = {**DEFAULT_BATCH_CONFIG, **(batch.config or {})}
    if rng is None:
        seed = config.get("seed")
        rng = random.Random(seed) if seed is not None else random
    poses_per_shot_type = int(config["poses_per_shot_type"])
    attempts_per_pose = int(config["attempts_per_pose"])

    poses = await _poses_by_shot_type(db, batch.brand_id)
    logger.info(
        "Batch %s poses by shot type: %s",
        batch_id, {shot.value: len(poses.get(shot, [])) for shot in ALL_OUTPUT_SHOT_TYPES},
    )

    sequence = 0
    for item in await list_batch_items(db, batch_id):
        input_view = parse_view(item.view)
        if input_view is None:
            logger.warning("Batch item %s has unrecognised view '%s', skipping", item.id, item.view)
            continue

        for shot_type in allowed_outputs_for_input(input_view):
            candidates = poses.get(shot_type, [])
            if not candidates:
                continue
            chosen = rng.sample(candidates, min(poses_per_shot_type, len(candidates)))
            for pose in chosen:
                for attempt in range(attempts_per_pose):
                    db.add(ReposeOutput(
                        batch_id=batch_id,
                        batch_item_id=item.id,
                        pose_id=pose.id,
                        pose_url=pose.image_url,
                        shot_type=shot_type.value,
                        slot=shot_type_to_slot(shot_type),
                        attempt_index=attempt,
                        sequence=sequence,
                        status=OutputStatus.QUEUED.value,
                    ))
                    sequence += 1

    if sequence == 0:
        raise NothingToGenerate(
            "No outputs to generate. Check that batch items have front/back/detail views "
            "and the brand has clay poses for those shot types."
        )

    await db.flush()
    await realtime.outputs_changed(batch_id, "planned")
    logger.info("Batch %s planned %d outputs", batch_id, sequence)
    return sequence


async def clear_outputs(db: AsyncSession, batch_id: str) -> int:
    batch = await get_batch(db, batch_id)
    result = await db.execute(delete(ReposeOutput).where(ReposeOutput.batch_id == batch_id))
    batch.status = BatchStatus.DRAFT.value
    await db.flush()
    await realtime.outputs_changed(batch_id, "cleared")
    return result.rowcount or 0


async def batch_progress(db: AsyncSession, batch_id: str) -> dict:
    batch = await get_batch(db, batch_id)
    result = await db.execute(
        select(ReposeOutput.status, func.count())
        .where(ReposeOutput.batch_id == batch_id)
        .group_by(ReposeOutput.status)
    )
    counts = {status.value: 0 for status in OutputStatus}
    for status, n in result.all():
        counts[status] = n

    total = sum(counts.values())
    finished = counts[OutputStatus.COMPLETE.value] + counts[OutputStatus.FAILED.value]
    return {
        "batch_id": batch_id,
        "status": batch.status,
        "total": total,
        **counts,
        "percent": round(finished / total * 100) if total else 0,
    }
