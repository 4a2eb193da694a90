"""
Looks and their per-view source photos.
"""

import logging
import time
from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.errors import NotFound, UnknownView
from ..core.storage import StorageBackend, get_storage, guess_content_type
from ..models.project import LOOK_VIEWS, Look, LookSourceImage, Project
from .crop import CropBox, FaceBox, calculate_head_and_shoulders_crop

logger = logging.getLogger(__name__)


async def get_look(db: AsyncSession, look_id: str) -> Look:
    look = await db.get(Look, look_id)
    if not look:
        raise NotFound("Look", look_id)
    return look


async def create_look(
    db: AsyncSession,
    project_id: str,
    name: str,
    talent_id: Optional[str] = None,
    look_code: Optional[str] = None,
) -> Look:
    if not await db.get(Project, project_id):
        raise NotFound("Project", project_id)
    look = Look(project_id=project_id, name=name, talent_id=talent_id, look_code=look_code)
    db.add(look)
    await db.flush()
    return look


async def list_looks(db: AsyncSession, project_id: str) -> list[Look]:
    result = await db.execute(
        select(Look).where(Look.project_id == project_id).order_by(Look.created_at)
    )
    return list(result.scalars().all())


async def list_source_images(db: AsyncSession, look_id: str) -> list[LookSourceImage]:
    result = await db.execute(
        select(LookSourceImage)
        .where(LookSourceImage.look_id == look_id)
        .order_by(LookSourceImage.created_at)
    )
    return list(result.scalars().all())


async def duplicate_look(db: AsyncSession, look_id: str) -> Look:
    """Copy a look and its source images. Stored files are shared, not copied."""
    original = await get_look(db, look_id)
    copy = Look(
        project_id=original.project_id,
        talent_id=original.talent_id,
        name=f"{original.name} (Copy)",
        look_code=original.look_code,
    )
    db.add(copy)
    await db.flush()

    for image in await list_source_images(db, look_id):
        db.add(LookSourceImage(
            look_id=copy.id,
            view=image.view,
            source_url=image.source_url,
            original_source_url=image.original_source_url,
            head_crop_x=image.head_crop_x,
            head_crop_y=image.head_crop_y,
            head_crop_width=image.head_crop_width,
            head_crop_height=image.head_crop_height,
        ))
    await db.flush()
    logger.info("Duplicated look %s → %s", look_id, copy.id)
    return copy


async def delete_look(db: AsyncSession, look_id: str) -> None:
    look = await get_look(db, look_id)
    for image in await list_source_images(db, look_id):
        await db.delete(image)
    await db.delete(look)
    await db.flush()


def _extension(filename: str) -> str:
    _, dot, ext = (filename or "").rpartition(".")
    return ext.lower() if dot and ext else "png"


async def upload_view_image(
    db: AsyncSession,
    look_id: str,
    view: str,
    filename: str,
    file_bytes: bytes,
    storage: Optional[StorageBackend] = None,
) -> LookSourceImage:
    """
    Store a photo for one view of a look.

    There is exactly one row per (look, view): uploading again points the
    existing row at the new file instead of inserting a second one.
    """
    view = (view or "").lower()
    if view not in LOOK_VIEWS:
        raise UnknownView(f"Unknown view '{view}'. Use one of: {', '.join(LOOK_VIEWS)}")
    await get_look(db, look_id)

    storage = storage or get_storage()
    key = f"looks/{look_id}/{view}-{int(time.time() * 1000)}.{_extension(filename)}"
    url = await storage.upload(key, file_bytes, guess_content_type(filename))

    result = await db.execute(
        select(LookSourceImage).where(
            LookSourceImage.look_id == look_id,
            LookSourceImage.view == view,
        )
    )
    image = result.scalar_one_or_none()
    if image:
        image.source_url = url
        # A new photo invalidates the old crop
        image.head_crop_x = image.head_crop_y = None
        image.head_crop_width = image.head_crop_height = None
    else:
        image = LookSourceImage(look_id=look_id, view=view, source_url=url, original_source_url=url)
        db.add(image)
    await db.flush()

    logger.info("Look %s %s image stored (%d bytes)", look_id, view, len(file_bytes))
    return image


async def remove_view_image(db: AsyncSession, image_id: str) -> None:
    image = await db.get(LookSourceImage, image_id)
    if not image:
        raise NotFound("Source image", image_id)
    await db.delete(image)
    await db.flush()


async def apply_head_crop(
    db: AsyncSession,
    image_id: str,
    face: Optional[FaceBox],
    image_width: float,
    image_height: float,
    aspect_ratio: str = "4:5",
) -> CropBox:
    image = await db.get(LookSourceImage, image_id)
    if not image:
        raise NotFound("Source image", image_id)

    crop = calculate_head_and_shoulders_crop(face, image_width, image_height, aspect_ratio)
    image.head_crop_x = crop.x
    image.head_crop_y = crop.y
    image.head_crop_width = crop.width
    image.head_crop_height = crop.height
    await db.flush()
    return crop
