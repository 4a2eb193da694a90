"""
Brands, their clay pose library, and brand site scraping.
"""

import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..core.auth import AuthenticatedUser
from ..core.dependencies import get_db, require_internal
from ..core.errors import FeatureDisabled, InvalidRequest, NotFound
from ..core.flags import get_flags
from ..models.catalog import Brand, ClayPose, Product, ProductImage
from ..services import scraper
from ..services.shot_types import ShotType, resolve_shot_type, shot_type_to_slot

logger = logging.getLogger(__name__)

catalog_router = APIRouter(tags=["catalog"])


class BrandCreate(BaseModel):
    name: str
    start_url: Optional[str] = None


class BrandResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    start_url: Optional[str] = None


class PoseCreate(BaseModel):
    image_url: str
    shot_type: Optional[str] = None
    slot: Optional[str] = None


class PoseResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    brand_id: str
    shot_type: Optional[str] = None
    slot: Optional[str] = None
    image_url: str


class ScrapeRequest(BaseModel):
    start_url: Optional[str] = None
    limit: int = Field(default=10, ge=1, le=200)


async def _get_brand(db: AsyncSession, brand_id: str) -> Brand:
    brand = await db.get(Brand, brand_id)
    if not brand:
        raise NotFound("Brand", brand_id)
    return brand


@catalog_router.post("/brands", response_model=BrandResponse)
async def create_brand(request: BrandCreate, db: AsyncSession = Depends(get_db)):
    brand = Brand(name=request.name, start_url=request.start_url)
    db.add(brand)
    await db.flush()
    return BrandResponse.model_validate(brand)


@catalog_router.get("/brands", response_model=list[BrandResponse])
async def list_brands(db: AsyncSession = Depends(get_db)):
    result = await db.execute(select(Brand).order_by(Brand.name))
    return [BrandResponse.model_validate(b) for b in result.scalars().all()]


# ── Clay poses ───────────────────────────────────────────────────────

@catalog_router.post("/brands/{brand_id}/poses", response_model=PoseResponse)
async def add_pose(brand_id: str, request: PoseCreate, db: AsyncSession = Depends(get_db)):
    await _get_brand(db, brand_id)
    shot_type = resolve_shot_type(request.shot_type, request.slot)
    if shot_type is None:
        raise InvalidRequest(
            f"Pose needs a shot type ({', '.join(s.value for s in ShotType)}) or a slot (A-D)"
        )
    pose = ClayPose(
        brand_id=brand_id,
        shot_type=shot_type.value,
        slot=request.slot or shot_type_to_slot(shot_type),
        image_url=request.image_url,
    )
    db.add(pose)
    await db.flush()
    return PoseResponse.model_validate(pose)


@catalog_router.get("/brands/{brand_id}/poses", response_model=list[PoseResponse])
async def list_poses(brand_id: str, shot_type: Optional[str] = None, db: AsyncSession = Depends(get_db)):
    query = select(ClayPose).where(ClayPose.brand_id == brand_id).order_by(ClayPose.created_at)
    if shot_type:
        query = query.where(ClayPose.shot_type == shot_type)
    result = await db.execute(query)
    return [PoseResponse.model_validate(p) for p in result.scalars().all()]


@catalog_router.delete("/poses/{pose_id}")
async def delete_pose(pose_id: str, db: AsyncSession = Depends(get_db)):
    pose = await db.get(ClayPose, pose_id)
    if not pose:
        raise NotFound("Clay pose", pose_id)
    await db.delete(pose)
    return {"success": True, "id": pose_id}


# ── Scraping ─────────────────────────────────────────────────────────

async def _scrape_in_background(brand_id: str, start_url: str, job_id: str, limit: int):
    try:
        await scraper.scrape_brand(brand_id, start_url, job_id, max_products=limit)
    except Exception:
        logger.exception("Background scrape crashed for brand %s", brand_id)


@catalog_router.post("/brands/{brand_id}/scrape")
async def scrape_brand(
    brand_id: str,
    request: ScrapeRequest,
    background_tasks: BackgroundTasks,
    user: AuthenticatedUser = Depends(require_internal),
    db: AsyncSession = Depends(get_db),
):
    """Kick off a brand scrape. Progress is on the returned pipeline job."""
    if not get_flags().use_firecrawl:
        raise FeatureDisabled("Scraping is disabled")
    brand = await _get_brand(db, brand_id)
    start_url = request.start_url or brand.start_url
    if not start_url:
        raise InvalidRequest("start_url is required")

    job_id = await scraper.start_brand_scrape(db, brand_id, start_url, created_by=user.user_id)
    # Job row must be visible to the worker's own session
    await db.commit()
    background_tasks.add_task(_scrape_in_background, brand_id, start_url, job_id, request.limit)
    return {"success": True, "job_id": job_id}


@catalog_router.get("/brands/{brand_id}/products")
async def list_products(brand_id: str, db: AsyncSession = Depends(get_db)):
    products = (await db.execute(
        select(Product).where(Product.brand_id == brand_id).order_by(Product.created_at)
    )).scalars().all()
    images = []
    if products:
        images = (await db.execute(
            select(ProductImage)
            .where(ProductImage.product_id.in_([p.id for p in products]))
            .order_by(ProductImage.slot)
        )).scalars().all()

    by_product: dict[str, list] = {}
    for image in images:
        by_product.setdefault(image.product_id, []).append({
            "id": image.id, "slot": image.slot, "shot_type": image.shot_type, "url": image.stored_url or image.source_url,
        })
    return [
        {"id": p.id, "sku": p.sku, "product_url": p.product_url, "images": by_product.get(p.id, [])}
        for p in products
    ]
