"""
Shared fixtures. Every test gets a fresh SQLite database file and local storage
under tmp_path; Redis, S3 and Auth0 are switched off through the flags.
"""

import os

os.environ.update({
    "FF_USE_AUTH0": "false",
    "FF_USE_S3": "false",
    "FF_USE_REDIS": "false",
    "FF_USE_FIRECRAWL": "true",
    "DATABASE_URL": "sqlite+aiosqlite://",
    "AI_GATEWAY_API_KEY": "test-key",
    "AI_GATEWAY_URL": "https://gateway.test/v1/chat/completions",
    "FIRECRAWL_API_KEY": "fc-test",
    "FIRECRAWL_BASE_URL": "https://firecrawl.test/v1",
    "GENERATION_DELAY_SECONDS": "0",
})

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from repose import models  # noqa: F401  (registers tables)
from repose.core import database
from repose.core.database import Base
from repose.core.storage import LocalStorage, set_storage
from repose.models import (
    Brand, ClayPose, Look, LookSourceImage, Project, ReposeBatch, ReposeBatchItem, ReposeOutput,
)


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'repose.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(bind=engine, class_=AsyncSession, expire_on_commit=False)
    # Request handlers and workers that fall back to the global factory see the same DB
    database._engine = engine
    database._session_factory = factory
    yield factory

    database._engine = None
    database._session_factory = None
    await engine.dispose()


@pytest.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def storage(tmp_path):
    backend = LocalStorage(str(tmp_path / "storage"))
    set_storage(backend)
    yield backend
    set_storage(None)


# ── Seed helpers ─────────────────────────────────────────────────────

async def seed_brand_with_poses(db, per_shot_type: int = 2) -> Brand:
    brand = Brand(name="Acme", start_url="https://acme.test/women")
    db.add(brand)
    await db.flush()
    for shot_type in ("FRONT_FULL", "FRONT_CROPPED", "DETAIL", "BACK_FULL"):
        for n in range(per_shot_type):
            db.add(ClayPose(
                brand_id=brand.id,
                shot_type=shot_type,
                image_url=f"https://cdn.test/poses/{shot_type.lower()}_{n}.png",
            ))
    await db.flush()
    return brand


async def seed_look(db, project_id: str, code: str, views=("front", "back")) -> Look:
    look = Look(project_id=project_id, name=f"Look {code}", look_code=code)
    db.add(look)
    await db.flush()
    for view in views:
        db.add(LookSourceImage(
            look_id=look.id, view=view,
            source_url=f"https://cdn.test/looks/{code}/{view}.jpg",
        ))
    await db.flush()
    return look


async def seed_batch(db, items=(("front", "https://cdn.test/src/front.jpg"),), **config) -> ReposeBatch:
    """A DRAFT batch with one item per (view, url) and no outputs yet."""
    brand = await seed_brand_with_poses(db)
    project = Project(name="SS27", brand_id=brand.id)
    db.add(project)
    await db.flush()
    batch = ReposeBatch(
        project_id=project.id, brand_id=brand.id, name="Batch 1", status="DRAFT",
        config={"poses_per_shot_type": 1, "attempts_per_pose": 1, **config},
    )
    db.add(batch)
    await db.flush()
    for view, url in items:
        db.add(ReposeBatchItem(batch_id=batch.id, view=view, source_url=url))
    await db.flush()
    return batch


async def seed_outputs(db, batch_id: str, count: int, shot_type: str = "FRONT_FULL", **fields) -> list[ReposeOutput]:
    """Outputs for one view (a single batch item), in sequence order."""
    item = ReposeBatchItem(batch_id=batch_id, view="front", source_url="https://cdn.test/src/a.jpg")
    db.add(item)
    await db.flush()
    outputs = []
    for n in range(count):
        output = ReposeOutput(
            batch_id=batch_id,
            batch_item_id=item.id,
            pose_url=f"https://cdn.test/poses/{n}.png",
            shot_type=shot_type,
            sequence=n,
            **fields,
        )
        db.add(output)
        outputs.append(output)
    await db.flush()
    return outputs


