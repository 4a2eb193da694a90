import pytest
from sqlalchemy import select

from repose.core.errors import NotFound, UnknownView
from repose.models import LookSourceImage, Project
from repose.services import looks
from repose.services.crop import FaceBox


@pytest.fixture
async def project(db):
    project = Project(name="SS27")
    db.add(project)
    await db.flush()
    return project


async def test_create_look_requires_project(db):
    with pytest.raises(NotFound):
        await looks.create_look(db, "missing", "Look 1")


async def test_reupload_replaces_image_for_view(db, project, storage):
    look = await looks.create_look(db, project.id, "Look 1", look_code="LK001")

    first = await looks.upload_view_image(db, look.id, "Front", "a.png", b"first", storage=storage)
    await looks.apply_head_crop(db, first.id, FaceBox(400, 100, 200, 200), 1000, 1000)
    second = await looks.upload_view_image(db, look.id, "front", "b.jpg", b"second", storage=storage)

    rows = (await db.execute(
        select(LookSourceImage).where(LookSourceImage.look_id == look.id)
    )).scalars().all()
    assert len(rows) == 1
    assert second.id == first.id
    assert second.source_url.endswith(".jpg")
    # The first upload is remembered, and the old crop no longer applies
    assert second.original_source_url != second.source_url
    assert second.head_crop_x is None

    key = second.source_url.removeprefix("/v1/files/")
    assert await storage.read(key) == b"second"


async def test_unknown_view_is_rejected(db, project, storage):
    look = await looks.create_look(db, project.id, "Look 1")
    with pytest.raises(UnknownView):
        await looks.upload_view_image(db, look.id, "top-down", "a.png", b"x", storage=storage)


async def test_head_crop_is_stored_on_image(db, project, storage):
    look = await looks.create_look(db, project.id, "Look 1")
    image = await looks.upload_view_image(db, look.id, "front", "a.png", b"x", storage=storage)

    crop = await looks.apply_head_crop(db, image.id, None, 1000, 1000, "1:1")

    assert image.head_crop_x == crop.x
    assert image.head_crop_width == crop.width == crop.height


async def test_duplicate_copies_images(db, project, storage):
    look = await looks.create_look(db, project.id, "Look 1", look_code="LK001")
    await looks.upload_view_image(db, look.id, "front", "a.png", b"f", storage=storage)
    await looks.upload_view_image(db, look.id, "back", "b.png", b"b", storage=storage)

    copy = await looks.duplicate_look(db, look.id)

    assert copy.name == "Look 1 (Copy)"
    assert copy.look_code == "LK001"
    views = sorted(i.view for i in await looks.list_source_images(db, copy.id))
    assert views == ["back", "front"]


async def test_delete_look_removes_images(db, project, storage):
    look = await looks.create_look(db, project.id, "Look 1")
    await looks.upload_view_image(db, look.id, "front", "a.png", b"f", storage=storage)

    await looks.delete_look(db, look.id)

    assert await looks.list_source_images(db, look.id) == []
    with pytest.raises(NotFound):
        await looks.get_look(db, look.id)
