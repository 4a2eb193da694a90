import io
import zipfile

import httpx
import pytest
from PIL import Image

from repose.core.errors import NothingToExport
from repose.models import Look, ReposeBatchItem
from repose.services import curation, export, handoff

from conftest import seed_batch, seed_outputs


def png(color="red", size=(60, 80)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", size, color).save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
async def curated(db, storage):
    """Look 'ss27 lk 01' with two ranked front favorites and one back favorite."""
    batch = await seed_batch(db, items=[])
    look = Look(project_id=batch.project_id, name="Look 1", look_code="ss27 lk 01")
    db.add(look)
    await db.flush()

    front = await seed_outputs(db, batch.id, 3, status="complete")
    back = await seed_outputs(db, batch.id, 1, shot_type="BACK_FULL", status="complete")
    for output in (front[0], back[0]):
        (await db.get(ReposeBatchItem, output.batch_item_id)).look_id = look.id

    for n, output in enumerate(front + back):
        output.result_url = await storage.upload(f"repose/{batch.id}/{n}.png", png())
    await curation.set_favorite_rank(db, front[0].id, 2)
    await curation.set_favorite_rank(db, front[1].id, 1)
    await curation.set_favorite_rank(db, back[0].id, 1)
    await db.flush()
    return batch


def test_normalize_look_code():
    assert export.normalize_look_code(Look(name="x", look_code="  ss27 lk 01 "), "id") == "SS27_LK_01"
    assert export.normalize_look_code(Look(name="Red Dress"), "id") == "RED_DRESS"
    assert export.normalize_look_code(None, "abcdef123") == "LOOK_ABCDEF"


async def test_export_structure(db, curated):
    entries = await export.build_export_structure(db, curated.id)

    assert [e.path for e in entries] == [
        "SS27_LK_01/back_full/SS27_LK_01_back_full_01.png",
        "SS27_LK_01/front_full/SS27_LK_01_front_full_01.png",
        "SS27_LK_01/front_full/SS27_LK_01_front_full_02.png",
    ]


async def test_export_zip(db, curated, storage):
    data, written = await export.export_zip(db, curated.id, storage=storage)

    assert written == 3
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        names = zf.namelist()
        assert "SS27_LK_01/front_full/SS27_LK_01_front_full_01.png" in names
        assert zf.read(names[0]).startswith(b"\x89PNG")


async def test_export_skips_missing_images(db, curated, storage):
    entries = await export.build_export_structure(db, curated.id)
    await storage.delete(entries[0].url.removeprefix("/v1/files/"))

    _, written = await export.export_zip(db, curated.id, storage=storage)
    assert written == 2


async def test_items_sharing_a_shot_type_get_distinct_files(db, storage):
    batch = await seed_batch(db, items=[])
    look = Look(project_id=batch.project_id, name="Look 1", look_code="LK1")
    db.add(look)
    await db.flush()

    # A front photo and a detail photo of the same look both yield DETAIL shots
    [from_front] = await seed_outputs(db, batch.id, 1, shot_type="DETAIL", status="complete")
    [from_detail] = await seed_outputs(db, batch.id, 1, shot_type="DETAIL", status="complete")
    detail_item = await db.get(ReposeBatchItem, from_detail.batch_item_id)
    detail_item.view = "detail"
    for n, output in enumerate((from_front, from_detail)):
        (await db.get(ReposeBatchItem, output.batch_item_id)).look_id = look.id
        output.result_url = await storage.upload(f"repose/{batch.id}/d{n}.png", png())
        await curation.set_favorite_rank(db, output.id, 1)
    await db.flush()

    entries = await export.build_export_structure(db, batch.id)
    assert [e.path for e in entries] == ["LK1/detail/LK1_detail_01.png", "LK1/detail/LK1_detail_02.png"]
    assert {e.output_id for e in entries} == {from_front.id, from_detail.id}
    assert [e.rank for e in entries] == [1, 1]

    data, written = await export.export_zip(db, batch.id, storage=storage)
    assert written == 2
    with zipfile.ZipFile(io.BytesIO(data)) as zf:
        assert sorted(zf.namelist()) == [e.path for e in entries]


async def test_remote_images_are_downloaded(storage):
    def handler(request):
        if request.url.path == "/missing.png":
            return httpx.Response(404)
        return httpx.Response(200, content=png())

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        data = await export.fetch_image("https://cdn.test/remote.png", client, storage)
        assert data.startswith(b"\x89PNG")
        with pytest.raises(httpx.HTTPStatusError):
            await export.fetch_image("https://cdn.test/missing.png", client, storage)


async def test_nothing_to_export(db):
    batch = await seed_batch(db)
    with pytest.raises(NothingToExport):
        await export.export_zip(db, batch.id)


def test_contact_sheet_layout():
    sheet = export.build_contact_sheet([png(), png("blue", (200, 50)), png("green")], cols=2, cell=100, gap=10)
    with Image.open(io.BytesIO(sheet)) as img:
        assert img.format == "PNG"
        # 2 columns x 2 rows of 100px cells with 10px gaps
        assert img.size == (2 * 100 + 3 * 10, 2 * 100 + 3 * 10)
        assert img.getpixel((5, 5)) == (232, 230, 225)
        assert img.getpixel((60, 60)) == (255, 0, 0)


def test_contact_sheet_never_wider_than_images():
    sheet = export.build_contact_sheet([png()], cols=5, cell=50, gap=4)
    with Image.open(io.BytesIO(sheet)) as img:
        assert img.size == (58, 58)


def test_contact_sheet_needs_images():
    with pytest.raises(NothingToExport):
        export.build_contact_sheet([])


async def test_contact_sheet_for_batch(db, curated, storage):
    sheet = await export.contact_sheet_for_batch(db, curated.id, storage=storage, cols=3, cell=40, gap=2)
    with Image.open(io.BytesIO(sheet)) as img:
        assert img.size == (3 * 40 + 4 * 2, 40 + 2 * 2)


async def test_handoff_packages_favorites(db, curated):
    job = await handoff.send_to_job_board(db, curated.id, "Face apply SS27", instructions="Use talent A")

    assert job.status == "OPEN"
    assert job.type == handoff.DEFAULT_HANDOFF_TYPE
    assert len(job.assets) == 3
    assert {a["shot_type"] for a in job.assets} == {"FRONT_FULL", "BACK_FULL"}
    assert [j.id for j in await handoff.list_handoff_jobs(db, curated.id)] == [job.id]


async def test_handoff_without_favorites(db):
    batch = await seed_batch(db)
    with pytest.raises(NothingToExport):
        await handoff.send_to_job_board(db, batch.id, "Nothing")
