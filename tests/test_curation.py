import pytest

from repose.core.errors import FavoriteLimitExceeded, InvalidRequest, RankTaken
from repose.models import Look, Project, ReposeBatchItem
from repose.services import curation

from conftest import seed_batch, seed_outputs


@pytest.fixture
async def view(db):
    """Five complete outputs in one (item, shot type) view."""
    batch = await seed_batch(db)
    outputs = await seed_outputs(db, batch.id, 5, status="complete", result_url="https://cdn.test/r.png")
    return batch, outputs


async def test_rank_and_unrank(db, view):
    _, outputs = view
    output = await curation.set_favorite_rank(db, outputs[0].id, 2)
    assert output.is_favorite and output.favorite_rank == 2
    assert output.selected_at is not None

    output = await curation.set_favorite_rank(db, outputs[0].id, None)
    assert not output.is_favorite
    assert output.favorite_rank is None
    assert output.selected_at is None


async def test_rank_out_of_range(db, view):
    _, outputs = view
    with pytest.raises(InvalidRequest):
        await curation.set_favorite_rank(db, outputs[0].id, 4)


async def test_rank_taken_in_same_view(db, view):
    _, outputs = view
    await curation.set_favorite_rank(db, outputs[0].id, 1)
    with pytest.raises(RankTaken):
        await curation.set_favorite_rank(db, outputs[1].id, 1)


async def test_moving_own_rank_is_allowed(db, view):
    _, outputs = view
    await curation.set_favorite_rank(db, outputs[0].id, 1)
    output = await curation.set_favorite_rank(db, outputs[0].id, 3)
    assert output.favorite_rank == 3


async def test_never_more_than_three_favorites(db, view):
    _, outputs = view
    for rank, output in enumerate(outputs[:3], start=1):
        await curation.set_favorite_rank(db, output.id, rank)

    with pytest.raises(FavoriteLimitExceeded):
        await curation.toggle_favorite(db, outputs[3].id)

    favorites = await curation.view_favorites(db, outputs[0].batch_item_id, "FRONT_FULL")
    assert [f.favorite_rank for f in favorites] == [1, 2, 3]


async def test_toggle_takes_lowest_free_rank(db, view):
    _, outputs = view
    await curation.set_favorite_rank(db, outputs[0].id, 1)
    await curation.set_favorite_rank(db, outputs[1].id, 3)

    toggled = await curation.toggle_favorite(db, outputs[2].id)
    assert toggled.favorite_rank == 2

    untoggled = await curation.toggle_favorite(db, outputs[2].id)
    assert not untoggled.is_favorite


async def test_views_are_independent(db, view):
    batch, outputs = view
    others = await seed_outputs(db, batch.id, 1, shot_type="DETAIL", status="complete")
    for rank, output in enumerate(outputs[:3], start=1):
        await curation.set_favorite_rank(db, output.id, rank)

    assert (await curation.toggle_favorite(db, others[0].id)).favorite_rank == 1


async def test_swap_ranks(db, view):
    batch, outputs = view
    await curation.set_favorite_rank(db, outputs[0].id, 1)
    await curation.set_favorite_rank(db, outputs[1].id, 2)

    a, b = await curation.swap_ranks(db, outputs[0].id, outputs[1].id)
    assert (a.favorite_rank, b.favorite_rank) == (2, 1)

    other_view = await seed_outputs(db, batch.id, 1, shot_type="DETAIL")
    with pytest.raises(InvalidRequest):
        await curation.swap_ranks(db, outputs[0].id, other_view[0].id)


async def test_clear_view(db, view):
    _, outputs = view
    await curation.set_favorite_rank(db, outputs[0].id, 1)
    await curation.set_favorite_rank(db, outputs[1].id, 2)

    assert await curation.clear_view_selections(db, outputs[0].batch_item_id, "FRONT_FULL") == 5
    assert await curation.view_favorites(db, outputs[0].batch_item_id, "FRONT_FULL") == []


async def test_group_by_look_stats(db):
    batch = await seed_batch(db, items=[])
    project = await db.get(Project, batch.project_id)
    look = Look(project_id=project.id, name="Red dress", look_code="RD-01")
    db.add(look)
    await db.flush()

    outputs = await seed_outputs(db, batch.id, 4, status="complete", result_url="https://cdn.test/r.png")
    item = await db.get(ReposeBatchItem, outputs[0].batch_item_id)
    item.look_id = look.id
    outputs[3].status = "failed"
    for rank, output in enumerate(outputs[:3], start=1):
        await curation.set_favorite_rank(db, output.id, rank)

    groups = await curation.group_by_look(db, batch.id)

    assert len(groups) == 1
    group = groups[0]
    assert group["look_id"] == look.id
    assert group["look_code"] == "RD-01"
    stats = group["selection_stats"]
    assert stats["by_shot_type"]["FRONT_FULL"] == {"selected": 3, "total": 3, "is_complete": True}
    assert stats["total_views"] == 1
    assert stats["is_all_complete"]
    assert len(group["outputs_by_shot_type"]["FRONT_FULL"]) == 4
