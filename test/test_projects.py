"""Tests for the ProjectRepository: name uniqueness among active projects."""

import pytest

from tracker.domain import (
    ProjectConflictError,
    ProjectNotFoundError,
    ProjectValidationError,
    Visibility,
)
from tracker.projects import NAME_TAKEN, RESTORE_NAME_TAKEN


@pytest.mark.asyncio
async def test_create_defaults(projects, alice):
    project = await projects.create(alice, {"name": "  Website  "})

    assert project.name == "Website"
    assert project.team_id == "team-a"
    assert project.created_by == "alice"
    assert project.settings.columns == ["todo", "in_progress", "done", "blocked"]
    assert project.settings.visibility == Visibility.TEAM
    assert project.deleted_at is None


@pytest.mark.asyncio
async def test_duplicate_name_in_team_conflicts(projects, alice, bob, mallory):
    await projects.create(alice, {"name": "Website"})

    with pytest.raises(ProjectConflictError) as exc:
        await projects.create(bob, {"name": "Website"})
    assert exc.value.field == "name"
    assert str(exc.value) == NAME_TAKEN

    # Another team may reuse the name.
    other = await projects.create(mallory, {"name": "Website"})
    assert other.team_id == "team-b"


@pytest.mark.parametrize(
    "data",
    [
        {},
        {"name": ""},
        {"name": "n" * 101},
        {"name": "ok", "description": "d" * 1001},
        {"name": "ok", "settings": {"color": "blue"}},
        {"name": "ok", "settings": {"visibility": "secret"}},
        {"name": "ok", "settings": {"columns": 3}},
        {"name": "ok", "settings": {"columns": {"a": 1}}},
        {"name": "ok", "settings": {"columns": ["todo", 1]}},
        {"name": "ok", "owner": "alice"},
    ],
)
@pytest.mark.asyncio
async def test_create_rejects_invalid_fields(projects, alice, data):
    with pytest.raises(ProjectValidationError):
        await projects.create(alice, data)


@pytest.mark.asyncio
async def test_restore_conflict_then_rename_unblocks(projects, alice):
    """A deleted project cannot come back under a name an active one holds."""
    old = await projects.create(alice, {"name": "X"})
    await projects.remove(alice, old.id)
    active = await projects.create(alice, {"name": "X"})

    with pytest.raises(ProjectConflictError) as exc:
        await projects.restore(alice, old.id)
    assert str(exc.value) == RESTORE_NAME_TAKEN
    assert [p.id for p in await projects.find_many(alice)] == [active.id]

    await projects.update(alice, active.id, {"name": "X (new)"})
    restored = await projects.restore(alice, old.id)

    assert restored.deleted_at is None
    assert restored.name == "X"
    assert {p.name for p in await projects.find_many(alice)} == {"X", "X (new)"}


@pytest.mark.asyncio
async def test_rename_to_taken_name_conflicts(projects, alice):
    await projects.create(alice, {"name": "A"})
    b = await projects.create(alice, {"name": "B"})

    with pytest.raises(ProjectConflictError):
        await projects.update(alice, b.id, {"name": "A"})

    # Re-saving its own name is not a conflict.
    same = await projects.update(alice, b.id, {"name": "B", "description": "second"})
    assert same.description == "second"


@pytest.fixture
def unchecked_names(monkeypatch):
    """Skip the read-side name check so only the unique index stands guard."""

    async def skip(*args, **kwargs):
        return None

    monkeypatch.setattr("tracker.projects.ensure_unique", skip)


@pytest.mark.asyncio
async def test_index_backstop_on_create(projects, alice, unchecked_names):
    await projects.create(alice, {"name": "X"})

    with pytest.raises(ProjectConflictError) as exc:
        await projects.create(alice, {"name": "X"})
    assert exc.value.field == "name"
    assert str(exc.value) == NAME_TAKEN
    assert len(await projects.find_many(alice)) == 1


@pytest.mark.asyncio
async def test_index_backstop_on_rename(projects, alice, unchecked_names):
    await projects.create(alice, {"name": "A"})
    b = await projects.create(alice, {"name": "B"})

    with pytest.raises(ProjectConflictError) as exc:
        await projects.update(alice, b.id, {"name": "A"})
    assert str(exc.value) == NAME_TAKEN
    assert (await projects.find_one(alice, b.id)).name == "B"


@pytest.mark.asyncio
async def test_index_backstop_on_restore(projects, alice, unchecked_names):
    old = await projects.create(alice, {"name": "X"})
    await projects.remove(alice, old.id)
    active = await projects.create(alice, {"name": "X"})

    with pytest.raises(ProjectConflictError) as exc:
        await projects.restore(alice, old.id)
    assert str(exc.value) == RESTORE_NAME_TAKEN

    everything = await projects.find_many(alice, include_deleted=True)
    still_deleted = next(p for p in everything if p.id == old.id)
    assert still_deleted.deleted_at is not None
    assert [p.id for p in await projects.find_many(alice)] == [active.id]


@pytest.mark.asyncio
async def test_update_settings(projects, alice):
    project = await projects.create(alice, {"name": "P"})
    updated = await projects.update(
        alice, project.id, {"settings": {"color": "#3B82F6", "visibility": "private"}}
    )

    assert updated.settings.color == "#3B82F6"
    assert updated.settings.visibility == Visibility.PRIVATE
    assert updated.updated_at > project.updated_at


@pytest.mark.asyncio
async def test_other_team_and_deleted_are_not_found(projects, alice, mallory):
    project = await projects.create(alice, {"name": "P"})

    with pytest.raises(ProjectNotFoundError):
        await projects.find_one(mallory, project.id)
    with pytest.raises(ProjectNotFoundError):
        await projects.update(mallory, project.id, {"name": "Q"})

    await projects.remove(alice, project.id)
    with pytest.raises(ProjectNotFoundError):
        await projects.find_one(alice, project.id)
    with pytest.raises(ProjectNotFoundError):
        await projects.remove(alice, project.id)
    with pytest.raises(ProjectNotFoundError):
        await projects.restore(mallory, project.id)


@pytest.mark.asyncio
async def test_restore_requires_a_deleted_project(projects, alice):
    project = await projects.create(alice, {"name": "P"})
    with pytest.raises(ProjectNotFoundError):
        await projects.restore(alice, project.id)


@pytest.mark.asyncio
async def test_find_many_newest_first_and_include_deleted(projects, alice):
    first = await projects.create(alice, {"name": "first"})
    second = await projects.create(alice, {"name": "second"})
    await projects.remove(alice, first.id)

    assert [p.id for p in await projects.find_many(alice)] == [second.id]
    assert [p.id for p in await projects.find_many(alice, include_deleted=True)] == [
        second.id,
        first.id,
    ]


@pytest.mark.asyncio
async def test_task_count_tracks_active_tasks(projects, tasks, alice):
    project = await projects.create(alice, {"name": "P"})
    keep = await tasks.create(alice, {"title": "keep", "project_id": project.id})
    drop = await tasks.create(alice, {"title": "drop", "project_id": project.id})
    await tasks.remove(alice, drop.id)

    found = await projects.find_one(alice, project.id)
    assert found.task_count == 1

    # Deleting the project leaves its tasks alone.
    await projects.remove(alice, project.id)
    assert (await tasks.find_one(alice, keep.id)).project_id == project.id


@pytest.mark.asyncio
async def test_stats(projects, alice, mallory):
    a = await projects.create(alice, {"name": "a"})
    await projects.create(alice, {"name": "b"})
    await projects.create(mallory, {"name": "c"})
    await projects.remove(alice, a.id)

    stats = await projects.stats(alice)

    assert stats.total_projects == 2
    assert stats.active_projects == 1
    assert stats.deleted_projects == 1
